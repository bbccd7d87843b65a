# SPDX-License-Identifier: MPL-2.0
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0.  If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
#
# Copyright 2024, 2025 MonetDB Foundation;
# Copyright August 2008 - 2023 MonetDB B.V.;
# Copyright 1997 - July 2008 CWI.

"""
Classification of server reply lines and the lazy reply iterator.

The server answers every request with one message. The first character of
each line tells what kind of line it is. A message can also end with one of
the special prompts: MORE when the server wants more input, and
FILETRANSFER when it wants the client to upload or download a file before
it continues with the rest of the reply.
"""

import collections
import enum
import logging

from monetdb_mapi.exceptions import OperationalError, IntegrityError, \
    ProtocolError

logger = logging.getLogger(__name__)

MSG_PROMPT = ""
MSG_MORE = "\1\2\n"
MSG_FILETRANS = "\1\3\n"
MSG_INFO = "#"
MSG_ERROR = "!"
MSG_Q = "&"
MSG_QTABLE = "&1"
MSG_QUPDATE = "&2"
MSG_QSCHEMA = "&3"
MSG_QTRANS = "&4"
MSG_QPREPARE = "&5"
MSG_QBLOCK = "&6"
MSG_HEADER = "%"
MSG_TUPLE = "["
MSG_TUPLE_NOSLICE = "="
MSG_REDIRECT = "^"
MSG_OK = "=OK"

MSG_MORE_B = MSG_MORE.encode('ascii')
MSG_FILETRANS_B = MSG_FILETRANS.encode('ascii')

# MonetDB error codes
errors = {
    '42S02': OperationalError,  # no such table
    '40002': IntegrityError,  # INSERT INTO: UNIQUE constraint violated
    '2D000': IntegrityError,  # COMMIT: failed
    '40000': IntegrityError,  # DROP TABLE: FOREIGN KEY constraint violated
    'M0M29': IntegrityError,  # The code monetdb emitted before Jun2020
}


def handle_error(error):
    """Return exception class matching the error code, and the message.

    error is the text of an error line without the leading '!'. Unknown
    codes, or no code at all, give OperationalError.
    """
    if error[:13] == 'SQLException:':
        try:
            idx = error.index(':', 14)
            error = error[idx + 10:]
        except ValueError:
            pass
    if len(error) > 5 and error[:5] in errors:
        return errors[error[:5]], error
    return OperationalError, error


class LineType(enum.Enum):
    PROMPT = 'prompt'
    MORE = 'more'
    FILETRANSFER = 'filetransfer'
    ERROR = 'error'
    INFO = 'info'
    QTABLE = 'table'
    QUPDATE = 'update'
    QSCHEMA = 'schema'
    QTRANS = 'transaction'
    QPREPARE = 'prepare'
    QBLOCK = 'block'
    HEADER = 'header'
    RESULT = 'result'
    REDIRECT = 'redirect'
    TRANSFER = 'transfer'
    UNKNOWN = 'unknown'

    @property
    def is_result_header(self):
        return self in (LineType.QTABLE, LineType.QPREPARE, LineType.QBLOCK, LineType.HEADER)

    @property
    def is_update_count(self):
        return self is LineType.QUPDATE


_PREFIXES = {
    MSG_ERROR: LineType.ERROR,
    MSG_INFO: LineType.INFO,
    MSG_HEADER: LineType.HEADER,
    MSG_TUPLE: LineType.RESULT,
    MSG_TUPLE_NOSLICE: LineType.RESULT,
    MSG_REDIRECT: LineType.REDIRECT,
}

_QUERY_TYPES = {
    MSG_QTABLE: LineType.QTABLE,
    MSG_QUPDATE: LineType.QUPDATE,
    MSG_QSCHEMA: LineType.QSCHEMA,
    MSG_QTRANS: LineType.QTRANS,
    MSG_QPREPARE: LineType.QPREPARE,
    MSG_QBLOCK: LineType.QBLOCK,
}

_PROMPTS = {
    '\1\1': LineType.PROMPT,
    '\1\2': LineType.MORE,
    '\1\3': LineType.FILETRANSFER,
}


def classify(line: str) -> LineType:
    """ determine the type of a line, given without its trailing newline """
    if not line:
        return LineType.UNKNOWN
    if line[0] == MSG_Q:
        return _QUERY_TYPES.get(line[:2], LineType.UNKNOWN)
    if line[0] == '\1':
        return _PROMPTS.get(line[:2], LineType.UNKNOWN)
    return _PREFIXES.get(line[0], LineType.UNKNOWN)


Line = collections.namedtuple('Line', ['type', 'text', 'transfer'])
Line.__new__.__defaults__ = (None,)


class TransferRequest(object):
    """ a server request to upload or download a file """
    UPLOAD = 'upload'
    DOWNLOAD = 'download'

    def __init__(self, direction, filename, text_mode, skip_amount=0):
        self.direction = direction
        self.filename = filename
        self.text_mode = text_mode
        self.skip_amount = skip_amount

    @property
    def is_upload(self):
        return self.direction == self.UPLOAD

    def __eq__(self, other):
        if not isinstance(other, TransferRequest):
            return NotImplemented
        return vars(self) == vars(other)

    def __repr__(self):
        mode = 'text' if self.text_mode else 'binary'
        return "<TransferRequest %s %s %r skip=%d>" % (self.direction, mode, self.filename, self.skip_amount)


def parse_transfer_request(cmd: str):
    """ parse the line following the FILETRANSFER prompt, None if not understood """
    if cmd.startswith('r '):
        parts = cmd.split(' ', 2)
        if len(parts) == 3:
            try:
                offset = int(parts[1])
            except ValueError:
                return None
            skip = offset - 1 if offset >= 1 else 0
            return TransferRequest(TransferRequest.UPLOAD, parts[2], True, skip)
    elif cmd.startswith('rb '):
        return TransferRequest(TransferRequest.UPLOAD, cmd[3:], False)
    elif cmd.startswith('w '):
        return TransferRequest(TransferRequest.DOWNLOAD, cmd[2:], True)
    elif cmd.startswith('wb '):
        return TransferRequest(TransferRequest.DOWNLOAD, cmd[3:], False)
    return None


class ReplyStream(object):
    """
    The reply to one request, as a lazy sequence of Lines.

    The stream can be iterated only once. File transfers requested by the
    server are carried out when iteration reaches them, after which a
    TRANSFER line is produced. The connection cannot be used for another
    request until the stream is exhausted or closed.
    """

    def __init__(self, connection):
        self._connection = connection
        self._pending = collections.deque()
        self._transfer = None
        self._last_message = False
        self._done = False

    @property
    def done(self):
        return self._done

    def __iter__(self):
        return self

    def __next__(self) -> Line:
        while not self._pending:
            if self._transfer is not None:
                return self._run_transfer()
            if self._last_message:
                self._finish()
                raise StopIteration
            self._read_message()
        return self._pending.popleft()

    def _read_message(self):
        conn = self._connection
        try:
            data = conn.channel.read_message()
        except Exception:
            self._finish()
            raise

        if data == MSG_MORE_B:
            # tell server it isn't going to get more
            logger.debug("server wants more input, sending empty message")
            conn.channel.write_message(b'')
            return

        try:
            text = data.decode('utf-8')
        except UnicodeDecodeError as e:
            self._finish()
            conn.close()
            raise ProtocolError("server sent invalid utf-8: %s" % e) from None

        lines = text.split('\n')
        if lines and lines[-1] == '':
            lines.pop()

        for i, line in enumerate(lines):
            kind = classify(line)
            if kind == LineType.FILETRANSFER:
                if i + 1 >= len(lines):
                    self._finish()
                    conn.close()
                    raise ProtocolError("Protocol violation, expected transfer command, got nothing")
                self._transfer = lines[i + 1]
                return
            if kind == LineType.PROMPT:
                continue
            self._pending.append(Line(kind, line))
        self._last_message = True

    def _run_transfer(self) -> Line:
        # imported here to avoid a circular import
        from monetdb_mapi.filetransfer import handle_file_transfer

        cmd, self._transfer = self._transfer, None
        request = parse_transfer_request(cmd)
        try:
            handle_file_transfer(self._connection, request, cmd)
        except Exception:
            self._finish()
            raise
        return Line(LineType.TRANSFER, cmd, request)

    def _finish(self):
        if not self._done:
            self._done = True
            self._connection._reply_finished(self)

    def close(self):
        """ consume and discard the rest of the reply """
        for _ in self:
            pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self.close()
        elif not self._done and not self._connection.closed:
            # the reply is in an unknown state, the connection is unusable
            self._finish()
            self._connection.close()
