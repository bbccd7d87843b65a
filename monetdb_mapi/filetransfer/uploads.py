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
Client side of COPY INTO ... FROM ... ON CLIENT.

The upload starts with a newline, followed by the file contents. The data
is sent in chunks. Every chunk ends with a final block, after which the
server answers MORE to ask for the next chunk, or FILETRANSFER to say it
has read enough. An empty final block ends the upload.
"""

import io
import logging
from abc import ABC, abstractmethod
from typing import Optional

from monetdb_mapi.blocks import MAX_PACKAGE_LENGTH
from monetdb_mapi.exceptions import PeerStoppedReading, ProgrammingError, \
    ProtocolError, MSG_STOPPED_READING
from monetdb_mapi.replies import MSG_MORE_B, MSG_FILETRANS_B

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


class Uploader(ABC):
    """
    Base class for upload hooks. Instances of subclasses of this class can be
    registered using monetdb_mapi.Connection.set_uploader(). Every time an
    upload request is received, an Upload object is created and passed to
    this objects .handle_upload() method.

    If the server cancels the upload halfway, the .cancel() methods is called
    and all further data written is ignored.
    """

    @abstractmethod
    def handle_upload(self, upload: "Upload", filename: str, text_mode: bool, skip_amount: int):
        """
        Called when an upload request is received. Implementations should either
        send an error using upload.send_error(), or request a writer using
        upload.text_writer() or upload.binary_writer(). All data written to the
        writer will be sent to the server.

        Parameter 'filename' is the file name used in the COPY INTO statement.
        Parameter 'text_mode' indicates whether the server requested a text
        file or a binary file. In case of a text file, 'skip_amount' indicates
        the number of lines to skip. In binary mode, 'skip_amount' is always 0.

        SECURITY NOTE! Make sure to carefully validate the file name before
        opening files on the file system. Otherwise, if an adversary has taken
        control of the network connection or of the server, they can use file
        upload requests to read arbitrary files from your computer
        (../../)
        """
        pass

    def cancel(self):
        """Optional method called when the server cancels the upload."""
        pass


class Upload(object):
    """
    Represents a request from the server to upload data to the server. It is
    passed to the handle_upload() method of registered Uploaders.
    """

    def __init__(self, mapi, uploader: Optional[Uploader] = None):
        self.mapi = mapi
        self.channel = mapi.channel
        self.uploader = uploader
        self.error = None
        self.cancelled = False
        self.chunk_size = DEFAULT_CHUNK_SIZE
        self._chunk_left = 0
        self._buf = bytearray()
        self._raw = None
        self._writer = None
        self._twriter = None
        self._aborted = False
        self._closed = False

    def is_cancelled(self) -> bool:
        """Returns true if the server has cancelled the upload."""
        return self.cancelled

    def has_been_used(self) -> bool:
        """Returns true if .send_error(), .text_writer() or .binary_writer() have been called."""
        return self.error is not None or self._raw is not None

    def set_chunk_size(self, size: int):
        """
        After every CHUNK_SIZE bytes, the server gets the opportunity to cancel
        the rest of the upload. Defaults to 1 MiB.
        """
        if size < 1:
            raise ValueError("chunk size must be positive")
        if self._raw is not None:
            raise ProgrammingError("Cannot change the chunk size after the upload has started")
        self.chunk_size = size

    def send_error(self, message: str) -> None:
        """
        Tell the server the requested upload has been refused
        """
        if self._raw is not None:
            raise ProgrammingError("Cannot send error after data has been sent")
        if self.error is not None:
            raise ProgrammingError("Another error has already been sent: %s" % self.error)
        self.error = message
        if not message.endswith("\n"):
            message += "\n"
        logger.debug("refusing upload: %s", message.rstrip())
        self.channel.write_message(message.encode('utf-8'))

    def refuse(self, message: str) -> None:
        """Same as send_error()"""
        self.send_error(message)

    def _start(self):
        if self.error is not None:
            raise ProgrammingError("Cannot send data after an error has been sent")
        if self._raw is None:
            self._raw = UploadIO(self)
            self._chunk_left = self.chunk_size
            self._send_data(b'\n')

    def binary_writer(self) -> io.BufferedIOBase:
        """
        Returns a binary file-like object. All data written to it is uploaded
        to the server.
        """
        if self._writer is None:
            self._start()
            self._writer = io.BufferedWriter(self._raw)
        return self._writer

    def text_writer(self) -> io.TextIOBase:
        r"""
        Returns a text-mode file-like object. All text written to it is uploaded
        to the server. DOS/Windows style line endings (CR LF, \r \n) are
        automatically rewritten to single \n's.
        """
        if self._twriter is None:
            self._start()
            self._twriter = io.TextIOWrapper(NormalizeCrLf(self._raw), encoding='utf-8', newline='\n')
        return self._twriter

    def _send_data(self, data) -> int:
        if self._aborted:
            return len(data)
        if self.cancelled:
            raise PeerStoppedReading(MSG_STOPPED_READING)
        with memoryview(data) as view:
            pos = 0
            end = len(view)
            while pos < end:
                if self._chunk_left == 0:
                    self._end_chunk()
                    if self.cancelled:
                        raise PeerStoppedReading(MSG_STOPPED_READING)
                n = min(end - pos, self._chunk_left, MAX_PACKAGE_LENGTH - len(self._buf))
                self._buf += view[pos:pos + n]
                pos += n
                self._chunk_left -= n
                if len(self._buf) == MAX_PACKAGE_LENGTH and self._chunk_left > 0:
                    self.channel.write_block(self._buf, False)
                    self._buf.clear()
        return end

    def _end_chunk(self):
        """Send the rest of the chunk as a final block and wait for the server's verdict"""
        self.channel.write_block(self._buf, True)
        self._buf.clear()
        prompt = self.channel.read_message()
        if prompt == MSG_MORE_B:
            self._chunk_left = self.chunk_size
        elif prompt == MSG_FILETRANS_B:
            logger.debug("server stopped reading the upload")
            self.cancelled = True
            if self.uploader is not None:
                self.uploader.cancel()
        else:
            self.mapi.close()
            raise ProtocolError("Expected MORE or FILETRANSFER prompt during upload, got %r" % prompt[:100])

    def _abort(self):
        """Forget about any unsent data, the connection is being torn down"""
        self._aborted = True
        self._closed = True
        for w in (self._twriter, self._writer):
            if w is not None:
                w.close()

    def close(self):
        """
        End the upload successfully
        """
        if self._closed:
            return
        self._closed = True
        for w in (self._twriter, self._writer):
            if w is None:
                continue
            try:
                w.close()
            except PeerStoppedReading:
                logger.debug("data written after the server stopped reading was discarded")
        if self._raw is None or self.cancelled:
            return

        if self._chunk_left != self.chunk_size:
            self._end_chunk()
            if self.cancelled:
                return
        self.channel.write_block(b'', True)
        prompt = self.channel.read_message()
        if prompt != MSG_FILETRANS_B:
            self.mapi.close()
            raise ProtocolError("Expected FILETRANSFER prompt at the end of the upload, got %r" % prompt[:100])


class UploadIO(io.RawIOBase):
    """IO class used by Upload to send data to the server"""

    def __init__(self, upload: Upload):
        self.upload = upload

    def writable(self):
        return True

    def write(self, b):
        return self.upload._send_data(b)


class NormalizeCrLf(io.BufferedIOBase):
    """
    Helper class used to normalize line endings before sending text to
    MonetDB. A CR at the end of one write is held back until the next write
    shows whether an LF follows it.
    """

    def __init__(self, inner):
        self.inner = inner
        self.pending = False

    def writable(self):
        return True

    def write(self, data) -> int:
        data = bytes(data)
        if not data:
            return 0
        size = len(data)
        out = b''
        if self.pending:
            if not data.startswith(b'\n'):
                out = b'\r'
            self.pending = False
        if data.endswith(b'\r'):
            data = data[:-1]
            self.pending = True
        out += data.replace(b'\r\n', b'\n')
        if out:
            self.inner.write(out)
        return size

    def flush(self):
        pass

    def close(self):
        if self.closed:
            return
        if self.pending:
            self.pending = False
            self.inner.write(b'\r')
        super().close()
