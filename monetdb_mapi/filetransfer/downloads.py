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
Client side of COPY ... INTO ... ON CLIENT.

The client accepts the download by sending an empty message. The server
then sends the data as one block stream, terminated by a final block. When
the client is done it acknowledges with a newline.
"""

import io
import logging
from abc import ABC, abstractmethod

from monetdb_mapi.exceptions import ProgrammingError

logger = logging.getLogger(__name__)

LINE_SEPARATORS = ('\n', '\r\n')


class Downloader(ABC):
    """
    Base class for download hooks. Instances of subclasses of this class can
    be registered using monetdb_mapi.Connection.set_downloader(). Every time
    a download request arrives, a Download object is created and passed to
    this objects .handle_download() method.

    SECURITY NOTE! Make sure to carefully validate the file name before
    opening files on the file system. Otherwise, if an adversary has taken
    control of the network connection or of the server, they can use download
    requests to OVERWRITE ARBITRARY FILES on your computer
    """

    @abstractmethod
    def handle_download(self, download: "Download", filename: str, text_mode: bool):
        """
        Called when a download request is received from the server. Implementations
        should either refuse by sending an error using download.send_error(), or
        request a reader using download.binary_reader() or download.text_reader().

        Parameter 'filename' is the file name used in the COPY INTO statement.
        Parameter 'text_mode' indicates whether the server requested text
        or binary mode.
        """
        pass


class Download(object):
    """
    Represents a request from the server to download data from the server. It
    is passed to the handle_download() method of registered Downloaders.
    """

    def __init__(self, mapi):
        self.mapi = mapi
        self.channel = mapi.channel
        self.error = None
        self.started = False
        self.line_separator = '\n'
        self._pending = b''
        self._pos = 0
        self._reached_end = False
        self._raw = None
        self._reader = None
        self._treader = None
        self._closed = False

    def has_been_used(self) -> bool:
        return self.started or self.error is not None

    def send_error(self, message: str) -> None:
        """
        Tell the server the requested download is refused
        """
        if self.started:
            raise ProgrammingError("Cannot send error after data has been received")
        if self.error is not None:
            raise ProgrammingError("Another error has already been sent: %s" % self.error)
        self.error = message
        if not message.endswith("\n"):
            message += "\n"
        logger.debug("refusing download: %s", message.rstrip())
        self.channel.write_message(message.encode('utf-8'))

    def refuse(self, message: str) -> None:
        """Same as send_error()"""
        self.send_error(message)

    def set_line_separator(self, separator: str):
        r"""
        Line separator produced by text_reader(), either '\n' or '\r\n'.
        """
        if separator not in LINE_SEPARATORS:
            raise ValueError("line separator must be \\n or \\r\\n, not %r" % separator)
        if self._treader is not None:
            raise ProgrammingError("Cannot change the line separator after reading has started")
        self.line_separator = separator

    def _start(self):
        if self.error is not None:
            raise ProgrammingError("Cannot receive data after an error has been sent")
        if self._raw is None:
            self.started = True
            # an empty message means we accept
            self.channel.write_message(b'')
            self._raw = DownloadIO(self)

    def binary_reader(self) -> io.BufferedIOBase:
        """Returns a binary file-like object to read the downloaded data from."""
        if self._reader is None:
            self._start()
            self._reader = io.BufferedReader(self._raw)
        return self._reader

    def text_reader(self) -> io.TextIOBase:
        """Returns a text mode file-like object to read the downloaded data from."""
        if self._treader is None:
            self._start()
            raw = self._raw
            if self.line_separator == '\r\n':
                raw = InsertCr(raw)
            self._treader = io.TextIOWrapper(io.BufferedReader(raw), encoding='utf-8', newline='')
        return self._treader

    def _read_into(self, b) -> int:
        """Copy downloaded bytes into b, 0 means the server sent everything"""
        while self._pos >= len(self._pending):
            if self._reached_end:
                return 0
            self._pending, self._reached_end = self.channel.read_block()
            self._pos = 0
        n = min(len(b), len(self._pending) - self._pos)
        b[:n] = self._pending[self._pos:self._pos + n]
        self._pos += n
        return n

    def _abort(self):
        self._closed = True

    def close(self):
        """
        Read the remaining data from the stream and acknowledge the download
        """
        if self._closed:
            return
        self._closed = True
        if self._raw is None:
            return
        while not self._reached_end:
            self._pending, self._reached_end = self.channel.read_block()
        self._pending = b''
        self._pos = 0
        self.channel.write_message(b'\n')


class DownloadIO(io.RawIOBase):
    """IO class used by Download to read the data from the server"""

    def __init__(self, download: Download):
        self.download = download

    def readable(self):
        return True

    def readinto(self, b):
        with memoryview(b) as view, view.cast('B') as out:
            return self.download._read_into(out)


class InsertCr(io.RawIOBase):
    """
    Turns every LF read from `inner` into CR LF. An LF that does not fit in
    the caller's buffer is returned by the next read.
    """

    def __init__(self, inner):
        self.inner = inner
        self.pending_lf = False

    def readable(self):
        return True

    def readinto(self, b):
        with memoryview(b) as view, view.cast('B') as out:
            size = len(out)
            if size == 0:
                return 0
            pos = 0
            if self.pending_lf:
                out[0] = 0x0A
                self.pending_lf = False
                pos = 1
                if pos == size:
                    return pos
            data = self.inner.read(max(1, (size - pos) // 2))
            if not data:
                return pos
            converted = data.replace(b'\n', b'\r\n')
            room = size - pos
            if len(converted) > room:
                # only the LF of a trailing CR LF can overflow
                converted = converted[:room]
                self.pending_lf = True
            out[pos:pos + len(converted)] = converted
            return pos + len(converted)
