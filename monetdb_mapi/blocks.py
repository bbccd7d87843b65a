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
The MAPI block layer.

On the wire every message is split into blocks of at most
MAX_PACKAGE_LENGTH bytes. Each block is preceded by a little endian 16 bit
header holding the length shifted left by one, with the lowest bit set on
the last block of the message.
"""

import logging
import socket
import struct
import threading

from monetdb_mapi.exceptions import ConnectionLost, ProtocolError, Timeout, \
    MSG_PEER_CLOSED, MSG_TIMEOUT

logger = logging.getLogger(__name__)
wire_logger = logging.getLogger("monetdb_mapi.wire")

MAX_PACKAGE_LENGTH = (1024 * 8) - 2

HEADER = struct.Struct('<H')

# Sent before the handshake on plain TCP connections. A MAPI server reads
# them as empty blocks, a TLS server will refuse them.
PRIMER = b'\x00' * 8


class BlockChannel(object):
    """
    Reads and writes MAPI messages on a connected socket.

    Incoming bytes are collected in a buffer owned by the channel. A single
    recv may deliver several messages or only part of a block, the buffer
    takes care of both.
    """

    def __init__(self, sock, timeout=None, trace=False):
        self.socket = sock
        self.trace = trace
        self._buffer = bytearray(8192)
        self._start = 0
        self._end = 0
        self._closed = False
        self._lock = threading.Lock()
        if timeout is not None:
            sock.settimeout(timeout)

    @property
    def closed(self):
        return self._closed

    # reading

    def read_message(self) -> bytes:
        """ read one complete mapi message """
        result = bytearray()
        last = False
        while not last:
            data, last = self.read_block()
            result += data
        if self.trace:
            wire_logger.debug("RX %r", bytes(result))
        return bytes(result)

    def read_block(self):
        """ read a single block, returns (payload, last) """
        self._ensure(2)
        unpacked = HEADER.unpack_from(self._buffer, self._start)[0]
        length = unpacked >> 1
        last = bool(unpacked & 1)
        if length > MAX_PACKAGE_LENGTH:
            self.close()
            raise ProtocolError("invalid block header: length %d exceeds %d" %
                                (length, MAX_PACKAGE_LENGTH))
        self._start += 2
        self._ensure(length)
        payload = bytes(self._buffer[self._start:self._start + length])
        self._start += length
        if self._start == self._end:
            self._start = self._end = 0
        return payload, last

    def _ensure(self, count):
        """Make sure at least `count` unread bytes are in the buffer"""
        available = self._end - self._start
        if available >= count:
            return
        if self._start + count > len(self._buffer):
            # move the unread bytes to the front, enlarge if still too small
            self._buffer[:available] = self._buffer[self._start:self._end]
            self._start, self._end = 0, available
            if count > len(self._buffer):
                self._buffer.extend(bytes(count - len(self._buffer)))
        while self._end - self._start < count:
            with memoryview(self._buffer) as view, view[self._end:] as tail:
                n = self._recv_into(tail)
            self._end += n

    def _recv_into(self, view) -> int:
        if self._closed:
            raise ConnectionLost("connection has been closed")
        try:
            n = self.socket.recv_into(view)
        except socket.timeout:
            self.close()
            raise Timeout("%s while reading from the server" % MSG_TIMEOUT) from None
        except OSError as e:
            was_closed = self._closed
            self.close()
            if was_closed:
                raise ConnectionLost("connection has been closed") from e
            raise ConnectionLost("%s: %s" % (MSG_PEER_CLOSED, e)) from e
        if n == 0:
            was_closed = self._closed
            self.close()
            if was_closed:
                raise ConnectionLost("connection has been closed")
            raise ConnectionLost(MSG_PEER_CLOSED)
        return n

    # writing

    def write_message(self, data: bytes):
        """ wrap the data in mapi blocks and send it """
        if self.trace:
            wire_logger.debug("TX %r", bytes(data))
        view = memoryview(data)
        pos = 0
        while True:
            chunk = view[pos:pos + MAX_PACKAGE_LENGTH]
            pos += len(chunk)
            last = pos >= len(view)
            self._send(HEADER.pack((len(chunk) << 1) | last) + bytes(chunk))
            if last:
                break

    def write_block(self, data: bytes, last: bool):
        """ send at most one block, used when streaming uploads """
        if len(data) > MAX_PACKAGE_LENGTH:
            raise ValueError("block too large: %d bytes" % len(data))
        self._send(HEADER.pack((len(data) << 1) | last) + bytes(data))

    def write_raw(self, data: bytes):
        """ send bytes outside of the block structure """
        self._send(data)

    def prime(self):
        self._send(PRIMER)

    def _send(self, data):
        if self._closed:
            raise ConnectionLost("connection has been closed")
        try:
            self.socket.sendall(data)
        except socket.timeout:
            self.close()
            raise Timeout("%s while writing to the server" % MSG_TIMEOUT) from None
        except OSError as e:
            self.close()
            raise ConnectionLost("%s: %s" % (MSG_PEER_CLOSED, e)) from e

    # shutting down

    def sabotage(self):
        """ kill the connection in a way the server is sure to recognize as an error """
        if self._closed:
            return
        bad_header = HEADER.pack(2 * 8193 + 0)  # larger than allowed, and not the final block
        bad_body = b"ERROR\x80ERROR"  # invalid utf-8, and too small
        try:
            self.socket.sendall(bad_header + bad_body)
        except OSError as e:
            logger.debug("could not send sabotage block: %s", e)
        finally:
            self.close()

    def close(self):
        """ close the socket, may be called from another thread """
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            # already disconnected
            pass
        self.socket.close()
