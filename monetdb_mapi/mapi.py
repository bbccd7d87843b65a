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
This is the python implementation of the mapi protocol.
"""

import logging
import os
import platform
import re
import socket
import sys
import threading
from typing import Dict, List, Optional

from monetdb_mapi import tls
from monetdb_mapi.blocks import BlockChannel, wire_logger
from monetdb_mapi.exceptions import ProgrammingError, ConnectError, \
    AuthenticationError, ProtocolError, ValidationError, OperationalError, \
    ConnectionLost, Timeout, MSG_AUTH, MSG_TIMEOUT
from monetdb_mapi.handshake import DEFAULT_PREFERENCE, parse_challenge, \
    challenge_response, sql_options, HandshakeOption
from monetdb_mapi.replies import ReplyStream, LineType, handle_error, \
    MSG_OK, MSG_ERROR, MSG_INFO, MSG_REDIRECT

logger = logging.getLogger(__name__)

STATE_INIT = 0
STATE_READY = 1
STATE_CLOSED = 2

_SQLSTATE = re.compile(r'[0-9A-Z]{5}!')

_logfile_lock = threading.Lock()
_logfile_handlers = {}


def attach_logfile(path: str):
    """Send the wire trace to `path`. Attaching the same file twice has no effect."""
    with _logfile_lock:
        if path in _logfile_handlers:
            return
        handler = logging.FileHandler(path, encoding='utf-8')
        handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        wire_logger.addHandler(handler)
        wire_logger.setLevel(logging.DEBUG)
        _logfile_handlers[path] = handler


def strip_error(line: str) -> str:
    """The text of a server error line, without the '!' and the SQLSTATE"""
    if line.startswith(MSG_ERROR):
        line = line[1:]
    if _SQLSTATE.match(line):
        line = line[6:]
    return line


def quote_identifier(name: str) -> str:
    return '"%s"' % name.replace('"', '""')


# noinspection PyExceptionInherit
class Connection(object):
    """
    MAPI (low level MonetDB API) connection
    """

    def __init__(self, target=None, preference=DEFAULT_PREFERENCE):
        self.state = STATE_INIT
        self.target = target
        self.preference = preference
        self.channel: Optional[BlockChannel] = None
        self.is_tcp: Optional[bool] = None
        self.hash_algorithm = None
        self.redirects: List[str] = []
        self.warnings: List[str] = []
        self.server_type = None
        self.server_endian = None
        self.binexport_level = 0
        self.oob_intr = False
        self.clientinfo: Optional[Dict[str, Optional[str]]] = None
        self.remaining_handshake_options: List[HandshakeOption] = []
        self.uploader = None
        self.downloader = None
        self._active = None
        self._lock = threading.Lock()

    @property
    def language(self):
        return self.target.language if self.target is not None else None

    @property
    def closed(self) -> bool:
        return self.state == STATE_CLOSED or self.channel is None or self.channel.closed

    def connect(self, target=None):
        """ setup connection to MAPI server
        """
        if target is not None:
            self.target = target
        if self.target is None:
            raise ProgrammingError("No target to connect to")
        if self.state == STATE_READY and not self.closed:
            raise ProgrammingError("Already connected")

        if self.target.debug and self.target.logfile:
            attach_logfile(self.target.logfile)

        if self.target.connect_scan:
            self.scan_sockdir()
        else:
            self._establish()

    def _establish(self):
        self._close_channel()
        self.state = STATE_INIT
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Connecting to %s", self.target.summary_url())
        # Enter a loop to deal with redirects.
        try:
            self.connect_loop()
        except Exception as e:
            logger.error("Could not connect to %s: %s", self.target.summary_url(), e)
            self._close_channel()
            self.state = STATE_CLOSED
            raise
        logger.info("Established connection to %s", self.target.summary_url())

        # We have a working connection now. Take care of the options we couldn't
        # handle during the handshake
        self.state = STATE_READY
        try:
            self._setup_session()
        except Exception:
            self.close()
            raise

    def _setup_session(self):
        if self.clientinfo and self.language == 'sql':
            cmd = "Xclientinfo " + "".join(
                "%s=%s\n" % (k, v or '')
                for k, v in self.clientinfo.items()
                if v is None or '\n' not in v
            )
            try:
                self.cmd(cmd)
            except OperationalError as e:
                logger.warning("Server rejected clientinfo: %s", e)

        if self.language != 'sql':
            return
        for opt in self.remaining_handshake_options:
            if opt.fallback is not None:
                self.cmd(opt.fallback(opt.value))
        if self.target.schema:
            self.cmd("sSET SCHEMA %s;" % quote_identifier(self.target.schema))

    def connect_loop(self):
        for _ in range(self.target.max_redirects + 1):
            # maybe the previous attempt left an open socket that just needs an
            # additional login attempt
            if self.channel is None:
                self._open_channel()
            if self._login():
                return
        raise ConnectError("too many redirects")

    def _open_channel(self):
        sock, is_tcp = self.try_connect()
        self.is_tcp = is_tcp
        if is_tcp and self.target.tls:
            sock = tls.wrap(sock, self.target)
        channel = BlockChannel(sock, timeout=self.target.connect_timeout, trace=self.target.debug)
        self.channel = channel
        if not is_tcp:
            # tell the server we're not going to pass a file descriptor
            channel.write_raw(b'0')
        elif not self.target.tls:
            channel.prime()

    def try_connect(self):
        """ open a socket to the endpoint of the target, Unix domain socket first """
        err = None
        timeout = self.target.connect_timeout

        path = self.target.connect_unix
        if path and hasattr(socket, 'AF_UNIX'):
            s = socket.socket(socket.AF_UNIX)
            try:
                s.settimeout(timeout)
                s.connect(path)
                logger.debug("Connected to %s", path)
                return s, False
            except OSError as e:
                s.close()
                logger.debug("Could not connect to %s: %s", path, e)
                err = e

        host = self.target.connect_tcp
        if host:
            port = self.target.connect_port
            try:
                addrs = socket.getaddrinfo(host, port, socket.AF_UNSPEC, socket.SOCK_STREAM)
            except socket.gaierror as e:
                raise ConnectError("Could not resolve %s: %s" % (host, e)) from e
            for fam, typ, proto, cname, addr in addrs:
                s = socket.socket(fam, typ, proto)
                try:
                    s.settimeout(timeout)
                    # For performance, mirror MonetDB/src/common/stream.c socket settings.
                    s.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
                    s.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                    s.connect(addr)
                    logger.debug("Connected to %s port %s", addr[0], addr[1])
                    return s, True
                except OSError as e:
                    s.close()
                    logger.debug("Could not connect to %s port %s: %s", addr[0], addr[1], e)
                    err = e

        if isinstance(err, socket.timeout):
            raise Timeout("%s connecting to %s" % (MSG_TIMEOUT, self.target.summary_url())) from err
        if err is not None:
            raise ConnectError("Could not connect to %s: %s" % (self.target.summary_url(), err)) from err
        raise ConnectError("endpoint not found")

    def scan_sockdir(self):
        try:
            my_uid = os.getuid()
        except AttributeError:
            # Windows
            my_uid = -1

        # Scan the sockdir and put candidate sockets in my_socks if they are
        # owned by me and strange_socks otherwise
        my_socks = []
        strange_socks = []
        prefix = self.target.sockprefix
        sockdir = self.target.sockdir
        try:
            logger.debug("scanning %r for Unix domain sockets", sockdir)
            entries = [e for e in os.scandir(sockdir) if e.name.startswith(prefix)]
        except OSError:
            entries = []
        for entry in sorted(entries, key=lambda e: e.name):
            suffix = entry.name[len(prefix):]
            if not suffix.isdigit() or not 0 < int(suffix) <= 65535:
                continue
            try:
                st = entry.stat()
            except OSError:
                continue
            if st.st_uid == my_uid:
                my_socks.append(entry.path)
            else:
                strange_socks.append(entry.path)

        original = self.target
        for sock in my_socks + strange_socks:
            self.target = original.replace(sock=sock)
            try:
                logger.debug("Trying %r", sock)
                self._establish()
                return
            except (ConnectError, ConnectionLost) as e:
                # unreachable, try the next one. A server that answered and
                # refused us is final.
                logger.debug("No luck with %r: %s", sock, e)

        # last resort
        logger.debug("Trying a TCP connection to localhost")
        self.target = original.replace(host='localhost')
        self._establish()

    def _read_text(self) -> str:
        data = self.channel.read_message()
        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolError("server sent invalid utf-8: %s" % e) from None

    def _login(self) -> bool:
        """ Reads challenge from line, generate response and check if
        everything is okay. Returns False if another attempt is needed """

        challenge = parse_challenge(self._read_text().rstrip('\n'))
        self.server_type = challenge.server_type
        self.server_endian = 'little' if challenge.endian == 'LIT' else 'big'
        self.binexport_level = challenge.binary_level
        self.oob_intr = challenge.oob_intr

        options = sql_options(self.target) if self.language == 'sql' else []
        response, algo, remaining = challenge_response(challenge, self.target, options, self.preference)
        self.hash_algorithm = algo
        self.remaining_handshake_options = remaining
        if challenge.client_info and self.target.client_info:
            self.clientinfo = self._client_info()
        else:
            self.clientinfo = None

        self.channel.write_message(response.encode('utf-8'))
        prompt = self._read_text()

        errors = []
        redirect = None
        for line in prompt.split('\n'):
            if not line or line == MSG_OK:
                continue
            elif line.startswith(MSG_ERROR):
                errors.append(strip_error(line))
            elif line.startswith(MSG_INFO):
                logger.info("%s", line[1:])
                self.warnings.append(line[1:])
            elif line.startswith(MSG_REDIRECT):
                # a redirect can contain multiple redirects, we only use the first
                if redirect is None:
                    redirect = line[1:]
            else:
                raise ProtocolError("unknown state: %s" % line)

        if errors:
            for error in errors:
                logger.error(error)
            raise AuthenticationError("%s: %s" % (MSG_AUTH, "\n".join(errors)), errors)
        if redirect is not None:
            self._handle_redirect(redirect)
            return False
        return True

    def _handle_redirect(self, redirect: str):
        if redirect.startswith('mapi:merovingian:'):
            if not redirect.startswith('mapi:merovingian://proxy'):
                raise ProtocolError("Invalid redirect: %s" % redirect)
            logger.debug("Local redirect, restarting authentication")
            self.redirects.append(redirect)
            return

        logger.debug("Redirected to %s", redirect)
        try:
            self.target = self.target.apply_url(redirect)
        except ValidationError as e:
            raise ConnectError("Invalid redirect %s: %s" % (redirect, e)) from e
        self.redirects.append(redirect)
        # close the socket so the next iteration will reconnect based on the
        # updated target.
        self._close_channel()

    def _client_info(self) -> Dict[str, Optional[str]]:
        from monetdb_mapi import __version__

        application_name = self.target.client_application
        if not application_name and sys.argv and sys.argv[0]:
            application_name = os.path.basename(sys.argv[0])
        return dict(
            ClientHostname=platform.node() or None,
            ApplicationName=application_name or None,
            ClientLibrary="monetdb_mapi %s" % __version__,
            ClientRemark=self.target.client_remark or None,
            ClientPid=str(os.getpid()),
        )

    def send(self, operation: str) -> ReplyStream:
        """ put a mapi command on the line and return the reply as a ReplyStream """
        if self.state != STATE_READY or self.closed:
            raise ProgrammingError("Not connected")
        with self._lock:
            if self._active is not None:
                raise ProgrammingError("The reply to the previous command has not been consumed yet")
            stream = ReplyStream(self)
            self._active = stream

        logger.debug("executing command %s", operation)
        try:
            self.channel.write_message(operation.encode('utf-8'))
        except Exception:
            self._reply_finished(stream)
            raise
        return stream

    def _reply_finished(self, stream):
        with self._lock:
            if self._active is stream:
                self._active = None
        if self.channel is None or self.channel.closed:
            self.state = STATE_CLOSED

    def cmd(self, operation: str) -> str:
        """ put a mapi command on the line"""
        lines = []
        error = None
        with self.send(operation) as reply:
            for line in reply:
                if line.type == LineType.ERROR:
                    if error is None:
                        error = line.text[1:]
                elif line.type == LineType.INFO:
                    logger.info("%s", line.text[1:])
                elif line.type != LineType.TRANSFER:
                    lines.append(line.text)

        if error is not None:
            exception, msg = handle_error(error)
            raise exception(msg)
        response = "\n".join(lines)
        if response.startswith(MSG_OK):
            return response[3:].strip() or ""
        return response

    def set_reply_size(self, size: int):
        """
        Set the amount of rows returned by the server.
        """
        self.cmd("Xreply_size %s" % size)

    def set_uploader(self, uploader):
        """Register the given Uploader, or None to deregister"""
        self.uploader = uploader

    def set_downloader(self, downloader):
        """Register the given Downloader, or None to deregister"""
        self.downloader = downloader

    def _sabotage(self):
        """ Kill the connection in a way that the server is sure to recognize as an error"""
        self.state = STATE_CLOSED
        if self.channel is not None:
            self.channel.sabotage()

    def _close_channel(self):
        if self.channel is not None:
            self.channel.close()
            self.channel = None

    def close(self):
        """ disconnect from the monetdb server. Safe to call from another thread. """
        if self.state == STATE_READY:
            logger.info("Closing connection")
        self.state = STATE_CLOSED
        if self.channel is not None:
            self.channel.close()

    disconnect = close

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __del__(self):
        channel = getattr(self, 'channel', None)
        if channel is not None:
            channel.close()

