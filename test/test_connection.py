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
Session tests against the fake server in mapiserver.py.
"""

import hashlib
import os
import socket
import tempfile
import threading
import time
import unittest

import monetdb_mapi
from monetdb_mapi.exceptions import AuthenticationError, ConnectError, ProtocolError, \
    ProgrammingError, OperationalError, IntegrityError, ConnectionLost, Timeout, \
    MSG_AUTH, MSG_PEER_CLOSED
from monetdb_mapi.filetransfer import Uploader, Downloader, SafeDirectoryHandler, \
    MSG_NO_UPLOADER, MSG_NO_DOWNLOADER, MSG_UNUSED_UPLOAD
from monetdb_mapi.handshake import HashAlgorithm
from monetdb_mapi.mapi import Connection, strip_error, quote_identifier
from monetdb_mapi.replies import LineType
from monetdb_mapi.target import resolve

from mapiserver import FakeServer, CHALLENGE, SQL_CHALLENGE, OLD_CHALLENGE, MORE

SALT = "s7NzFDHo0UdlE"
UPDATE_ONE = b"&2 1 -1\n"


def digest(password):
    pw = hashlib.sha512(password.encode('utf-8')).hexdigest()
    return hashlib.sha512((pw + SALT).encode('utf-8')).hexdigest()


def wait_for(condition, timeout=5.0):
    deadline = time.time() + timeout
    while not condition():
        if time.time() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.02)


def login_and_serve(handler):
    handler.login()
    handler.serve()


def sql_answer(handler, command):
    if command == 'sselect 1;':
        return b"&1 0 1 1 1\n% .L1 # table_name\n% L1 # name\n[ 1\t]\n"
    if command.startswith('sinsert'):
        return UPDATE_ONE
    if command == 'sbad;':
        return b"!42000!syntax error, unexpected ';'\n"
    if command == 'sduplicate;':
        return b"!40002!INSERT INTO: PRIMARY KEY constraint 't.t_pkey' violated\n"
    if command == 'schatty;':
        return b"#just so you know\n&3\n"
    if command == 'sincomplete;':
        handler.send_message(MORE)
        handler.fake.commands.append(handler.recv_message().decode("utf-8"))
        return b"&3\n"
    return b""


class SessionTestCase(unittest.TestCase):
    def start(self, scenario, **kwargs) -> FakeServer:
        server = FakeServer(scenario, **kwargs)
        self.addCleanup(server.close)
        return server

    def target(self, url, **settings):
        settings.setdefault('user', 'monetdb')
        settings.setdefault('password', 'monetdb')
        settings.setdefault('timezone', 0)
        settings.setdefault('so_timeout', 5000)
        return resolve(url, settings)

    def connect(self, server, url=None, **settings) -> Connection:
        conn = Connection(self.target(url or server.url(), **settings))
        self.addCleanup(conn.close)
        conn.connect()
        return conn


class TestLogin(SessionTestCase):
    def test_response(self):
        server = self.start(login_and_serve)
        conn = self.connect(server)
        expected = ("BIG:monetdb:{SHA512}%s:sql:demo:FILETRANS:"
                    "auto_commit=1,reply_size=250,size_header=1,columnar_protocol=0,time_zone=0:"
                    % digest('monetdb'))
        self.assertEqual(server.responses, [expected])
        self.assertFalse(conn.closed)
        self.assertTrue(conn.is_tcp)
        self.assertEqual(conn.server_type, 'mserver')
        self.assertEqual(conn.server_endian, 'little')
        self.assertEqual(conn.binexport_level, 1)
        self.assertIs(conn.hash_algorithm, HashAlgorithm.SHA512)
        self.assertEqual(server.commands, [])

    def test_restricted_hash(self):
        server = self.start(login_and_serve)
        conn = self.connect(server, hash='sha1')
        self.assertIs(conn.hash_algorithm, HashAlgorithm.SHA1)
        self.assertIn(':{SHA1}', server.responses[0])

    def test_rejected(self):
        message = "InvalidCredentialsException:checkCredentials:invalid credentials for user 'monetdb'"

        def scenario(handler):
            handler.login(SQL_CHALLENGE, ("!" + message + "\n").encode('utf-8'))

        server = self.start(scenario)
        conn = Connection(self.target(server.url()))
        self.addCleanup(conn.close)
        with self.assertRaisesRegex(AuthenticationError, MSG_AUTH) as cm:
            conn.connect()
        self.assertEqual(cm.exception.server_messages, [message])
        self.assertTrue(conn.closed)

    def test_warnings(self):
        def scenario(handler):
            handler.login(SQL_CHALLENGE, b"#Welcome to the test server\n")
            handler.serve()

        server = self.start(scenario)
        with self.assertLogs('monetdb_mapi.mapi', 'INFO') as cm:
            conn = self.connect(server)
        self.assertEqual(conn.warnings, ['Welcome to the test server'])
        self.assertTrue(any('Welcome to the test server' in line for line in cm.output))

    def test_bad_challenge(self):
        server = self.start(lambda handler: handler.send_message(b"garbage"))
        with self.assertRaises(ProtocolError):
            self.connect(server)

    def test_unknown_prompt(self):
        server = self.start(lambda handler: handler.login(SQL_CHALLENGE, b"Xwhat\n"))
        with self.assertRaises(ProtocolError):
            self.connect(server)

    def test_fallback_options(self):
        def scenario(handler):
            handler.login(OLD_CHALLENGE)
            handler.serve()

        server = self.start(scenario)
        self.connect(server, autocommit=False, replysize=100, timezone=-3600, schema='my"schema')
        self.assertTrue(server.responses[0].endswith(":sql:demo:FILETRANS::"))
        self.assertEqual(server.commands, [
            "Xauto_commit 0",
            "Xreply_size 100",
            "Xsizeheader 1",
            "sSET TIME ZONE INTERVAL '-01:00' HOUR TO MINUTE;",
            'sSET SCHEMA "my""schema";',
        ])

    def test_fallback_error(self):
        def scenario(handler):
            handler.login(OLD_CHALLENGE)
            handler.serve(lambda h, cmd: b"!42000!no\n" if cmd.startswith("Xsizeheader") else b"")

        server = self.start(scenario)
        conn = Connection(self.target(server.url()))
        self.addCleanup(conn.close)
        with self.assertRaises(OperationalError):
            conn.connect()
        self.assertTrue(conn.closed)

    def test_clientinfo(self):
        def scenario(handler):
            handler.login(SQL_CHALLENGE + b"CLIENTINFO:")
            handler.serve()

        server = self.start(scenario)
        self.connect(server, client_application='myapp', client_remark='hello')
        self.assertEqual(len(server.commands), 1)
        info = server.commands[0]
        self.assertTrue(info.startswith("Xclientinfo "))
        self.assertIn("ApplicationName=myapp\n", info)
        self.assertIn("ClientRemark=hello\n", info)
        self.assertIn("ClientLibrary=monetdb_mapi %s\n" % monetdb_mapi.__version__, info)
        self.assertIn("ClientPid=%d\n" % os.getpid(), info)

    def test_clientinfo_disabled(self):
        def scenario(handler):
            handler.login(SQL_CHALLENGE + b"CLIENTINFO:")
            handler.serve()

        server = self.start(scenario)
        self.connect(server, client_info=False)
        self.assertEqual(server.commands, [])

    def test_clientinfo_rejected(self):
        def scenario(handler):
            handler.login(SQL_CHALLENGE + b"CLIENTINFO:")
            handler.serve(lambda h, cmd: b"!unknown command\n" if cmd.startswith("Xclientinfo") else b"")

        server = self.start(scenario)
        with self.assertLogs('monetdb_mapi.mapi', 'WARNING'):
            conn = self.connect(server)
        self.assertEqual(conn.cmd("sselect 2;"), "")

    def test_already_connected(self):
        server = self.start(login_and_serve)
        conn = self.connect(server)
        with self.assertRaises(ProgrammingError):
            conn.connect()

    def test_no_target(self):
        with self.assertRaises(ProgrammingError):
            Connection().connect()


class TestRedirects(SessionTestCase):
    def test_proxy(self):
        def scenario(handler):
            handler.login(CHALLENGE, b"^mapi:merovingian://proxy?database=demo\n")
            handler.login(SQL_CHALLENGE)
            handler.serve()

        server = self.start(scenario)
        conn = self.connect(server)
        self.assertEqual(conn.redirects, ["mapi:merovingian://proxy?database=demo"])
        self.assertEqual(len(server.responses), 2)
        self.assertEqual(server.responses[0].split(':')[1], 'merovingian')
        self.assertEqual(server.responses[0].split(':')[2], '{SHA512}' + digest('merovingian'))
        self.assertEqual(server.responses[1].split(':')[1], 'monetdb')

    def test_real_redirect(self):
        final = self.start(login_and_serve)

        def scenario(handler):
            redirect = "^mapi:monetdb://localhost:%d/other\n^mapi:monetdb://ignored:1/x\n" % final.port
            handler.login(SQL_CHALLENGE, redirect.encode('utf-8'))

        first = self.start(scenario)
        conn = self.connect(first)
        self.assertEqual(conn.target.port, final.port)
        self.assertEqual(conn.target.database, 'other')
        self.assertEqual(conn.target.user, 'monetdb')
        self.assertEqual(conn.redirects, ["mapi:monetdb://localhost:%d/other" % final.port])
        self.assertIn(":sql:other:", final.responses[0])

    def test_too_many_redirects(self):
        def scenario(handler):
            redirect = "^mapi:monetdb://localhost:%d/demo\n" % handler.fake.port
            handler.login(SQL_CHALLENGE, redirect.encode('utf-8'))

        server = self.start(scenario)
        conn = Connection(self.target(server.url(), max_redirects=2))
        self.addCleanup(conn.close)
        with self.assertRaisesRegex(ConnectError, "too many redirects"):
            conn.connect()
        self.assertEqual(len(server.responses), 3)
        self.assertTrue(conn.closed)

    def test_no_redirects_allowed(self):
        def scenario(handler):
            handler.login(CHALLENGE, b"^mapi:merovingian://proxy\n")
            handler.login(SQL_CHALLENGE)

        server = self.start(scenario)
        conn = Connection(self.target(server.url(), max_redirects=0))
        self.addCleanup(conn.close)
        with self.assertRaises(ConnectError):
            conn.connect()

    def test_invalid_merovingian_redirect(self):
        server = self.start(lambda handler: handler.login(
            CHALLENGE, b"^mapi:merovingian://elsewhere\n"))
        with self.assertRaises(ProtocolError):
            self.connect(server)

    def test_invalid_redirect_url(self):
        server = self.start(lambda handler: handler.login(
            SQL_CHALLENGE, b"^mapi:monetdb://localhost:99999/demo\n"))
        with self.assertRaisesRegex(ConnectError, "Invalid redirect"):
            self.connect(server)


class TestEndpoints(SessionTestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def test_unix_socket(self):
        path = os.path.join(self.tmpdir.name, '.s.monetdb.54321')
        server = self.start(login_and_serve, unix_path=path)
        conn = self.connect(server, url="monetdb:///demo", sock=path)
        self.assertFalse(conn.is_tcp)
        self.assertEqual(server.first_bytes, [b'0'])
        self.assertIn(":sql:demo:", server.responses[0])

    def test_scan_sockdir(self):
        # not a socket, skipped after a failed attempt
        with open(os.path.join(self.tmpdir.name, '.s.monetdb.54320'), 'w'):
            pass
        with open(os.path.join(self.tmpdir.name, '.s.monetdb.notaport'), 'w'):
            pass
        path = os.path.join(self.tmpdir.name, '.s.monetdb.54321')
        server = self.start(login_and_serve, unix_path=path)
        conn = self.connect(server, url="monetdb:///demo", sockdir=self.tmpdir.name)
        self.assertEqual(conn.target.sock, path)
        self.assertFalse(conn.is_tcp)
        self.assertEqual(len(server.responses), 1)

    def test_scan_stops_at_rejection(self):
        def reject(handler):
            handler.login(SQL_CHALLENGE, b"!InvalidCredentialsException:bad password\n")

        rejecting = self.start(reject, unix_path=os.path.join(self.tmpdir.name, '.s.monetdb.54321'))
        other = self.start(login_and_serve, unix_path=os.path.join(self.tmpdir.name, '.s.monetdb.54322'))
        conn = Connection(self.target("monetdb:///demo", sockdir=self.tmpdir.name))
        self.addCleanup(conn.close)
        with self.assertRaisesRegex(AuthenticationError, MSG_AUTH) as cm:
            conn.connect()
        self.assertEqual(cm.exception.server_messages, ["InvalidCredentialsException:bad password"])
        self.assertEqual(len(rejecting.responses), 1)
        self.assertEqual(other.responses, [])
        self.assertTrue(conn.closed)

    def test_connection_refused(self):
        s = socket.socket()
        s.bind(('localhost', 0))
        port = s.getsockname()[1]
        s.close()
        conn = Connection(self.target("monetdb://localhost:%d/demo" % port))
        with self.assertRaises(ConnectError):
            conn.connect()
        self.assertTrue(conn.closed)

    def test_unknown_host(self):
        conn = Connection(self.target("monetdb://nonexistent.invalid/demo"))
        with self.assertRaises(ConnectError):
            conn.connect()

    def test_module_connect(self):
        server = self.start(login_and_serve)
        conn = monetdb_mapi.connect(server.url(), preferences={}, user='alice', password='secret',
                                    timezone=0)
        self.addCleanup(conn.close)
        self.assertEqual(server.responses[0].split(':')[1], 'alice')
        self.assertEqual(conn.target.password, 'secret')

    def test_context_manager(self):
        server = self.start(login_and_serve)
        with Connection(self.target(server.url())) as conn:
            conn.connect()
            self.assertFalse(conn.closed)
        self.assertTrue(conn.closed)

    def test_wire_log(self):
        server = self.start(login_and_serve)
        logfile = os.path.join(self.tmpdir.name, 'wire.log')
        conn = self.connect(server, debug=True, logfile=logfile)
        conn.cmd("sselect 2;")
        with open(logfile, encoding='utf-8') as f:
            log = f.read()
        self.assertIn("TX b'BIG:monetdb:", log)
        self.assertIn("TX b'sselect 2;'", log)


class TestCommands(SessionTestCase):
    def setUp(self):
        def scenario(handler):
            handler.login()
            handler.serve(sql_answer)

        self.server = self.start(scenario)
        self.conn = self.connect(self.server)

    def test_cmd(self):
        result = self.conn.cmd("sselect 1;")
        self.assertEqual(result, "&1 0 1 1 1\n% .L1 # table_name\n% L1 # name\n[ 1\t]")
        self.assertEqual(self.conn.cmd("sinsert into t values (1);"), "&2 1 -1")
        self.assertEqual(self.conn.cmd("sother;"), "")
        self.assertEqual(self.server.commands, ["sselect 1;", "sinsert into t values (1);", "sother;"])

    def test_errors(self):
        with self.assertRaisesRegex(OperationalError, "syntax error"):
            self.conn.cmd("sbad;")
        with self.assertRaises(IntegrityError):
            self.conn.cmd("sduplicate;")
        # still usable
        self.assertEqual(self.conn.cmd("sinsert 1;"), "&2 1 -1")

    def test_info_lines(self):
        with self.assertLogs('monetdb_mapi.mapi', 'INFO') as cm:
            self.assertEqual(self.conn.cmd("schatty;"), "&3")
        self.assertTrue(any("just so you know" in line for line in cm.output))

    def test_more(self):
        self.assertEqual(self.conn.cmd("sincomplete;"), "&3")
        self.assertEqual(self.server.commands, ["sincomplete;", ""])

    def test_reply_stream(self):
        lines = list(self.conn.send("sselect 1;"))
        self.assertEqual([line.type for line in lines],
                         [LineType.QTABLE, LineType.HEADER, LineType.HEADER, LineType.RESULT])
        self.assertEqual(lines[-1].text, "[ 1\t]")

    def test_half_duplex(self):
        reply = self.conn.send("sselect 1;")
        with self.assertRaises(ProgrammingError):
            self.conn.send("sselect 1;")
        next(reply)
        with self.assertRaises(ProgrammingError):
            self.conn.cmd("sselect 1;")
        reply.close()
        self.assertEqual(self.conn.cmd("sinsert 1;"), "&2 1 -1")

    def test_stream_context_manager(self):
        with self.conn.send("sselect 1;") as reply:
            self.assertIs(next(reply).type, LineType.QTABLE)
        self.assertTrue(reply.done)
        self.assertEqual(self.conn.cmd("sinsert 1;"), "&2 1 -1")

    def test_set_reply_size(self):
        self.conn.set_reply_size(42)
        self.assertEqual(self.server.commands[-1], "Xreply_size 42")

    def test_closed(self):
        self.conn.close()
        self.assertTrue(self.conn.closed)
        with self.assertRaises(ProgrammingError):
            self.conn.cmd("sselect 1;")
        # closing twice is fine
        self.conn.close()


class TestConnectionLoss(SessionTestCase):
    def test_server_hangs_up(self):
        def scenario(handler):
            handler.login()
            handler.recv_message()

        server = self.start(scenario)
        conn = self.connect(server)
        with self.assertRaisesRegex(ConnectionLost, MSG_PEER_CLOSED):
            conn.cmd("sselect 1;")
        self.assertTrue(conn.closed)
        with self.assertRaises(ProgrammingError):
            conn.send("sselect 1;")

    def test_timeout(self):
        def scenario(handler):
            handler.login()
            handler.serve(lambda h, cmd: None)

        server = self.start(scenario)
        conn = self.connect(server, so_timeout=200)
        with self.assertRaises(Timeout):
            conn.cmd("sselect 1;")
        self.assertTrue(conn.closed)

    def test_close_from_other_thread(self):
        def scenario(handler):
            handler.login()
            handler.serve(lambda h, cmd: None)

        server = self.start(scenario)
        conn = self.connect(server)
        timer = threading.Timer(0.2, conn.close)
        timer.start()
        self.addCleanup(timer.join)
        with self.assertRaises(ConnectionLost):
            conn.cmd("sselect 1;")
        self.assertTrue(conn.closed)

    def test_invalid_utf8(self):
        def scenario(handler):
            handler.login()
            handler.serve(lambda h, cmd: b"&2 \xff\n")

        server = self.start(scenario)
        conn = self.connect(server)
        with self.assertRaises(ProtocolError):
            conn.cmd("sselect 1;")
        self.assertTrue(conn.closed)


class TextUploader(Uploader):
    def __init__(self, data, chunk_size=None, binary=False):
        self.data = data
        self.chunk_size = chunk_size
        self.binary = binary
        self.calls = []
        self.cancelled = 0

    def handle_upload(self, upload, filename, text_mode, skip_amount):
        self.calls.append((filename, text_mode, skip_amount))
        if self.chunk_size:
            upload.set_chunk_size(self.chunk_size)
        if self.binary:
            upload.binary_writer().write(self.data)
        else:
            upload.text_writer().write(self.data)

    def cancel(self):
        self.cancelled += 1


class RefusingUploader(Uploader):
    def handle_upload(self, upload, filename, text_mode, skip_amount):
        upload.send_error("not allowed: " + filename)


class LazyUploader(Uploader):
    def handle_upload(self, upload, filename, text_mode, skip_amount):
        pass


class FailingUploader(Uploader):
    def handle_upload(self, upload, filename, text_mode, skip_amount):
        upload.binary_writer().write(b"partial")
        raise ValueError("disk on fire")


class NestedUploader(Uploader):
    def __init__(self, conn):
        self.conn = conn

    def handle_upload(self, upload, filename, text_mode, skip_amount):
        self.conn.send("sselect 1;")


class RecordingDownloader(Downloader):
    def __init__(self):
        self.calls = []
        self.data = None

    def handle_download(self, download, filename, text_mode):
        self.calls.append((filename, text_mode))
        if text_mode:
            self.data = download.text_reader().read()
        else:
            self.data = download.binary_reader().read()


class FailingDownloader(Downloader):
    def handle_download(self, download, filename, text_mode):
        raise ValueError("no room")


def upload_answer(filename='data.csv', **kwargs):
    def answer(handler, command):
        if command.startswith('scopy'):
            handler.upload(filename, **kwargs)
            return None
        return b"&3\n"
    return answer


def download_answer(filename, pieces, **kwargs):
    def answer(handler, command):
        if command.startswith('scopy'):
            handler.download(filename, pieces, **kwargs)
            return None
        return b"&3\n"
    return answer


class TestUploads(SessionTestCase):
    def session(self, answer):
        def scenario(handler):
            handler.login()
            handler.serve(answer)

        server = self.start(scenario)
        return server, self.connect(server)

    def test_text_upload(self):
        server, conn = self.session(upload_answer())
        uploader = TextUploader("1|one\r\n2|two\r\n")
        conn.set_uploader(uploader)
        lines = list(conn.send("scopy into t from 'data.csv' on client;"))
        self.assertEqual([line.type for line in lines], [LineType.TRANSFER, LineType.QUPDATE])
        self.assertEqual(lines[0].transfer.filename, 'data.csv')
        self.assertEqual(uploader.calls, [('data.csv', True, 0)])
        self.assertEqual(server.uploads, [b"1|one\n2|two\n"])

    def test_offset(self):
        server, conn = self.session(upload_answer(offset=3))
        uploader = TextUploader("x\n")
        conn.set_uploader(uploader)
        conn.cmd("scopy into t from 'data.csv' on client;")
        self.assertEqual(uploader.calls, [('data.csv', True, 2)])

    def test_binary_chunks(self):
        server, conn = self.session(upload_answer('data.bin', text=False))
        uploader = TextUploader(b"0123456789" * 2 + b"abcde", chunk_size=10, binary=True)
        conn.set_uploader(uploader)
        self.assertEqual(conn.cmd("scopy binary into t from 'data.bin' on client;"), "&2 1 -1")
        self.assertEqual(uploader.calls, [('data.bin', False, 0)])
        self.assertEqual(server.chunks, [[10, 10, 6]])
        self.assertEqual(server.uploads, [b"0123456789" * 2 + b"abcde"])

    def test_server_stops_reading(self):
        server, conn = self.session(upload_answer(stop_after=1))
        uploader = TextUploader("line\n" * 200, chunk_size=10)
        conn.set_uploader(uploader)
        self.assertEqual(conn.cmd("scopy 1 records into t from 'data.csv' on client;"), "&2 1 -1")
        self.assertEqual(uploader.cancelled, 1)
        self.assertEqual(server.uploads, [b"line\nline"])
        # the session is still in sync
        self.assertEqual(conn.cmd("sselect 1;"), "&3")

    def test_refused(self):
        server, conn = self.session(upload_answer())
        conn.set_uploader(RefusingUploader())
        conn.cmd("scopy into t from 'data.csv' on client;")
        self.assertEqual(server.refusals, ["not allowed: data.csv\n"])

    def test_no_uploader(self):
        server, conn = self.session(upload_answer())
        conn.cmd("scopy into t from 'data.csv' on client;")
        self.assertEqual(server.refusals, [MSG_NO_UPLOADER + "\n"])

    def test_unused_upload(self):
        server, conn = self.session(upload_answer())
        conn.set_uploader(LazyUploader())
        conn.cmd("scopy into t from 'data.csv' on client;")
        self.assertEqual(server.refusals, [MSG_UNUSED_UPLOAD % ('LazyUploader', 'data.csv') + "\n"])

    def test_handler_fails(self):
        server, conn = self.session(upload_answer())
        conn.set_uploader(FailingUploader())
        with self.assertRaisesRegex(ValueError, "disk on fire"):
            conn.cmd("scopy into t from 'data.csv' on client;")
        self.assertTrue(conn.closed)
        wait_for(lambda: server.truncated)
        self.assertTrue(server.truncated[0].endswith(b"ERROR\x80ERROR"))
        self.assertEqual(server.uploads, [])

    def test_nested_command(self):
        server, conn = self.session(upload_answer())
        conn.set_uploader(NestedUploader(conn))
        with self.assertRaises(ProgrammingError):
            conn.cmd("scopy into t from 'data.csv' on client;")
        self.assertTrue(conn.closed)

    def test_directory_handler(self):
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        with open(os.path.join(tmpdir.name, 'data.csv'), 'wb') as f:
            f.write(b"1\n2\n3\n")
        server, conn = self.session(upload_answer('data.csv', offset=2))
        conn.set_uploader(SafeDirectoryHandler(tmpdir.name))
        conn.cmd("scopy offset 2 into t from 'data.csv' on client;")
        self.assertEqual(server.uploads, [b"2\n3\n"])


class TestDownloads(SessionTestCase):
    def session(self, answer):
        def scenario(handler):
            handler.login()
            handler.serve(answer)

        server = self.start(scenario)
        return server, self.connect(server)

    def test_binary(self):
        server, conn = self.session(download_answer('out.bin', [b"\x00abc", b"", b"def\xff"], text=False))
        downloader = RecordingDownloader()
        conn.set_downloader(downloader)
        self.assertEqual(conn.cmd("scopy select * from t into 'out.bin' on client;"), "&2 1 -1")
        self.assertEqual(downloader.calls, [('out.bin', False)])
        self.assertEqual(downloader.data, b"\x00abcdef\xff")
        self.assertEqual(server.acks, [b"\n"])

    def test_text(self):
        pieces = ["één|1\n".encode('utf-8')[:1], "één|1\n".encode('utf-8')[1:], b"twee|2\n"]
        server, conn = self.session(download_answer('out.csv', pieces))
        downloader = RecordingDownloader()
        conn.set_downloader(downloader)
        conn.cmd("scopy select * from t into 'out.csv' on client;")
        self.assertEqual(downloader.data, "één|1\ntwee|2\n")

    def test_no_downloader(self):
        server, conn = self.session(download_answer('out.csv', [b"data\n"]))
        conn.cmd("scopy select * from t into 'out.csv' on client;")
        self.assertEqual(server.refusals, [MSG_NO_DOWNLOADER + "\n"])
        self.assertEqual(conn.cmd("sselect 1;"), "&3")

    def test_handler_fails(self):
        server, conn = self.session(download_answer('out.csv', [b"data\n"]))
        conn.set_downloader(FailingDownloader())
        with self.assertRaises(ValueError):
            conn.cmd("scopy select * from t into 'out.csv' on client;")
        self.assertTrue(conn.closed)
        wait_for(lambda: server.truncated)

    def test_directory_handler(self):
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        server, conn = self.session(download_answer('out.csv', [b"a|1\n", b"b|2\n"]))
        conn.set_downloader(SafeDirectoryHandler(tmpdir.name, newline='\r\n'))
        conn.cmd("scopy select * from t into 'out.csv' on client;")
        with open(os.path.join(tmpdir.name, 'out.csv'), 'rb') as f:
            self.assertEqual(f.read(), b"a|1\r\nb|2\r\n")
        self.assertEqual(server.acks, [b"\n"])


class TestHelpers(unittest.TestCase):
    def test_strip_error(self):
        self.assertEqual(strip_error("!42000!syntax error"), "syntax error")
        self.assertEqual(strip_error("!InvalidCredentialsException:x"), "InvalidCredentialsException:x")
        self.assertEqual(strip_error("plain"), "plain")

    def test_quote_identifier(self):
        self.assertEqual(quote_identifier('sys'), '"sys"')
        self.assertEqual(quote_identifier('a"b'), '"a""b"')


if __name__ == "__main__":
    unittest.main()
