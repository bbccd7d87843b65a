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
This is the MonetDB MAPI protocol client.

The connection settings are resolved into a Target by monetdb_mapi.target.

The MAPI (MonetDB API) session is in monetdb_mapi.mapi.

File transfers for COPY ... ON CLIENT are in monetdb_mapi.filetransfer.

To set up a connection use monetdb_mapi.connect()

"""
import logging

__version__ = '1.0.0'

logging.getLogger(__name__).addHandler(logging.NullHandler())

from monetdb_mapi import exceptions  # noqa: E402
from monetdb_mapi import dotmonetdb  # noqa: E402
from monetdb_mapi.exceptions import *  # noqa: E402,F401,F403
from monetdb_mapi.target import Target, Verify, resolve  # noqa: E402
from monetdb_mapi.mapi import Connection  # noqa: E402
from monetdb_mapi.replies import Line, LineType, ReplyStream, TransferRequest  # noqa: E402
from monetdb_mapi.filetransfer import Uploader, Downloader, Upload, Download, \
    SafeDirectoryHandler  # noqa: E402

__all__ = [
    "connect", "resolve", "Target", "Verify", "Connection", "Line", "LineType",
    "ReplyStream", "TransferRequest", "Uploader", "Downloader", "Upload",
    "Download", "SafeDirectoryHandler", "exceptions",
]


def connect(url=None, *overlays, preferences=None, preference=None, **overrides) -> Connection:
    """
    Set up a connection to a MonetDB server.

    The settings are taken from the built-in defaults, then the .monetdb
    preferences file (unless `preferences` is given), then the URL, then each
    overlay mapping and finally the keyword arguments. For example

        connect("monetdb://localhost/demo", user="monetdb", password="monetdb")

    `preference` overrides the order in which password digests are chosen.
    """
    if preferences is None:
        preferences = dotmonetdb.load()
    target = resolve(url, *overlays, overrides, preferences=preferences)
    if preference is None:
        conn = Connection(target)
    else:
        conn = Connection(target, preference=preference)
    conn.connect()
    return conn
