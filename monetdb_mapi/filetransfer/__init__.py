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
Classes related to file transfer requests as used by COPY INTO ON CLIENT.
"""

import logging
from typing import Optional

from monetdb_mapi.exceptions import PeerStoppedReading
from monetdb_mapi.filetransfer.uploads import Upload, Uploader, NormalizeCrLf
from monetdb_mapi.filetransfer.downloads import Download, Downloader
from monetdb_mapi.filetransfer.directoryhandler import SafeDirectoryHandler
from monetdb_mapi.replies import TransferRequest

logger = logging.getLogger(__name__)

MSG_UNSUPPORTED = "Client does not support this file transfer yet: %s"
MSG_NO_UPLOADER = "No file upload handler has been registered with monetdb_mapi"
MSG_NO_DOWNLOADER = "No file download handler has been registered with monetdb_mapi"
MSG_UNUSED_UPLOAD = "Call to %s.handle_upload for path '%s' sent neither data nor an error message"
MSG_UNUSED_DOWNLOAD = "Call to %s.handle_download for path '%s' sent neither data nor an error message"

__all__ = [
    "Upload", "Uploader", "Download", "Downloader", "SafeDirectoryHandler",
    "NormalizeCrLf", "handle_file_transfer",
]


def _refuse(mapi, message):
    logger.debug("refusing file transfer: %s", message)
    mapi.channel.write_message((message + "\n").encode('utf-8'))


def handle_file_transfer(mapi, request: Optional[TransferRequest], cmd: str = ''):
    if request is None:
        _refuse(mapi, MSG_UNSUPPORTED % cmd)
        return
    logger.debug("server requests %r", request)
    if request.is_upload:
        handle_upload(mapi, request)
    else:
        handle_download(mapi, request)


def handle_upload(mapi, request: TransferRequest):
    uploader = mapi.uploader
    if not uploader:
        _refuse(mapi, MSG_NO_UPLOADER)
        return
    upload = Upload(mapi, uploader)
    try:
        uploader.handle_upload(upload, request.filename, request.text_mode, request.skip_amount)
    except PeerStoppedReading:
        if not upload.is_cancelled():
            upload._abort()
            mapi._sabotage()
            raise
        logger.debug("upload handler stopped after the server stopped reading")
    except Exception:
        # The protocol has no way to flag an error once the upload has
        # started, the only thing left is to kill the connection.
        upload._abort()
        mapi._sabotage()
        raise
    if not upload.has_been_used():
        upload.send_error(MSG_UNUSED_UPLOAD % (type(uploader).__name__, request.filename))
    upload.close()


def handle_download(mapi, request: TransferRequest):
    downloader = mapi.downloader
    if not downloader:
        _refuse(mapi, MSG_NO_DOWNLOADER)
        return
    download = Download(mapi)
    try:
        downloader.handle_download(download, request.filename, request.text_mode)
    except Exception:
        download._abort()
        mapi._sabotage()
        raise
    if not download.has_been_used():
        download.send_error(MSG_UNUSED_DOWNLOAD % (type(downloader).__name__, request.filename))
    download.close()
