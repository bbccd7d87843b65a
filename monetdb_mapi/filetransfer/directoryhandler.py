# SPDX-License-Identifier: MPL-2.0
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0.  If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
#
# Copyright 2024, 2025 MonetDB Foundation;
# Copyright August 2008 - 2023 MonetDB B.V.;
# Copyright 1997 - July 2008 CWI.

import bz2
import gzip
import logging
import lzma
import os
import shutil
from typing import Optional

from monetdb_mapi.filetransfer.uploads import Upload, Uploader
from monetdb_mapi.filetransfer.downloads import Download, Downloader

logger = logging.getLogger(__name__)

COMPRESSORS = {
    '.gz': gzip.open,
    '.bz2': bz2.open,
    '.xz': lzma.open,
}


class SafeDirectoryHandler(Uploader, Downloader):
    """
    File transfer handler which uploads and downloads files from a given
    directory, taking care not to allow access to files outside that directory.
    Instances of this class can be registered using monetdb_mapi.Connection's
    set_uploader() and set_downloader() methods.

    When downloading text files, the downloaded text is converted according to
    the `encoding` and `newline` parameters, if present. Valid values for
    `encoding` are any encoding known to Python, or None. Valid values for
    `newline` are `"\\n"`, `"\\r\\n"` or None. None means to use the system
    default.

    For binary up- and downloads, no conversions are applied.

    When uploading text files, the `encoding` parameter indicates how the text
    is read and `newline` is mostly ignored: both `\\n` and `\\r\\n` are valid
    line endings. The exception is that because the server expects its input
    to be `\\n`-terminated UTF-8 text, if you set encoding to "utf-8" and
    newline to "\\n", text mode transfers are performed as binary, which
    improves performance. For uploads, only do this if you are absolutely,
    positively sure that all files in the directory are actually valid UTF-8
    encoded and have Unix line endings.

    If `compression` is set to True, which is the default, the
    SafeDirectoryHandler will automatically compress and decompress files
    with extensions .gz, .bz2 and .xz.
    """

    def __init__(self, dir, encoding: Optional[str] = 'utf-8', newline: Optional[str] = '\n',
                 compression=True):
        self.dir = os.path.normpath(os.path.abspath(os.fspath(dir)))
        self.encoding = encoding
        self.is_utf8 = encoding is not None and encoding.replace('-', '').lower() == 'utf8'
        self.newline = newline
        self.compression = compression

    def secure_resolve(self, filename: str) -> Optional[str]:
        """The absolute path of `filename` below the directory, or None if it is not"""
        p = os.path.normpath(os.path.join(self.dir, filename))
        return p if p.startswith(self.dir + os.sep) else None

    def _opener(self, path):
        if self.compression:
            ext = os.path.splitext(path)[1].lower()
            if ext in COMPRESSORS:
                return COMPRESSORS[ext]
        return open

    def handle_upload(self, upload: Upload, filename: str, text_mode: bool, skip_amount: int):
        """:meta private:"""  # keep the API docs cleaner, this has already been documented on class Uploader.

        p = self.secure_resolve(filename)
        if not p:
            return upload.send_error("File is not in upload directory")
        if not os.path.isfile(p):
            return upload.send_error("File not found")

        opener = self._opener(p)
        binary = not text_mode or (self.is_utf8 and self.newline == '\n' and skip_amount == 0)
        try:
            if binary:
                f = opener(p, 'rb')
            else:
                f = opener(p, 'rt', encoding=self.encoding)
        except OSError as e:
            return upload.send_error(str(e))

        with f:
            if binary:
                self._upload_binary(upload, f)
            else:
                self._upload_text(upload, f, skip_amount)

    def _upload_binary(self, upload: Upload, f):
        bw = upload.binary_writer()
        while not upload.is_cancelled():
            data = f.read(1024 * 1024)
            if not data:
                break
            bw.write(data)

    def _upload_text(self, upload: Upload, f, skip_amount: int):
        tw = upload.text_writer()
        for line in f:
            if upload.is_cancelled():
                break
            if skip_amount > 0:
                skip_amount -= 1
                continue
            tw.write(line)

    def handle_download(self, download: Download, filename: str, text_mode: bool):
        """:meta private:"""

        p = self.secure_resolve(filename)
        if not p:
            return download.send_error("File is not in download directory")
        if os.path.exists(p):
            return download.send_error("File already exists")

        opener = self._opener(p)
        try:
            if text_mode:
                f = opener(p, 'xt', encoding=self.encoding, newline='')
            else:
                f = opener(p, 'xb')
        except OSError as e:
            return download.send_error(str(e))

        with f:
            if text_mode:
                download.set_line_separator(self.newline or os.linesep)
                shutil.copyfileobj(download.text_reader(), f)
            else:
                shutil.copyfileobj(download.binary_reader(), f)
        logger.debug("downloaded %s", p)
