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
Reading of the .monetdb preferences file, as used by mclient.

The file holds key=value lines, for example

    user=monetdb
    password=monetdb
    language=sql

Lines starting with # and empty lines are ignored, and so are keys that
only mean something to mclient. The values end up between the built-in
defaults and the connection URL when resolving a Target.
"""

import logging
import os
from typing import Dict, Optional

from monetdb_mapi.exceptions import ValidationError
from monetdb_mapi.parameters import DEFAULTS, ParameterTable

logger = logging.getLogger(__name__)

DOTFILE_NAME = '.monetdb'


def find(environ=None) -> Optional[str]:
    """Locate the preferences file. Returns None if there is none."""
    if environ is None:
        environ = os.environ
    if 'DOTMONETDBFILE' in environ:
        # an empty value explicitly disables the file
        return environ['DOTMONETDBFILE'] or None
    for candidate in (DOTFILE_NAME, os.path.join(os.path.expanduser('~'), DOTFILE_NAME)):
        if os.path.isfile(candidate):
            return candidate
    return None


def parse(text: str, filename='<string>', table: ParameterTable = DEFAULTS) -> Dict[str, str]:
    settings = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        key, eq, value = line.partition('=')
        if not eq:
            raise ValidationError("%s:%d: expected key=value" % (filename, lineno))
        key = key.strip()
        if key not in table:
            # mclient settings such as width or save_history
            logger.debug("%s:%d: ignoring %s=", filename, lineno, key)
            continue
        settings[key] = value.strip()
    return settings


def load(path: Optional[str] = None, table: ParameterTable = DEFAULTS) -> Dict[str, str]:
    """Read the preferences file at `path`, or the one found by `find()`"""
    if path is None:
        path = find()
        if path is None:
            return {}
    logger.debug("reading preferences from %s", path)
    with open(path, encoding='utf-8') as f:
        return parse(f.read(), path, table)
