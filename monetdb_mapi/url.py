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
Parsing of MonetDB connection URLs.

Two forms are understood:

    monetdb[s]://[host][:port][/database[/tableschema[/table]]][?key=value&...]
    mapi:monetdb://[host:port][/database][?language=...&database=...]

In the classic mapi: form an empty host means the path is the location of a
Unix domain socket. Parsing produces a list of (parameter, value) settings
that the resolver applies on top of whatever was there before.
"""

import re
from typing import Any, List, Tuple
from urllib.parse import unquote

from monetdb_mapi.exceptions import ValidationError
from monetdb_mapi.parameters import DEFAULTS, ParameterTable

_BAD_ESCAPE = re.compile(r'%(?![0-9a-fA-F]{2})')
_MODERN = re.compile(r'(monetdbs?)://(.*)\Z', re.DOTALL)
_CLASSIC = re.compile(r'([a-z]+)://(.*)\Z', re.DOTALL)

Settings = List[Tuple[str, Any]]


def percent_decode(context: str, text: str) -> str:
    if _BAD_ESCAPE.search(text):
        raise ValidationError("%s: invalid percent escape" % context)
    try:
        return unquote(text, errors='strict')
    except UnicodeDecodeError:
        raise ValidationError("%s: percent escapes are not valid utf-8" % context) from None


def parse_port(url: str, text: str) -> int:
    if text.isdigit():
        port = int(text)
        if 0 < port <= 65535:
            return port
    raise ValidationError("%s: invalid port number" % url)


def parse(url: str, table: ParameterTable = DEFAULTS) -> Settings:
    """Parse `url` into a list of settings to apply in order"""
    if url.startswith('mapi:'):
        return parse_classic(url)
    return parse_modern(url, table)


def parse_modern(url: str, table: ParameterTable = DEFAULTS) -> Settings:
    m = _MODERN.match(url)
    if not m:
        raise ValidationError("%s: URL scheme must be monetdb:// or monetdbs://" % url)
    scheme, rest = m.groups()
    rest, _, query = rest.partition('?')
    authority, _, path = rest.partition('/')

    if authority.startswith('['):
        end = authority.find(']')
        if end < 0:
            raise ValidationError("%s: unmatched '['" % url)
        host = authority[1:end]
        remainder = authority[end + 1:]
    elif ':' in authority:
        idx = authority.index(':')
        host = percent_decode('host', authority[:idx])
        remainder = authority[idx:]
    else:
        host = percent_decode('host', authority)
        remainder = ''

    port = -1
    if remainder:
        if not remainder.startswith(':'):
            raise ValidationError("%s: unexpected text after host name" % url)
        port = parse_port(url, remainder[1:])

    settings = [
        ('tls', scheme == 'monetdbs'),
        ('host', host),
        ('port', port),
        ('sock', ''),
        ('database', ''),
        ('tableschema', ''),
        ('table', ''),
    ]

    if path:
        parts = path.split('/', 2)
        for name, part in zip(('database', 'tableschema', 'table'), parts):
            settings.append((name, percent_decode(name, part)))

    if query:
        for arg in query.split('&'):
            key, eq, value = arg.partition('=')
            if not eq or not key:
                raise ValidationError("%s: invalid key=value pair" % arg)
            key = percent_decode(key, key)
            parm = table.lookup(key)
            if parm.core:
                raise ValidationError("%s= is not allowed as a query parameter" % key)
            settings.append((key, percent_decode(key, value)))

    return settings


def parse_classic(url: str) -> Settings:
    m = _CLASSIC.match(url[5:])
    if not m:
        raise ValidationError("%s: URL scheme must be mapi:monetdb://" % url)
    scheme, rest = m.groups()
    if scheme == 'merovingian':
        raise ValidationError("%s: mapi:merovingian:// is only valid as a redirect" % url)
    if scheme != 'monetdb':
        raise ValidationError("%s: URL scheme must be mapi:monetdb://" % url)

    rest, _, query = rest.partition('?')
    authority, slash, path = rest.partition('/')
    if '@' in authority:
        raise ValidationError("%s: user@host syntax is not allowed" % url)
    host, colon, port_text = authority.partition(':')

    settings = [('host', ''), ('port', -1), ('sock', ''), ('database', '')]
    if colon:
        settings.append(('port', parse_port(url, port_text)))

    if not host and not colon:
        # the path is the socket
        if path:
            settings.append(('sock', slash + path))
    else:
        settings.append(('host', host))
        if path:
            settings.append(('database', path))

    if query:
        for arg in query.split('&'):
            if arg.startswith('language='):
                settings.append(('language', arg[9:]))
            elif arg.startswith('database='):
                settings.append(('database', arg[9:]))
            # anything else is ignored in this form

    return settings
