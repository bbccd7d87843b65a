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
The closed set of connection parameters, their types and defaults.
"""

import enum
import os
import time
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Dict, Iterator, Optional

from monetdb_mapi.exceptions import ValidationError

TRUE_WORDS = ('true', 'yes', 'on', '1')
FALSE_WORDS = ('false', 'no', 'off', '0')


class ParameterType(enum.Enum):
    BOOL = 'bool'
    INT = 'int'
    STRING = 'string'
    PATH = 'path'

    def parse(self, name: str, value: Any) -> Any:
        """Convert a string or an already typed value to this type"""
        if self is ParameterType.BOOL:
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                word = value.strip().lower()
                if word in TRUE_WORDS:
                    return True
                if word in FALSE_WORDS:
                    return False
            raise ValidationError("%s: invalid boolean value: %r" % (name, value))

        if self is ParameterType.INT:
            if isinstance(value, bool):
                raise ValidationError("%s: expected an integer, not %r" % (name, value))
            if isinstance(value, int):
                return value
            if isinstance(value, str):
                try:
                    return int(value.strip())
                except ValueError:
                    pass
            raise ValidationError("%s: invalid integer value: %r" % (name, value))

        if self is ParameterType.PATH and isinstance(value, os.PathLike):
            return os.fspath(value)
        if isinstance(value, str):
            return value
        raise ValidationError("%s: expected a string, not %r" % (name, value))

    def format(self, value: Any) -> str:
        if self is ParameterType.BOOL:
            return 'true' if value else 'false'
        return str(value)


class Parameter:
    """
    A named, typed connection setting.

    Core parameters are the ones that make up the body of a URL. They are
    not allowed in the query string. TLS-only parameters are rejected when
    TLS is off.
    """

    def __init__(self, name, type, default, description, core=False, tls_only=False):
        self.name = name
        self.type = type
        self.default = default
        self.description = description
        self.core = core
        self.tls_only = tls_only

    def parse(self, value):
        return self.type.parse(self.name, value)

    def __repr__(self):
        return "Parameter(%r, %s)" % (self.name, self.type.value)


def local_timezone_offset() -> int:
    """Seconds east of UTC, taking daylight saving time into account"""
    if time.daylight and time.localtime().tm_isdst > 0:
        seconds_west = time.altzone
    else:
        seconds_west = time.timezone
    return -seconds_west


class ParameterTable(Mapping):
    """
    Read-only table of Parameters and their default values.

    The table is constructed once and handed to the resolver. Use
    `with_defaults` to derive a table with different defaults, for example
    in tests.
    """

    def __init__(self, parameters, overrides: Optional[Mapping[str, Any]] = None):
        params = {p.name: p for p in parameters}
        defaults = {p.name: p.default for p in parameters}
        for key, value in (overrides or {}).items():
            if key not in params:
                raise ValidationError("unknown parameter '%s'" % key)
            defaults[key] = params[key].parse(value)
        self._params = MappingProxyType(params)
        self._defaults = MappingProxyType(defaults)

    def __getitem__(self, name: str) -> Parameter:
        return self._params[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._params)

    def __len__(self) -> int:
        return len(self._params)

    def lookup(self, name: str) -> Parameter:
        try:
            return self._params[name]
        except KeyError:
            raise ValidationError("unknown parameter '%s'" % name) from None

    def default(self, name: str) -> Any:
        return self._defaults[name]

    def defaults(self) -> Dict[str, Any]:
        return dict(self._defaults)

    def with_defaults(self, **overrides) -> 'ParameterTable':
        merged = dict(self._defaults)
        merged.update(overrides)
        return ParameterTable(self._params.values(), merged)


B = ParameterType.BOOL
I = ParameterType.INT
S = ParameterType.STRING
P = ParameterType.PATH

PARAMETERS = [
    Parameter('tls', B, False, "secure the connection using TLS", core=True),
    Parameter('host', S, '', "IP number, domain name or one of the special values `localhost` and `localhost.`", core=True),
    Parameter('port', I, -1, "TCP port, -1 means the default port 50000", core=True),
    Parameter('database', S, '', "name of database to connect to", core=True),
    Parameter('tableschema', S, '', "only used for REMOTE TABLE, otherwise unused", core=True),
    Parameter('table', S, '', "only used for REMOTE TABLE, otherwise unused", core=True),
    Parameter('sock', P, '', "path to Unix domain socket to connect to"),
    Parameter('sockdir', P, '/tmp', "directory where implicit Unix domain sockets are created"),
    Parameter('sockprefix', S, '.s.monetdb.', "prefix for implicit Unix domain sockets"),
    Parameter('cert', P, '', "path to TLS certificate to authenticate server with", tls_only=True),
    Parameter('certhash', S, '', "hash of server TLS certificate must start with these hex digits; overrides cert", tls_only=True),
    Parameter('clientkey', P, '', "path to TLS key (+certs) to authenticate with as client", tls_only=True),
    Parameter('clientcert', P, '', "path to TLS certs for 'clientkey', if not included there", tls_only=True),
    Parameter('user', S, '', "user name to authenticate as"),
    Parameter('password', S, '', "password to authenticate with"),
    Parameter('language', S, 'sql', "for example, \"sql\", \"mal\", \"msql\", \"profiler\""),
    Parameter('autocommit', B, True, "initial value of autocommit"),
    Parameter('schema', S, '', "initial schema"),
    Parameter('timezone', I, local_timezone_offset(), "client time zone as seconds east of UTC"),
    Parameter('binary', S, 'on', "whether to use binary result set format (number or bool)"),
    Parameter('replysize', I, 250, "rows beyond this limit are retrieved on demand, <1 means unlimited"),
    Parameter('fetchsize', I, -1, "alias for replysize, -1 means not set"),
    Parameter('hash', S, '', "comma separated list of password hash algorithms to allow"),
    Parameter('debug', B, False, "log wire traffic"),
    Parameter('logfile', P, '', "file to write the wire log to"),
    Parameter('so_timeout', I, 0, "socket timeout in milliseconds, 0 means no timeout"),
    Parameter('client_info', B, True, "whether to send client details when connecting"),
    Parameter('client_application', S, '', "application name to send in client details"),
    Parameter('client_remark', S, '', "any client remark to send in client details"),
    Parameter('max_redirects', I, 10, "maximum number of redirects to follow"),
]

DEFAULTS = ParameterTable(PARAMETERS)
