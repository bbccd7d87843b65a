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
Resolution of a connection URL plus layered settings into a Target.

A Target is the validated, read-only description of where and how to
connect. It is built by `resolve`, which applies, in order, the defaults
from a ParameterTable, a preferences mapping (usually the .monetdb file),
the URL and any number of explicit overlays. The last writer wins per key.

The connect_* properties interpret the raw settings. In particular an
explicit `sock` wins over `host` as long as TLS is off; with TLS the
connection is always made over TCP.
"""

import enum
import logging
import os
import re
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Tuple

from monetdb_mapi import url as url_parser
from monetdb_mapi.exceptions import ValidationError
from monetdb_mapi.handshake import HashAlgorithm
from monetdb_mapi.parameters import DEFAULTS, ParameterTable, ParameterType

logger = logging.getLogger(__name__)

DEFAULT_PORT = 50000

_NAME_PATTERN = re.compile(r'[a-zA-Z_][-a-zA-Z0-9_.]*\Z')
_HASH_PATTERN = re.compile(r'(sha256:[0-9a-fA-F:]*|\{sha256\}[0-9a-fA-F:]*)\Z', re.IGNORECASE)


class Verify(enum.Enum):
    """How the server certificate is checked. Exactly one applies."""
    NONE = 'none'
    CERT = 'cert'
    HASH = 'hash'
    SYSTEM = 'system'


def parse_binary(value: str) -> int:
    try:
        level = ParameterType.INT.parse('binary', value)
    except ValidationError:
        try:
            level = 65535 if ParameterType.BOOL.parse('binary', value) else 0
        except ValidationError:
            raise ValidationError(
                "binary= must be either a number or true/yes/on/false/no/off") from None
    if level < 0:
        raise ValidationError("binary= cannot be negative")
    return level


def certhash_digits(certhash: str) -> str:
    if certhash.startswith('{'):
        body = certhash[len('{sha256}'):]
    else:
        body = certhash[len('sha256:'):]
    return body.replace(':', '').lower()


class Target:
    """
    Fully validated connection settings.

    Every parameter is available as an attribute, for example
    `target.database`. Targets compare equal when all settings are equal.
    """

    __slots__ = ('_values', '_table')

    def __init__(self, values: Mapping[str, Any], table: ParameterTable = DEFAULTS):
        object.__setattr__(self, '_table', table)
        object.__setattr__(self, '_values', MappingProxyType(dict(values)))
        self._validate()

    def __getattr__(self, name):
        values = object.__getattribute__(self, '_values')
        try:
            return values[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name, value):
        raise AttributeError("Target is read-only, use replace()")

    def __eq__(self, other):
        if not isinstance(other, Target):
            return NotImplemented
        return dict(self._values) == dict(other._values)

    def __hash__(self):
        return hash(tuple(sorted(self._values.items())))

    def __repr__(self):
        return "<Target %s>" % self.summary_url()

    def get(self, name: str) -> Any:
        self._table.lookup(name)
        return self._values[name]

    def as_dict(self):
        return dict(self._values)

    def apply(self, settings: Iterable[Tuple[str, Any]]) -> 'Target':
        """Return a new Target with the given settings applied in order"""
        values = dict(self._values)
        _apply(values, settings, self._table)
        return Target(values, self._table)

    def replace(self, **overrides) -> 'Target':
        return self.apply(overrides.items())

    def apply_url(self, url: str) -> 'Target':
        return self.apply(url_parser.parse(url, self._table))

    def _validate(self):
        v = self._values
        parse_binary(v['binary'])

        if v['port'] != -1 and not (0 < v['port'] <= 65535):
            raise ValidationError("invalid port number %d" % v['port'])

        if v['certhash']:
            if not _HASH_PATTERN.match(v['certhash']):
                raise ValidationError("certificate hash must look like sha256:hexdigits")
            if not certhash_digits(v['certhash']):
                raise ValidationError("certificate hash must contain at least one hex digit")

        if not v['tls']:
            for parm in self._table.values():
                if parm.tls_only and v[parm.name]:
                    raise ValidationError(
                        "%s= is only allowed in combination with monetdbs://" % parm.name)
        elif not v['host']:
            raise ValidationError("monetdbs:// requires a host name, TLS is not possible over Unix domain sockets")

        if v['clientcert'] and not v['clientkey']:
            raise ValidationError("clientcert= is only valid in combination with clientkey=")

        if not v['tls'] and not v['host'] and not v['sock'] and not v['sockdir']:
            raise ValidationError("need either a host name or a Unix domain socket directory")

        if not v['database'] and v['tableschema']:
            raise ValidationError("table schema cannot be set without database")
        if not v['tableschema'] and v['table']:
            raise ValidationError("table cannot be set without schema")
        for name, label in (('database', 'database name'),
                            ('tableschema', 'table schema name'),
                            ('table', 'table name')):
            if v[name] and not _NAME_PATTERN.match(v[name]):
                raise ValidationError("invalid %s: %r" % (label, v[name]))

        if v['so_timeout'] < 0:
            raise ValidationError("so_timeout= cannot be negative")
        if v['max_redirects'] < 0:
            raise ValidationError("max_redirects= cannot be negative")

        for name in self.connect_hash_algorithms or ():
            if name not in HashAlgorithm.__members__:
                raise ValidationError("hash=: unknown password hash algorithm '%s'" % name)

    @property
    def connect_scan(self) -> bool:
        if not self.database:
            return False
        if self.sock or self.host or self.port != -1:
            return False
        return not self.tls

    @property
    def connect_port(self) -> int:
        return DEFAULT_PORT if self.port == -1 else self.port

    @property
    def connect_unix(self) -> str:
        if self.tls:
            return ''
        if self.sock:
            return self.sock
        if not self.host:
            return os.path.join(self.sockdir, "%s%d" % (self.sockprefix, self.connect_port))
        return ''

    @property
    def connect_tcp(self) -> str:
        if self.tls:
            return self.host
        if self.sock:
            return ''
        return self.host or 'localhost'

    @property
    def connect_verify(self) -> Verify:
        if not self.tls:
            return Verify.NONE
        if self.certhash:
            return Verify.HASH
        if self.cert:
            return Verify.CERT
        return Verify.SYSTEM

    @property
    def connect_certhash_digits(self) -> Optional[str]:
        if not self.tls or not self.certhash:
            return None
        return certhash_digits(self.certhash)

    @property
    def connect_clientkey(self) -> str:
        return self.clientkey

    @property
    def connect_clientcert(self) -> str:
        return self.clientcert or self.clientkey

    @property
    def connect_binary(self) -> int:
        return parse_binary(self.binary)

    @property
    def connect_replysize(self) -> int:
        return self.replysize if self.fetchsize == -1 else self.fetchsize

    @property
    def connect_timeout(self) -> Optional[float]:
        return self.so_timeout / 1000 if self.so_timeout else None

    @property
    def connect_hash_algorithms(self):
        """The allowed password digests, or None when unrestricted"""
        if not self.hash:
            return None
        return [name.strip().upper() for name in self.hash.split(',') if name.strip()]

    def summary_url(self) -> str:
        """A URL for use in log messages. It never contains the password."""
        db = "/" + self.database if self.database else ""
        if self.connect_unix and not self.connect_tcp:
            return "monetdb://localhost%s?sock=%s" % (db, self.connect_unix)
        scheme = 'monetdbs' if self.tls else 'monetdb'
        host = self.connect_tcp
        if ':' in host:
            host = "[%s]" % host
        return "%s://%s:%d%s" % (scheme, host, self.connect_port, db)


def _apply(values, settings, table):
    for key, value in settings:
        parm = table.lookup(key)
        values[key] = parm.parse(value)


def resolve(url: Optional[str] = None, *overlays: Mapping[str, Any],
            preferences: Optional[Mapping[str, Any]] = None,
            defaults: ParameterTable = DEFAULTS) -> Target:
    """
    Build a Target from defaults < preferences < url < overlays.

    Raises ValidationError, never touches the network.
    """
    values = defaults.defaults()
    if preferences:
        _apply(values, preferences.items(), defaults)
    if url:
        _apply(values, url_parser.parse(url, defaults), defaults)
    for overlay in overlays:
        _apply(values, overlay.items(), defaults)

    if values['sock'] and values['host'] and not values['tls']:
        logger.debug("both sock= and host= given, using Unix domain socket %s", values['sock'])
    elif values['sock'] and values['tls']:
        logger.debug("ignoring sock=%s, TLS requires TCP", values['sock'])

    return Target(values, defaults)
