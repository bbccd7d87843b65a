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
The MAPI login challenge and the response to it.

A v9 challenge looks like

    salt:servertype:9:ALGO,ALGO,...:LIT|BIG:PWHASH:[sql=N]:[BINARY=N]:[OOBINTR=1]:[CLIENTINFO]:

The password is first hashed with PWHASH, then the hex digest of that plus
the salt is hashed again with the strongest algorithm both sides support.
"""

import enum
import hashlib
import logging
from typing import Callable, Iterable, List, Optional, Sequence

from monetdb_mapi.exceptions import ProtocolError, UnsupportedAlgorithmError, \
    NotSupportedError

logger = logging.getLogger(__name__)

# mapi_handshake_options_levels
LEVEL_AUTOCOMMIT = 1
LEVEL_REPLYSIZE = 2
LEVEL_SIZEHEADER = 3
LEVEL_COLUMNAR_PROTOCOL = 4
LEVEL_TIME_ZONE = 5


class HashAlgorithm(enum.Enum):
    """Password digests the client knows about, by their MAPI name"""
    SHA512 = 'sha512'
    SHA384 = 'sha384'
    SHA256 = 'sha256'
    SHA224 = 'sha224'
    SHA1 = 'sha1'

    def digest(self, text: str) -> str:
        return hashlib.new(self.value, text.encode('utf-8')).hexdigest()


DEFAULT_PREFERENCE = (
    HashAlgorithm.SHA512,
    HashAlgorithm.SHA384,
    HashAlgorithm.SHA256,
    HashAlgorithm.SHA224,
    HashAlgorithm.SHA1,
)


def choose_algorithm(offered: Iterable[str], allowed: Optional[Iterable[str]] = None,
                     preference: Sequence[HashAlgorithm] = DEFAULT_PREFERENCE) -> HashAlgorithm:
    """
    Pick the first algorithm from `preference` that the server offers and
    that is in `allowed`, if given.
    """
    offered = set(name.upper() for name in offered)
    if allowed is not None:
        allowed = set(name.upper() for name in allowed)
    for algo in preference:
        if algo.name not in offered:
            continue
        if allowed is not None and algo.name not in allowed:
            continue
        return algo
    raise UnsupportedAlgorithmError(
        "Unsupported hash algorithms required for login: %s" % ",".join(sorted(offered)))


class Challenge(object):
    """ a parsed server challenge """

    def __init__(self, salt, server_type, protocol, algorithms, endian, password_hash,
                 options_level=0, binary_level=0, oob_intr=False, client_info=False):
        self.salt = salt
        self.server_type = server_type
        self.protocol = protocol
        self.algorithms = algorithms
        self.endian = endian
        self.password_hash = password_hash
        self.options_level = options_level
        self.binary_level = binary_level
        self.oob_intr = oob_intr
        self.client_info = client_info


def parse_challenge(text: str) -> Challenge:
    parts = text.split(':')
    if len(parts) < 7 or parts[-1] != '':
        raise ProtocolError("Server sent invalid challenge: %r" % text[:100])
    parts.pop()

    salt, server_type, protocol, hashes, endian, password_hash = parts[:6]
    if protocol != '9':
        raise NotSupportedError("We only speak protocol v9, server sent %r" % protocol)
    if endian not in ('LIT', 'BIG'):
        raise ProtocolError("Unknown byte order: %s" % endian)

    challenge = Challenge(salt, server_type, protocol,
                          [h for h in hashes.split(',') if h], endian, password_hash)

    for part in parts[6:]:
        if part.startswith('BINARY='):
            challenge.binary_level = _level(part, 7)
        elif part.startswith('OOBINTR='):
            challenge.oob_intr = _level(part, 8) > 0
        elif part == 'CLIENTINFO':
            challenge.client_info = True
        else:
            for option in part.split(','):
                if option.startswith('sql='):
                    challenge.options_level = _level(option, 4)
    return challenge


def _level(part, skip):
    try:
        return int(part[skip:])
    except ValueError:
        raise ProtocolError("invalid level in server challenge: %s" % part) from None


class HandshakeOption(object):
    """
    Option that can be set during the MAPI handshake

    Sent as <name>=<val> where <val> is `value` converted to int, provided
    the server's options level is above `level`. Otherwise `fallback` is a
    function that produces the command to send after login instead, or None
    if there is no such command.
    """

    def __init__(self, level: int, name: str, fallback: Optional[Callable[[object], str]], value):
        self.level = level
        self.name = name
        self.fallback = fallback
        self.value = value
        self.sent = False

    def __repr__(self):
        return "HandshakeOption(%s=%r)" % (self.name, self.value)


def format_time_zone(seconds: int) -> str:
    sign = '-' if seconds < 0 else '+'
    minutes = abs(seconds) // 60
    return "sSET TIME ZONE INTERVAL '%s%02d:%02d' HOUR TO MINUTE;" % (sign, minutes // 60, minutes % 60)


def sql_options(target) -> List[HandshakeOption]:
    """ the handshake options for an sql session on `target` """
    return [
        HandshakeOption(LEVEL_AUTOCOMMIT, 'auto_commit',
                        lambda v: "Xauto_commit %d" % int(v), target.autocommit),
        HandshakeOption(LEVEL_REPLYSIZE, 'reply_size',
                        lambda v: "Xreply_size %d" % v, target.connect_replysize),
        HandshakeOption(LEVEL_SIZEHEADER, 'size_header',
                        lambda v: "Xsizeheader %d" % int(v), True),
        # only ever sent during the handshake
        HandshakeOption(LEVEL_COLUMNAR_PROTOCOL, 'columnar_protocol', None, False),
        HandshakeOption(LEVEL_TIME_ZONE, 'time_zone',
                        lambda v: format_time_zone(v), target.timezone),
    ]


def challenge_response(challenge: Challenge, target, options=(),
                       preference: Sequence[HashAlgorithm] = DEFAULT_PREFERENCE):
    """
    Generate a response to a mapi login challenge.

    Returns the response text, the HashAlgorithm used and the list of options
    that could not be sent in the handshake.
    """
    if challenge.server_type == 'merovingian' and target.language != 'control':
        # we want to be forwarded, hide real credentials
        user = 'merovingian'
        password = 'merovingian'
    else:
        user = target.user
        password = target.password

    try:
        pw_hash = hashlib.new(challenge.password_hash.lower(), password.encode('utf-8'))
    except ValueError as e:
        raise UnsupportedAlgorithmError("Server wants password hash %s: %s" %
                                        (challenge.password_hash, e)) from None
    algo = choose_algorithm(challenge.algorithms, target.connect_hash_algorithms, preference)
    logger.debug("using password digest %s", algo.name)
    digest = algo.digest(pw_hash.hexdigest() + challenge.salt)

    response = ":".join([
        "BIG",
        user,
        "{%s}%s" % (algo.name, digest),
        target.language,
        target.database,
        "FILETRANS",
    ]) + ":"

    sent = []
    for opt in options:
        if opt.level < challenge.options_level:
            sent.append("%s=%d" % (opt.name, int(opt.value)))
            opt.sent = True
    response += ",".join(sent) + ":"

    remaining = [opt for opt in options if not opt.sent]
    return response, algo, remaining
