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
Wrapping a freshly connected TCP socket in TLS.

MAPI over TLS requires TLS 1.3 and the ALPN protocol "mapi/9". The server
certificate is checked against a certificate file, a pinned certificate
hash or the system trust store, depending on the Target. Any failure
closes the socket and raises one of the TLSError subclasses.
"""

import hashlib
import logging
import socket
import ssl

from monetdb_mapi.exceptions import TLSError, UntrustedCertificateError, \
    HostnameMismatchError, ExpiredCertificateError, ProtocolVersionError, \
    AlpnMismatchError, CertificateHashMismatchError, Timeout, \
    MSG_UNTRUSTED, MSG_HOSTNAME, MSG_EXPIRED, MSG_PROTOCOL_VERSION, MSG_ALPN, \
    MSG_CERTHASH, MSG_TIMEOUT
from monetdb_mapi.target import Verify

logger = logging.getLogger(__name__)

ALPN_PROTOCOLS = ["mapi/9"]

# OpenSSL X509_V_ERR_* codes
X509_V_ERR_CERT_NOT_YET_VALID = 9
X509_V_ERR_CERT_HAS_EXPIRED = 10
X509_V_ERR_HOSTNAME_MISMATCH = 62
X509_V_ERR_IP_ADDRESS_MISMATCH = 64

_PROTOCOL_VERSION_REASONS = (
    'UNSUPPORTED_PROTOCOL',
    'TLSV1_ALERT_PROTOCOL_VERSION',
    'NO_PROTOCOLS_AVAILABLE',
    'WRONG_SSL_VERSION',
)
_ALPN_REASONS = (
    'NO_APPLICATION_PROTOCOL',
    'TLSV1_ALERT_NO_APPLICATION_PROTOCOL',
)


def system_context(target):
    return ssl.create_default_context()


def cert_context(target):
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    try:
        ctx.load_verify_locations(target.cert)
    except (OSError, ssl.SSLError) as e:
        raise TLSError("could not load certificate file %s: %s" % (target.cert, e)) from e
    # allow pinning a leaf certificate rather than a CA
    ctx.verify_flags |= ssl.VERIFY_X509_PARTIAL_CHAIN
    return ctx


def hash_context(target):
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


CONTEXT_FACTORIES = {
    Verify.SYSTEM: system_context,
    Verify.CERT: cert_context,
    Verify.HASH: hash_context,
}


def make_context(target) -> ssl.SSLContext:
    """ set up an SSLContext according to the verification mode of the target """
    mode = target.connect_verify
    if mode not in CONTEXT_FACTORIES:
        raise TLSError("TLS is not enabled for %s" % target.summary_url())
    ctx = CONTEXT_FACTORIES[mode](target)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_3
    ctx.set_alpn_protocols(ALPN_PROTOCOLS)
    if target.connect_clientkey:
        try:
            ctx.load_cert_chain(target.connect_clientcert, target.connect_clientkey)
        except (OSError, ssl.SSLError) as e:
            raise TLSError("could not load client key %s: %s" % (target.connect_clientkey, e)) from e
    return ctx


def classify(error: Exception, host: str) -> TLSError:
    """Turn an exception raised by the ssl module into one of our categories"""
    if isinstance(error, ssl.SSLCertVerificationError):
        detail = error.verify_message or str(error)
        code = error.verify_code
        if code in (X509_V_ERR_CERT_HAS_EXPIRED, X509_V_ERR_CERT_NOT_YET_VALID):
            return ExpiredCertificateError("%s: %s" % (MSG_EXPIRED, detail))
        if code in (X509_V_ERR_HOSTNAME_MISMATCH, X509_V_ERR_IP_ADDRESS_MISMATCH):
            return HostnameMismatchError("%s: certificate is not valid for '%s'" % (MSG_HOSTNAME, host))
        return UntrustedCertificateError("%s: %s" % (MSG_UNTRUSTED, detail))
    if isinstance(error, ssl.SSLError):
        reason = getattr(error, 'reason', None) or ''
        if reason in _PROTOCOL_VERSION_REASONS:
            return ProtocolVersionError("%s: %s" % (MSG_PROTOCOL_VERSION, error))
        if reason in _ALPN_REASONS:
            return AlpnMismatchError("%s: %s" % (MSG_ALPN, error))
        return TLSError("TLS handshake failed: %s" % error)
    return TLSError("TLS handshake failed: %s" % error)


def verify_fingerprint(conn: ssl.SSLSocket, digits: str, certhash: str):
    der = conn.getpeercert(binary_form=True)
    if not der:
        raise CertificateHashMismatchError("server did not present a certificate, it %s %s" %
                                           (MSG_CERTHASH, certhash))
    digest = hashlib.sha256(der).hexdigest()
    if not digest.startswith(digits):
        raise CertificateHashMismatchError("server certificate %s %s" % (MSG_CERTHASH, certhash))


def wrap(sock, target) -> ssl.SSLSocket:
    """
    Perform the TLS handshake on `sock` and check the server's identity.

    On failure `sock` is closed and a TLSError subclass is raised.
    """
    host = target.connect_tcp
    try:
        ctx = make_context(target)
        conn = ctx.wrap_socket(sock, server_hostname=host)
    except TLSError:
        sock.close()
        raise
    except socket.timeout:
        sock.close()
        raise Timeout("%s during the TLS handshake" % MSG_TIMEOUT) from None
    except ssl.SSLError as e:
        sock.close()
        raise classify(e, host) from e
    except OSError as e:
        sock.close()
        raise TLSError("TLS handshake failed: %s" % e) from e

    try:
        selected = conn.selected_alpn_protocol()
        if selected not in ALPN_PROTOCOLS:
            raise AlpnMismatchError("%s: server selected %r, expected one of %s" %
                                    (MSG_ALPN, selected, ALPN_PROTOCOLS))
        if target.connect_verify == Verify.HASH:
            verify_fingerprint(conn, target.connect_certhash_digits, target.certhash)
            logger.debug("TLS certificate matches hash %s", target.certhash)
        else:
            logger.debug("valid TLS certificate for %s", host)
    except TLSError:
        conn.close()
        raise
    logger.debug("TLS connection established: %s, ALPN %s", conn.version(), selected)
    return conn
