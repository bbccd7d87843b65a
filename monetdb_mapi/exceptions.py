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
MonetDB MAPI client specific exceptions

The first half of this module is the usual Python DB API hierarchy. The second
half adds the protocol level categories raised while resolving a target,
setting up a connection and streaming files. Each of those carries a fixed
message fragment so callers can match on the text instead of the type.
"""

# Stable message fragments, one per diagnostic category
MSG_UNTRUSTED = "certificate verify failed: untrusted certificate"
MSG_HOSTNAME = "certificate verify failed: hostname mismatch"
MSG_EXPIRED = "certificate verify failed: certificate has expired"
MSG_PROTOCOL_VERSION = "unsupported TLS protocol version"
MSG_ALPN = "ALPN negotiation failed"
MSG_CERTHASH = "does not match certhash"
MSG_AUTH = "authentication rejected"
MSG_PEER_CLOSED = "connection closed by peer"
MSG_TIMEOUT = "timed out"
MSG_STOPPED_READING = "server stopped reading"


class Warning(Exception):
    """Exception raised for important warnings like data
    truncations while inserting, etc."""
    pass


class Error(Exception):
    """Exception that is the base class of all other error
    exceptions. You can use this to catch all errors with one
    single 'except' statement. Warnings are not considered
    errors and thus should not use this class as base."""
    pass


class InterfaceError(Error):
    """Exception raised for errors that are related to the
    database interface rather than the database itself."""
    pass


class DatabaseError(Error):
    """Exception raised for errors that are related to the
    database."""
    pass


class DataError(DatabaseError):
    """Exception raised for errors that are due to problems with
    the processed data like division by zero, numeric value
    out of range, etc."""
    pass


class OperationalError(DatabaseError):
    """Exception raised for errors that are related to the
    database's operation and not necessarily under the control
    of the programmer, e.g. an unexpected disconnect occurs,
    the data source name is not found, a transaction could not
    be processed, etc."""
    pass


class IntegrityError(DatabaseError):
    """Exception raised when the relational integrity of the
    database is affected, e.g. a foreign key check fails."""
    pass


class InternalError(DatabaseError):
    """Exception raised when the database encounters an internal
    error, e.g. the transaction is out of sync."""
    pass


class ProgrammingError(DatabaseError):
    """Exception raised for programming errors, e.g. table not
    found or already exists, syntax error in the SQL
    statement, or a request sent while the previous reply
    has not been consumed."""
    pass


class NotSupportedError(DatabaseError):
    """Exception raised in case a method or protocol feature was used which is
    not supported by the server or by this client."""
    pass


class ConfigurationError(InterfaceError):
    """Invalid connection URL or parameter. Raised before any network
    I/O takes place."""
    pass


# the name used by the URL parser and the parameter table
ValidationError = ConfigurationError


class ConnectError(OperationalError):
    """The endpoint could not be reached, or the redirect chain could not be
    followed to a usable endpoint."""
    pass


class TLSError(ConnectError):
    """TLS could not be set up. The connection has been closed."""
    pass


class UntrustedCertificateError(TLSError):
    """The server's certificate chain is not trusted"""
    pass


class HostnameMismatchError(TLSError):
    """The server's certificate is not valid for the requested host name"""
    pass


class ExpiredCertificateError(TLSError):
    """The server's certificate is expired or not yet valid"""
    pass


class ProtocolVersionError(TLSError):
    """The server refused TLS 1.3, or only offers older versions"""
    pass


class AlpnMismatchError(TLSError):
    """The server did not agree to speak MAPI over the TLS tunnel"""
    pass


class CertificateHashMismatchError(TLSError):
    """The server's certificate does not have the pinned hash"""
    pass


class AuthenticationError(OperationalError):
    """The server rejected the login. The literal server messages are kept in
    `server_messages`."""

    def __init__(self, message, server_messages=()):
        super().__init__(message)
        self.server_messages = list(server_messages)


class UnsupportedAlgorithmError(AuthenticationError, NotSupportedError):
    """None of the password digests offered by the server is usable"""
    pass


class ProtocolError(OperationalError):
    """Malformed block, desynchronized framing or an unexpected message"""
    pass


class ConnectionLost(OperationalError):
    """The connection was closed by the peer, or by a concurrent close()"""
    pass


class Timeout(ConnectionLost):
    """A blocking socket operation exceeded its timeout"""
    pass


class TransferError(OperationalError):
    """Something went wrong while streaming a file to or from the server"""
    pass


class PeerStoppedReading(TransferError):
    """The server has indicated it does not want any more upload data, for
    example because the row limit of a COPY INTO was reached."""
    pass
