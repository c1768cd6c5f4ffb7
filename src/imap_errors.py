"""
IMAP Archive Errors

Exception hierarchy shared by the archiver modules.

Run-fatal: ConfigInvalid, AuthError (and subclasses), and ProtocolError raised
before any mailbox worker starts. Everything else is local to one mailbox or
one message and is logged rather than propagated.
"""


class ArchiveError(Exception):
    """Base exception for all archiver errors."""


class ConfigInvalid(ArchiveError):
    """Missing email, no usable credential variant, or a malformed setting."""


class AuthError(ArchiveError):
    """OAuth2 credential could not be obtained."""


class ExchangeFailed(AuthError):
    """The authorization code was rejected, empty, or malformed."""


class RefreshFailed(AuthError):
    """The refresh token could not be exchanged for a new access token."""


class ProtocolError(ArchiveError):
    """Connect, login, or LIST failure, or a broken IMAP session."""


class ScanError(ArchiveError):
    """SELECT or UID scan of a mailbox failed."""


class FetchError(ArchiveError):
    """A single message could not be fetched or written."""

    def __init__(self, uid, reason):
        super().__init__(f"UID {uid}: {reason}")
        self.uid = uid
        self.reason = reason
