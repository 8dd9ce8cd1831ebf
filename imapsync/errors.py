"""Exceptions raised while synchronizing an account.

Every error that should abort the current account's run derives from
SyncError, so the account driver can log it and move on to the next
account.
"""


class SyncError(Exception):
    """Base class for synchronization failures."""
    pass


class ConfigError(SyncError):
    """Missing or invalid account configuration."""
    pass


class RemoteConnectionError(SyncError):
    """The transport to the IMAP server could not be established."""
    pass


class AuthenticationError(SyncError):
    """The IMAP server rejected our credentials."""
    pass


class ProtocolError(SyncError):
    """The server answered, but not with what we need."""
    pass


class ConsistencyError(SyncError):
    """Local and remote UIDVALIDITY disagree.

    A full resynchronization is not implemented, so this is terminal for
    the folder.
    """
    pass


class StorageError(SyncError):
    """A local Maildir operation failed."""
    pass
