from __future__ import annotations


class GroupLockError(RuntimeError):
    """Base class for agent errors."""


class CorruptStoreError(GroupLockError):
    """Lock store content is not a JSON object of valid lock records."""


class InvalidSessionError(GroupLockError):
    """Credential blob is missing or malformed; a human has to supply a new one."""


class LoginError(GroupLockError):
    """The remote platform rejected the login attempt."""


class ForceReconnect(GroupLockError):
    """Raised by any subsystem to tear down the session and log in again.

    Handlers that catch broad exceptions must re-raise this one.
    """
