"""
Error Kinds
===========

Every failure the vault core reports derives from VaultError, so callers
can handle the whole family at one seam while still branching on the
specific kind.

None of these conditions is process-fatal.
"""

from __future__ import annotations

from typing import Optional


class VaultError(Exception):
    """Base exception for all vault errors."""
    pass


class ValidationError(VaultError, ValueError):
    """Raised for malformed input (e.g. mismatched passphrase confirmation)."""
    pass


class AuthenticationFailure(VaultError):
    """
    Raised when AEAD verification fails.

    A wrong key and tampered data are indistinguishable.
    """

    def __init__(self, message: str = "invalid passphrase or corrupted data") -> None:
        super().__init__(message)


class InvalidPassphrase(AuthenticationFailure):
    """Raised when a passphrase cannot unwrap the vault key."""
    pass


class NotFound(VaultError):
    """Base for missing vault, entry, remote record or session."""
    pass


class VaultNotFound(NotFound):
    """Raised when no local vault exists."""
    pass


class EntryNotFound(NotFound):
    """Raised when no entry matches an id or name."""

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Entry not found: {identifier}")
        self.identifier = identifier


class RemoteNotFound(NotFound):
    """Raised when the remote store holds no record for the account."""
    pass


class SessionError(VaultError):
    """Base exception for session cache errors."""
    pass


class NoActiveSession(SessionError, NotFound):
    """Raised when no session file exists."""

    def __init__(self, message: str = "no active session") -> None:
        super().__init__(message)


class SessionExpired(SessionError):
    """Raised when the session window has elapsed."""

    def __init__(self, message: str = "session expired") -> None:
        super().__init__(message)


class InvalidSession(SessionError):
    """Raised when a session file cannot be unwrapped or parsed."""
    pass


class VersionConflict(VaultError):
    """Raised when a conditional write observes an unexpected version."""

    def __init__(
        self,
        expected: Optional[int],
        actual: Optional[int] = None,
    ) -> None:
        expected_text = "none" if expected is None else str(expected)
        actual_text = "unknown" if actual is None else str(actual)
        super().__init__(
            f"version conflict: expected {expected_text}, remote is at {actual_text}"
        )
        self.expected = expected
        self.actual = actual


class SyncFailed(VaultError):
    """Raised when sync exhausts its conflict retries."""
    pass


class StorageIO(VaultError):
    """Raised on disk or backend I/O failure."""
    pass


class ParseFailure(VaultError):
    """Raised when persisted content cannot be decoded."""
    pass


class AlreadyInitialized(VaultError):
    """Raised when init is attempted over an existing vault."""
    pass


class VaultLocked(VaultError):
    """Raised when an operation needs an unlocked vault context."""

    def __init__(self, message: str = "vault is locked") -> None:
        super().__init__(message)
