"""
Session Cache
=============

Lets a derived vault key be reused across invocations for a bounded
window without re-running the passphrase KDF.

Two-layer wrapping:
    vault key
        ↓ XChaCha20-Poly1305 under a random per-session key
    encrypted_vault_key
    session key
        ↓ XChaCha20-Poly1305 under HKDF(device secret from SecretBackend)
    session_key

Security Features:
- Session file is owner-only (0600) and replaced atomically
- Expired sessions are deleted on first sight
- Any unwrap failure invalidates and removes the session
"""

from __future__ import annotations

import binascii
import json
import logging
from base64 import b64decode, b64encode
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Final, Optional

from vaultctl.core.crypto import expand_key, generate_key, unwrap_key, wrap_key
from vaultctl.core.errors import (
    AuthenticationFailure,
    InvalidSession,
    NoActiveSession,
    ParseFailure,
    SessionExpired,
    StorageIO,
    ValidationError,
)
from vaultctl.core.memory import ZeroizeContext, secure_zero
from vaultctl.session.secret_backend import SecretBackend
from vaultctl.utils.locking import FileLock, lock_path_for
from vaultctl.utils.paths import atomic_write_bytes

DEFAULT_SESSION_TIMEOUT: Final[timedelta] = timedelta(minutes=30)
DEFAULT_SECRET_NAME: Final[str] = "vaultctl/session-key"
SESSION_WRAP_INFO: Final[bytes] = b"vaultctl session key wrap v1"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class SessionRecord:
    """
    Persisted session: both wrapped layers plus the validity window.

    Field names match the session file written by earlier releases.
    """
    encrypted_vault_key: bytes
    nonce: bytes
    session_key: bytes
    session_key_nonce: bytes
    created_at: datetime
    expires_at: datetime

    def __repr__(self) -> str:
        """Safe representation without key material."""
        return f"SessionRecord(expires_at={self.expires_at.isoformat()})"

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_json(self) -> bytes:
        return json.dumps({
            "encrypted_vault_key": b64encode(self.encrypted_vault_key).decode("ascii"),
            "nonce": b64encode(self.nonce).decode("ascii"),
            "session_key": b64encode(self.session_key).decode("ascii"),
            "session_key_nonce": b64encode(self.session_key_nonce).decode("ascii"),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> "SessionRecord":
        """
        Raises:
            ParseFailure: If the session file is malformed
        """
        try:
            raw: dict[str, Any] = json.loads(data)
            if not raw.get("session_key") or not raw.get("session_key_nonce"):
                raise ParseFailure("session key not found in session data")
            return cls(
                encrypted_vault_key=b64decode(raw["encrypted_vault_key"], validate=True),
                nonce=b64decode(raw["nonce"], validate=True),
                session_key=b64decode(raw["session_key"], validate=True),
                session_key_nonce=b64decode(raw["session_key_nonce"], validate=True),
                created_at=_aware(datetime.fromisoformat(raw["created_at"])),
                expires_at=_aware(datetime.fromisoformat(raw["expires_at"])),
            )
        except (json.JSONDecodeError, UnicodeDecodeError, binascii.Error,
                AttributeError, KeyError, TypeError, ValueError) as e:
            raise ParseFailure(f"malformed session file: {e}") from e


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SessionCache:
    """
    File-persisted, device-secret-protected cache of the vault key.

    Usage:
        cache = SessionCache(config.paths.session_path, FileSecretBackend(dir))

        cache.save_session(vault_key)      # after a passphrase unlock
        vault_key = cache.load_session()   # later invocation, same window
        cache.clear_session()              # on lock

    Raises from load_session:
        NoActiveSession: No session file
        SessionExpired: Window elapsed (file removed)
        InvalidSession: File unreadable or unwrap failed (file removed)
    """

    __slots__ = (
        "_path", "_backend", "_timeout", "_secret_name",
        "_clock", "_lock", "_session_key", "_log",
    )

    def __init__(
        self,
        path: Path | str,
        backend: SecretBackend,
        timeout: timedelta = DEFAULT_SESSION_TIMEOUT,
        secret_name: str = DEFAULT_SECRET_NAME,
        clock: Optional[Callable[[], datetime]] = None,
        lock_timeout: float = 10.0,
    ) -> None:
        if timeout <= timedelta(0):
            raise ValidationError("Session timeout must be positive")
        self._path = Path(path)
        self._backend = backend
        self._timeout = timeout
        self._secret_name = secret_name
        self._clock = clock or _utcnow
        self._lock = FileLock(lock_path_for(self._path), timeout=lock_timeout)
        self._session_key: Optional[bytearray] = None
        self._log = logging.getLogger("vaultctl.session")

    @property
    def path(self) -> Path:
        return self._path

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    def _wrapping_key(self) -> bytearray:
        """Session-key wrapping key, bound to this use of the device secret."""
        device_secret = self._backend.get_or_create_named_secret(self._secret_name)
        return expand_key(device_secret, info=SESSION_WRAP_INFO)

    def _read_record(self) -> SessionRecord:
        try:
            data = self._path.read_bytes()
        except FileNotFoundError as e:
            raise NoActiveSession() from e
        except OSError as e:
            raise StorageIO(f"failed to read session file: {e}") from e
        return SessionRecord.from_json(data)

    def _session_key_for_save(self, wrapping_key: bytearray) -> bytearray:
        """Reuse the in-process key, then the one in an existing file, else a new one."""
        if self._session_key is not None:
            return self._session_key

        try:
            record = self._read_record()
            self._session_key = unwrap_key(record.session_key, record.session_key_nonce, wrapping_key)
        except (NoActiveSession, ParseFailure, AuthenticationFailure, ValidationError):
            self._session_key = generate_key()

        return self._session_key

    def save_session(self, vault_key: bytes | bytearray, timeout: Optional[timedelta] = None) -> SessionRecord:
        """
        Wrap and persist the vault key for the session window.

        Args:
            vault_key: Unwrapped vault key
            timeout: Override for this session's window

        Returns:
            The persisted SessionRecord

        Raises:
            ValidationError: If the override is not positive
        """
        if timeout is not None and timeout <= timedelta(0):
            raise ValidationError("Session timeout must be positive")
        window = self._timeout if timeout is None else timeout
        with self._lock:
            wrapping_key = self._wrapping_key()
            with ZeroizeContext(wrapping_key):
                session_key = self._session_key_for_save(wrapping_key)
                encrypted_vault_key, nonce = wrap_key(vault_key, session_key)
                wrapped_session_key, session_key_nonce = wrap_key(session_key, wrapping_key)

            now = self._clock()
            record = SessionRecord(
                encrypted_vault_key=encrypted_vault_key,
                nonce=nonce,
                session_key=wrapped_session_key,
                session_key_nonce=session_key_nonce,
                created_at=now,
                expires_at=now + window,
            )
            try:
                atomic_write_bytes(self._path, record.to_json())
            except OSError as e:
                raise StorageIO(f"failed to write session file: {e}") from e

        self._log.info(f"Session saved, expires at {record.expires_at.isoformat()}")
        return record

    def load_session(self) -> bytearray:
        """
        Recover the vault key from an active session.

        Returns:
            The vault key in a wipeable buffer
        """
        with self._lock:
            try:
                record = self._read_record()
            except ParseFailure as e:
                self._invalidate()
                raise InvalidSession(str(e)) from e

            if record.is_expired(self._clock()):
                self._invalidate()
                self._log.info("Session expired")
                raise SessionExpired()

            try:
                wrapping_key = self._wrapping_key()
                with ZeroizeContext(wrapping_key):
                    session_key = unwrap_key(record.session_key, record.session_key_nonce, wrapping_key)
            except (AuthenticationFailure, ValidationError, ParseFailure) as e:
                self._invalidate()
                raise InvalidSession("failed to decrypt session key") from e

            try:
                vault_key = unwrap_key(record.encrypted_vault_key, record.nonce, session_key)
            except (AuthenticationFailure, ValidationError) as e:
                secure_zero(session_key)
                self._invalidate()
                raise InvalidSession("failed to decrypt vault key") from e

            if self._session_key is not None and self._session_key is not session_key:
                secure_zero(self._session_key)
            self._session_key = session_key
            return vault_key

    def has_active_session(self) -> bool:
        try:
            vault_key = self.load_session()
        except (NoActiveSession, SessionExpired, InvalidSession):
            return False
        secure_zero(vault_key)
        return True

    def _invalidate(self) -> None:
        self._path.unlink(missing_ok=True)
        self._discard_session_key()

    def _discard_session_key(self) -> None:
        if self._session_key is not None:
            secure_zero(self._session_key)
            self._session_key = None

    def clear_session(self) -> None:
        """Delete the session file and forget the in-process key. Idempotent."""
        with self._lock:
            try:
                self._path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageIO(f"failed to remove session file: {e}") from e
            finally:
                self._discard_session_key()
        self._log.info("Session cleared")

    def __repr__(self) -> str:
        return f"SessionCache(path={str(self._path)!r}, timeout={self._timeout})"
