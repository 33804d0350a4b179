"""
Vault Manager
=============

Orchestrates the vault lifecycle over the local replica, the remote
store and the session cache.

State Machine:
    Uninitialized --init--> Unlocked
    Locked --unlock / unlock_from_session--> Unlocked
    Unlocked --lock--> Locked
    Unlocked --sync (remote newer)--> Locked

Every mutation re-encrypts the record model under the existing vault key
with a fresh nonce, bumps the envelope version by one, persists locally
and then pushes to the remote store expecting the previous version.

Remote pushes follow ``RemotePushMode``:
    - BEST_EFFORT: failures are logged, the local write stands
    - STRICT: failures propagate after the local write
    - DISABLED: nothing is pushed
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Final, List, Optional, Tuple

from vaultctl.core.config import RemotePushMode, VaultctlConfig
from vaultctl.core.crypto import KDFParams
from vaultctl.core.errors import (
    AlreadyInitialized,
    AuthenticationFailure,
    InvalidPassphrase,
    InvalidSession,
    NoActiveSession,
    NotFound,
    ParseFailure,
    RemoteNotFound,
    SessionError,
    SessionExpired,
    StorageIO,
    SyncFailed,
    ValidationError,
    VaultLocked,
    VaultNotFound,
    VersionConflict,
)
from vaultctl.core.memory import ZeroizeContext, constant_time_equal, secure_zero, to_private_buffer
from vaultctl.security.audit import AuditEventType, AuditSeverity, TamperAwareAuditLog
from vaultctl.session import FileSecretBackend, SecretBackend, SessionCache
from vaultctl.storage import (
    LocalReplicaStore,
    RemoteStore,
    SQLiteRemoteStore,
    SyncEngine,
    SyncResult,
)
from vaultctl.storage.sync import DEFAULT_MAX_RETRIES
from vaultctl.utils.paths import atomic_write_bytes, ensure_private_dir
from vaultctl.vault.envelope import (
    Envelope,
    create_envelope,
    decrypt_vault,
    open_envelope,
    reseal,
    rewrap,
    unwrap_vault_key,
)
from vaultctl.vault.models import Entry, EntrySummary, Vault

Passphrase = bytes | bytearray | str
PassphraseSource = Callable[[], Passphrase]

BACKUP_SUFFIX: Final[str] = ".enc"


def _passphrase_buffer(passphrase: Passphrase) -> bytearray:
    if isinstance(passphrase, str):
        return bytearray(passphrase.encode("utf-8"))
    return to_private_buffer(passphrase)


def _backup_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


@dataclass
class VaultContext:
    """
    In-memory state of one opened vault.

    Holds the decrypted record model and the unwrapped vault key while
    unlocked. ``lock()`` wipes the key and drops the model; the last
    known envelope is kept for inspection.
    """
    envelope: Optional[Envelope] = None
    vault: Optional[Vault] = None
    vault_key: Optional[bytearray] = None

    def __repr__(self) -> str:
        """Safe representation without key material."""
        version = self.envelope.version if self.envelope else None
        return f"VaultContext(unlocked={self.is_unlocked}, version={version})"

    @property
    def is_unlocked(self) -> bool:
        return self.vault is not None and self.vault_key is not None

    @property
    def version(self) -> Optional[int]:
        return self.envelope.version if self.envelope else None

    def require_unlocked(self) -> Tuple[Envelope, Vault, bytearray]:
        """
        Raises:
            VaultLocked: If the context holds no key
        """
        if self.envelope is None or self.vault is None or self.vault_key is None:
            raise VaultLocked()
        return self.envelope, self.vault, self.vault_key

    def lock(self) -> None:
        secure_zero(self.vault_key)
        self.vault_key = None
        self.vault = None


@dataclass(frozen=True, slots=True)
class MutationResult:
    """
    Outcome of a vault mutation.

    Attributes:
        envelope: The newly persisted envelope
        remote_pushed: Whether the remote store accepted it
        entry: The affected entry, where there is one
    """
    envelope: Envelope
    remote_pushed: bool
    entry: Optional[Entry] = None

    @property
    def version(self) -> int:
        return self.envelope.version


class VaultManager:
    """
    High-level vault operations.

    Usage:
        manager = VaultManager.from_config(VaultctlConfig.load())

        ctx = manager.init(b"correct horse", b"correct horse")
        manager.add_entry(ctx, "github", username="me", password=b"s3cret")
        manager.lock(ctx)

        ctx = manager.ensure_unlocked(prompt_for_passphrase)
        entry = manager.get_entry(ctx, "github")

    Security Notes:
        - Passphrase copies are wiped after key derivation
        - Confirmation checks are constant-time
        - Local read-modify-write runs under the replica's file lock
    """

    def __init__(
        self,
        local: LocalReplicaStore,
        remote: Optional[RemoteStore] = None,
        session_cache: Optional[SessionCache] = None,
        *,
        account: str = "default",
        kdf_params: KDFParams = KDFParams(),
        push_mode: RemotePushMode = RemotePushMode.BEST_EFFORT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backup_dir: Optional[Path] = None,
        device_id: Optional[str] = None,
        audit: Optional[TamperAwareAuditLog] = None,
    ) -> None:
        kdf_params.validate()
        self._local = local
        self._remote = remote
        self._session_cache = session_cache
        self._account = account
        self._kdf_params = kdf_params
        self._push_mode = push_mode
        self._max_retries = max_retries
        self._backup_dir = backup_dir or local.path.parent / "backups"
        self._device_id = device_id
        self._audit = audit
        self._log = logging.getLogger("vaultctl.manager")

    @classmethod
    def from_config(
        cls,
        config: Optional[VaultctlConfig] = None,
        *,
        remote: Optional[RemoteStore] = None,
        secret_backend: Optional[SecretBackend] = None,
        enable_audit: bool = True,
    ) -> "VaultManager":
        """
        Wire a manager from configuration.

        Defaults: SQLite remote store under the data directory, file
        device secrets under the config directory, audit log under the
        log directory.
        """
        config = config or VaultctlConfig.get_instance()
        paths, security, sync = config.paths, config.security, config.sync
        config.ensure_directories()

        if remote is None:
            remote = SQLiteRemoteStore(
                paths.remote_db_path,
                timeout=sync.remote_timeout_seconds,
                device_id=sync.device_id,
            )
        session_cache = SessionCache(
            paths.session_path,
            secret_backend or FileSecretBackend(paths.secrets_dir),
            timeout=timedelta(seconds=security.session_timeout_seconds),
            secret_name=security.session_secret_name,
        )
        audit = TamperAwareAuditLog(paths.audit_log_path) if enable_audit else None

        return cls(
            LocalReplicaStore(paths.vault_path),
            remote,
            session_cache,
            account=sync.account_id,
            kdf_params=KDFParams(
                memory=security.kdf_memory_kib,
                iterations=security.kdf_iterations,
                parallelism=security.kdf_parallelism,
            ),
            push_mode=sync.remote_push_mode,
            max_retries=sync.max_retries,
            backup_dir=paths.backup_dir,
            device_id=sync.device_id,
            audit=audit,
        )

    @property
    def local(self) -> LocalReplicaStore:
        return self._local

    @property
    def remote(self) -> Optional[RemoteStore]:
        return self._remote

    @property
    def session_cache(self) -> Optional[SessionCache]:
        return self._session_cache

    @property
    def account(self) -> str:
        return self._account

    @property
    def push_mode(self) -> RemotePushMode:
        return self._push_mode

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def is_initialized(self) -> bool:
        return self._local.exists()

    # =========================================================================
    # Audit and remote helpers
    # =========================================================================

    def _record(
        self,
        event_type: AuditEventType,
        description: str,
        envelope: Optional[Envelope] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> None:
        if self._audit is None:
            return
        details = {"version": envelope.version} if envelope else {}
        try:
            self._audit.log(
                event_type,
                severity,
                description,
                vault_id=envelope.vault_id if envelope else None,
                device_id=self._device_id,
                details=details,
            )
        except StorageIO as e:
            self._log.error(f"Audit event {event_type.value} not recorded: {e}")

    def _push(self, envelope: Envelope, expected_version: Optional[int]) -> bool:
        """Push to the remote store under the configured mode."""
        if self._remote is None or self._push_mode is RemotePushMode.DISABLED:
            return False

        try:
            self._remote.put(self._account, envelope, expected_version)
        except (VersionConflict, StorageIO) as e:
            if isinstance(e, VersionConflict):
                self._record(
                    AuditEventType.SYNC_CONFLICT,
                    "Remote push rejected",
                    envelope,
                    AuditSeverity.WARNING,
                )
            if self._push_mode is RemotePushMode.STRICT:
                raise
            self._log.warning(
                f"Remote push of version {envelope.version} failed, local copy kept: {e}"
            )
            return False

        self._log.debug(f"Pushed version {envelope.version} to remote")
        return True

    def _load_envelope(self) -> Envelope:
        """
        Local envelope, falling back to the remote record.

        A remote copy fetched because no local replica exists is
        persisted locally.
        """
        try:
            return self._local.load()
        except (VaultNotFound, ParseFailure) as e:
            if self._remote is None:
                raise
            local_missing = isinstance(e, VaultNotFound)
            self._log.warning(f"Local vault unavailable, trying remote: {e}")
            try:
                envelope = self._remote.get_envelope(self._account)
            except RemoteNotFound as remote_error:
                raise e from remote_error

        if local_missing:
            with self._local.lock():
                if not self._local.exists():
                    self._local.save(envelope)
        return envelope

    def _save_session_quietly(self, vault_key: bytearray, envelope: Envelope) -> None:
        if self._session_cache is None:
            return
        try:
            self._session_cache.save_session(vault_key)
        except (StorageIO, ParseFailure) as e:
            self._log.warning(f"Session not saved: {e}")
            return
        self._record(AuditEventType.SESSION_CREATED, "Session saved", envelope)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init(self, passphrase: Passphrase, confirmation: Passphrase) -> VaultContext:
        """
        Create a new, empty vault.

        Raises:
            ValidationError: Empty passphrase or mismatched confirmation
            AlreadyInitialized: If a local vault already exists
        """
        secret = _passphrase_buffer(passphrase)
        confirm = _passphrase_buffer(confirmation)
        with ZeroizeContext(secret, confirm):
            if not secret:
                raise ValidationError("Passphrase cannot be empty")
            if not constant_time_equal(secret, confirm):
                raise ValidationError("Passphrases do not match")

            with self._local.lock():
                if self._local.exists():
                    raise AlreadyInitialized(f"vault already exists at {self._local.path}")
                envelope, vault, vault_key = create_envelope(secret, self._kdf_params)
                try:
                    self._local.save(envelope)
                except Exception:
                    secure_zero(vault_key)
                    raise

        self._log.info(f"Initialized vault {envelope.vault_id}")
        self._record(AuditEventType.VAULT_INITIALIZED, "Vault initialized", envelope)
        self._push(envelope, expected_version=None)
        self._save_session_quietly(vault_key, envelope)
        return VaultContext(envelope=envelope, vault=vault, vault_key=vault_key)

    def unlock(self, passphrase: Passphrase) -> VaultContext:
        """
        Open the vault with a passphrase.

        Raises:
            InvalidPassphrase: Wrong passphrase or tampered envelope
            VaultNotFound: No local vault and no remote record
        """
        envelope = self._load_envelope()
        secret = _passphrase_buffer(passphrase)
        try:
            with ZeroizeContext(secret):
                vault, vault_key = open_envelope(envelope, secret)
        except AuthenticationFailure:
            self._log.warning(f"Unlock failed for vault {envelope.vault_id}")
            self._record(
                AuditEventType.UNLOCK_FAILURE,
                "Unlock failed",
                envelope,
                AuditSeverity.WARNING,
            )
            raise

        self._log.info(f"Unlocked vault {envelope.vault_id} at version {envelope.version}")
        self._record(AuditEventType.UNLOCK_SUCCESS, "Unlocked with passphrase", envelope)
        self._save_session_quietly(vault_key, envelope)
        return VaultContext(envelope=envelope, vault=vault, vault_key=vault_key)

    def unlock_from_session(self) -> VaultContext:
        """
        Open the vault with the cached session key.

        Raises:
            NoActiveSession: No session (or no session cache)
            SessionExpired: Session window elapsed
            InvalidSession: Session unusable for this vault (cleared)
        """
        if self._session_cache is None:
            raise NoActiveSession("session cache is not configured")

        try:
            vault_key = self._session_cache.load_session()
        except SessionExpired:
            self._record(AuditEventType.SESSION_EXPIRED, "Session expired")
            raise

        try:
            envelope = self._load_envelope()
            vault = decrypt_vault(envelope, vault_key)
        except (AuthenticationFailure, ParseFailure, ValidationError) as e:
            secure_zero(vault_key)
            self._session_cache.clear_session()
            raise InvalidSession("session does not match the current vault") from e
        except Exception:
            secure_zero(vault_key)
            raise

        self._log.info(f"Unlocked vault {envelope.vault_id} from session")
        self._record(AuditEventType.UNLOCK_SUCCESS, "Unlocked from session", envelope)
        return VaultContext(envelope=envelope, vault=vault, vault_key=vault_key)

    def ensure_unlocked(self, passphrase_source: PassphraseSource) -> VaultContext:
        """Session first, then a passphrase from ``passphrase_source``."""
        try:
            return self.unlock_from_session()
        except SessionError as e:
            self._log.debug(f"No usable session: {e}")

        passphrase = passphrase_source()
        try:
            return self.unlock(passphrase)
        finally:
            if isinstance(passphrase, bytearray):
                secure_zero(passphrase)

    def lock(self, ctx: VaultContext) -> None:
        """Wipe the context and end the session."""
        envelope = ctx.envelope
        ctx.lock()
        if self._session_cache is not None:
            self._session_cache.clear_session()
        self._log.info("Vault locked")
        self._record(AuditEventType.VAULT_LOCKED, "Vault locked", envelope)

    # =========================================================================
    # Entries
    # =========================================================================

    def _refresh(self, ctx: VaultContext, current: Envelope) -> Vault:
        """Bring the context up to the envelope on disk, if another process moved it."""
        envelope, vault, vault_key = ctx.require_unlocked()
        if current.version == envelope.version and current.nonce == envelope.nonce:
            return vault

        self._log.info(
            f"Local vault moved from version {envelope.version} to {current.version}, reloading"
        )
        try:
            vault = decrypt_vault(current, vault_key)
        except AuthenticationFailure:
            ctx.lock()
            raise
        ctx.envelope, ctx.vault = current, vault
        return vault

    def _mutate(
        self,
        ctx: VaultContext,
        change: Callable[[Vault], Optional[Entry]],
        event_type: AuditEventType,
        description: str,
    ) -> MutationResult:
        _, _, vault_key = ctx.require_unlocked()

        with self._local.lock():
            current = self._local.load()
            working = copy.deepcopy(self._refresh(ctx, current))
            entry = change(working)
            envelope = reseal(current, working, vault_key)
            self._local.save(envelope)

        ctx.envelope, ctx.vault = envelope, working
        self._record(event_type, description, envelope)
        pushed = self._push(envelope, expected_version=envelope.version - 1)
        return MutationResult(envelope=envelope, remote_pushed=pushed, entry=entry)

    def add_entry(
        self,
        ctx: VaultContext,
        name: str,
        username: str = "",
        password: bytes | bytearray = b"",
        url: str = "",
        notes: str = "",
        backup_codes: Optional[List[str]] = None,
    ) -> MutationResult:
        """
        Raises:
            ValidationError: Empty or duplicate name
            VaultLocked: Context is locked
        """
        return self._mutate(
            ctx,
            lambda vault: vault.add_entry(name, username, password, url, notes, backup_codes),
            AuditEventType.ENTRY_ADDED,
            "Entry added",
        )

    def update_entry(
        self,
        ctx: VaultContext,
        identifier: str,
        name: str = "",
        username: str = "",
        password: Optional[bytes | bytearray] = None,
        url: str = "",
        notes: str = "",
        backup_codes: Optional[List[str]] = None,
    ) -> MutationResult:
        """Replace the non-empty fields of the entry with this id or name."""
        return self._mutate(
            ctx,
            lambda vault: vault.update_entry(
                identifier, name, username, password, url, notes, backup_codes
            ),
            AuditEventType.ENTRY_UPDATED,
            "Entry updated",
        )

    def remove_entry(self, ctx: VaultContext, identifier: str) -> MutationResult:
        return self._mutate(
            ctx,
            lambda vault: vault.remove_entry(identifier),
            AuditEventType.ENTRY_REMOVED,
            "Entry removed",
        )

    def list_entries(self, ctx: VaultContext) -> List[EntrySummary]:
        _, vault, _ = ctx.require_unlocked()
        return vault.list_entries()

    def get_entry(self, ctx: VaultContext, identifier: str) -> Entry:
        _, vault, _ = ctx.require_unlocked()
        return vault.get_entry(identifier)

    # =========================================================================
    # Master passphrase
    # =========================================================================

    def rotate_master(
        self,
        ctx: VaultContext,
        current_passphrase: Passphrase,
        new_passphrase: Passphrase,
        confirmation: Passphrase,
    ) -> MutationResult:
        """
        Re-wrap the vault key under a new passphrase.

        Entries are not re-encrypted.

        Raises:
            InvalidPassphrase: Current passphrase is wrong
            ValidationError: New passphrase empty or not confirmed
        """
        _, _, vault_key = ctx.require_unlocked()
        current = _passphrase_buffer(current_passphrase)
        new = _passphrase_buffer(new_passphrase)
        confirm = _passphrase_buffer(confirmation)

        with ZeroizeContext(current, new, confirm):
            with self._local.lock():
                envelope = self._local.load()
                check_key = unwrap_vault_key(envelope, current)
                with ZeroizeContext(check_key):
                    if not constant_time_equal(check_key, vault_key):
                        raise InvalidPassphrase("vault key does not match the open vault")

                if not new:
                    raise ValidationError("Passphrase cannot be empty")
                if not constant_time_equal(new, confirm):
                    raise ValidationError("Passphrases do not match")

                self._refresh(ctx, envelope)
                envelope = rewrap(envelope, vault_key, new, self._kdf_params)
                self._local.save(envelope)

        ctx.envelope = envelope
        self._log.info(f"Master passphrase rotated, version {envelope.version}")
        self._record(AuditEventType.MASTER_ROTATED, "Master passphrase rotated", envelope)
        pushed = self._push(envelope, expected_version=envelope.version - 1)
        return MutationResult(envelope=envelope, remote_pushed=pushed)

    # =========================================================================
    # Sync
    # =========================================================================

    def sync(self, ctx: Optional[VaultContext] = None) -> SyncResult:
        """
        Reconcile the local replica with the remote store.

        When the remote is newer it replaces the local replica and ``ctx``
        is locked; the caller must unlock again. The replacement happens
        under the replica lock and only if the local version is still
        older than the remote one; a local commit that landed during the
        remote round trip sends the sync around again.

        Raises:
            SyncFailed: No remote store, or conflicts exhausted retries
        """
        if self._remote is None:
            raise SyncFailed("no remote store configured")

        engine = SyncEngine(self._remote, self._account, self._max_retries)
        for _ in range(self._max_retries):
            local = self._local.load()
            try:
                result = engine.sync(local)
            except SyncFailed:
                self._record(
                    AuditEventType.SYNC_CONFLICT,
                    "Sync gave up after repeated conflicts",
                    local,
                    AuditSeverity.WARNING,
                )
                raise

            if not result.remote_won:
                break

            with self._local.lock():
                current = self._local.load()
                replaced = current.version < result.envelope.version
                if replaced:
                    self._local.save(result.envelope)
            if replaced:
                break

            self._log.warning(
                f"Local vault moved to version {current.version} during sync, retrying"
            )
        else:
            self._record(
                AuditEventType.SYNC_CONFLICT,
                "Sync gave up after repeated local changes",
                current,
                AuditSeverity.WARNING,
            )
            raise SyncFailed(
                f"local vault kept changing during sync after {self._max_retries} attempts"
            )

        if result.remote_won:
            if ctx is not None:
                ctx.lock()
                ctx.envelope = result.envelope

        self._record(
            AuditEventType.SYNC_COMPLETED,
            f"Sync finished: {result.outcome.value}",
            result.envelope,
        )
        return result

    # =========================================================================
    # Session
    # =========================================================================

    def _require_session_cache(self) -> SessionCache:
        if self._session_cache is None:
            raise NoActiveSession("session cache is not configured")
        return self._session_cache

    def save_session(self, ctx: VaultContext) -> None:
        envelope, _, vault_key = ctx.require_unlocked()
        self._require_session_cache().save_session(vault_key)
        self._record(AuditEventType.SESSION_CREATED, "Session saved", envelope)

    def load_session(self) -> VaultContext:
        return self.unlock_from_session()

    def clear_session(self) -> None:
        self._require_session_cache().clear_session()
        self._record(AuditEventType.SESSION_CLEARED, "Session cleared")

    # =========================================================================
    # Backup
    # =========================================================================

    def backup(self, path: Optional[Path | str] = None) -> Path:
        """
        Copy the local envelope, byte for byte.

        The default location is the private backup directory. An explicit
        ``path`` is written as given; its directory keeps its permissions.

        Returns:
            Path of the backup file
        """
        with self._local.lock():
            data = self._local.read_bytes()

        if path is None:
            ensure_private_dir(self._backup_dir)
            target = self._backup_dir / f"vault-{_backup_timestamp()}{BACKUP_SUFFIX}"
        else:
            target = Path(path)

        try:
            atomic_write_bytes(target, data, private_dir=path is None)
        except OSError as e:
            raise StorageIO(f"failed to write backup: {e}") from e

        self._log.info(f"Backup written to {target}")
        self._record(AuditEventType.BACKUP_CREATED, "Backup created")
        return target

    def restore(self, path: Path | str, backup_current: bool = True) -> Envelope:
        """
        Replace the local replica with a backup file.

        The session is cleared; unlock again afterwards. The remote store
        is left alone until the next sync.

        Raises:
            NotFound: Backup file missing
            ParseFailure: Backup is not an envelope
        """
        source = Path(path)
        try:
            data = source.read_bytes()
        except FileNotFoundError as e:
            raise NotFound(f"backup not found: {source}") from e
        except OSError as e:
            raise StorageIO(f"failed to read backup: {e}") from e

        envelope = Envelope.from_json(data)

        with self._local.lock():
            if backup_current and self._local.exists():
                ensure_private_dir(self._backup_dir)
                safety = self._backup_dir / f"vault-before-restore-{_backup_timestamp()}{BACKUP_SUFFIX}"
                try:
                    atomic_write_bytes(safety, self._local.read_bytes())
                except OSError as e:
                    raise StorageIO(f"failed to back up current vault: {e}") from e
                self._log.info(f"Current vault backed up to {safety}")
            self._local.write_bytes(data)

        if self._session_cache is not None:
            self._session_cache.clear_session()

        self._log.info(f"Restored vault {envelope.vault_id} at version {envelope.version}")
        self._record(AuditEventType.VAULT_RESTORED, "Vault restored from backup", envelope)
        return envelope

    def __repr__(self) -> str:
        return (
            f"VaultManager(local={self._local!r}, remote={self._remote!r}, "
            f"account={self._account!r}, push_mode={self._push_mode.value})"
        )
