"""
Local Replica Store
===================

Durable on-disk copy of the envelope, single owner per device.

Security Features:
- Atomic replacement (temp file + fsync + rename)
- Owner-only file (0600) and directory (0700) permissions
- Cross-process lock around read-modify-write
"""

from __future__ import annotations

import logging
from pathlib import Path

from vaultctl.core.errors import ParseFailure, StorageIO, VaultNotFound
from vaultctl.utils.locking import FileLock, lock_path_for
from vaultctl.utils.paths import atomic_write_bytes
from vaultctl.vault.envelope import Envelope


class LocalReplicaStore:
    """
    File-backed envelope store.

    Usage:
        store = LocalReplicaStore(config.paths.vault_path)

        with store.lock():
            envelope = store.load()
            store.save(updated)
    """

    __slots__ = ("_path", "_lock", "_log")

    def __init__(self, path: Path | str, lock_timeout: float = 10.0) -> None:
        self._path = Path(path)
        self._lock = FileLock(lock_path_for(self._path), timeout=lock_timeout)
        self._log = logging.getLogger("vaultctl.storage.local")

    @property
    def path(self) -> Path:
        return self._path

    def lock(self) -> FileLock:
        """Exclusive cross-process lock for read-modify-write sequences."""
        return self._lock

    def exists(self) -> bool:
        return self._path.is_file()

    def read_bytes(self) -> bytes:
        """
        Read the raw envelope serialization.

        Raises:
            VaultNotFound: If no vault file exists
            StorageIO: On other read failures
        """
        try:
            return self._path.read_bytes()
        except FileNotFoundError as e:
            raise VaultNotFound(f"vault not found at {self._path}") from e
        except OSError as e:
            raise StorageIO(f"failed to read vault file: {e}") from e

    def write_bytes(self, data: bytes) -> None:
        """Atomically replace the vault file with raw envelope bytes."""
        with self._lock:
            try:
                atomic_write_bytes(self._path, data)
            except OSError as e:
                raise StorageIO(f"failed to write vault file: {e}") from e

    def load(self) -> Envelope:
        """
        Load the envelope.

        Raises:
            VaultNotFound: If no vault file exists
            ParseFailure: If the content is malformed
        """
        data = self.read_bytes()
        try:
            return Envelope.from_json(data)
        except ParseFailure as e:
            self._log.error(f"Local vault at {self._path} is malformed")
            raise ParseFailure(f"failed to parse vault file: {e}") from e

    def save(self, envelope: Envelope) -> None:
        """
        Persist the envelope atomically.

        A crash leaves either the previous or the new envelope on disk,
        never a partial file.
        """
        self.write_bytes(envelope.to_json())
        self._log.debug(f"Saved local envelope version {envelope.version}")

    def __repr__(self) -> str:
        return f"LocalReplicaStore(path={str(self._path)!r})"
