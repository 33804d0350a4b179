"""
Remote Store
============

Key-value backend holding exactly one current envelope per account.

The only concurrency primitive is the conditional write: ``put`` succeeds
only when the stored version equals ``expected_version``, or when no
record exists and ``expected_version`` is None. The check and the write
happen as one atomic operation in every backend.

Backends:
    - InMemoryRemoteStore: process-local, lock-guarded (tests, offline)
    - SQLiteRemoteStore: shared database file, single-statement
      conditional INSERT/UPDATE
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Final, Optional

from vaultctl.core.config import default_device_id
from vaultctl.core.errors import ParseFailure, RemoteNotFound, StorageIO, VersionConflict
from vaultctl.utils.paths import ensure_private_dir
from vaultctl.vault.envelope import Envelope

VAULT_SORT_KEY: Final[str] = "VAULT"


def partition_key(account: str) -> str:
    """Partition key for an account's record."""
    return f"USER#{account}"


@dataclass(frozen=True, slots=True)
class RemoteRecord:
    """
    The single remote item for an account.

    ``vault_blob`` is the serialized envelope, byte-identical to the
    local replica file.
    """
    pk: str
    sk: str
    vault_id: str
    vault_blob: str
    version: int
    modified_at: str
    device_id: str

    def __repr__(self) -> str:
        return (
            f"RemoteRecord(pk={self.pk!r}, version={self.version}, "
            f"device_id={self.device_id!r})"
        )

    @property
    def envelope(self) -> Envelope:
        """
        Decode the stored envelope.

        Raises:
            ParseFailure: If the blob is malformed
        """
        return Envelope.from_json(self.vault_blob)

    @classmethod
    def for_envelope(cls, account: str, envelope: Envelope, device_id: str) -> "RemoteRecord":
        return cls(
            pk=partition_key(account),
            sk=VAULT_SORT_KEY,
            vault_id=envelope.vault_id,
            vault_blob=envelope.to_json().decode("utf-8"),
            version=envelope.version,
            modified_at=envelope.modified_at,
            device_id=device_id,
        )


class RemoteStore(ABC):
    """Abstract base for remote envelope stores."""

    @abstractmethod
    def get(self, account: str) -> RemoteRecord:
        """
        Fetch the account's record.

        Raises:
            RemoteNotFound: If the account has no record
            StorageIO: On backend failure
        """
        ...

    @abstractmethod
    def put(self, account: str, envelope: Envelope, expected_version: Optional[int]) -> RemoteRecord:
        """
        Conditionally replace the account's record.

        Args:
            account: Caller-supplied account identifier
            envelope: Envelope to store
            expected_version: Version the caller observed, None for "no record"

        Raises:
            VersionConflict: If the stored state does not match
            StorageIO: On backend failure
        """
        ...

    def get_envelope(self, account: str) -> Envelope:
        """Fetch and decode the account's envelope."""
        return self.get(account).envelope


class InMemoryRemoteStore(RemoteStore):
    """
    Dictionary-backed remote store.

    A lock makes the version check and the replacement one atomic step,
    so concurrent writers with the same expectation see exactly one winner.
    """

    def __init__(self, device_id: Optional[str] = None) -> None:
        self._records: Dict[str, RemoteRecord] = {}
        self._lock = threading.Lock()
        self._device_id = device_id or default_device_id()
        self._log = logging.getLogger("vaultctl.storage.remote")

    def get(self, account: str) -> RemoteRecord:
        with self._lock:
            record = self._records.get(partition_key(account))
        if record is None:
            raise RemoteNotFound(f"no remote vault for account {account!r}")
        return record

    def put(self, account: str, envelope: Envelope, expected_version: Optional[int]) -> RemoteRecord:
        key = partition_key(account)
        record = RemoteRecord.for_envelope(account, envelope, self._device_id)

        with self._lock:
            current = self._records.get(key)
            if current is None:
                if expected_version is not None:
                    raise VersionConflict(expected_version, None)
            elif expected_version is None or current.version != expected_version:
                raise VersionConflict(expected_version, current.version)
            self._records[key] = record

        self._log.debug(f"Stored remote version {envelope.version} for {key}")
        return record

    def __repr__(self) -> str:
        return f"InMemoryRemoteStore(accounts={len(self._records)})"


class SQLiteRemoteStore(RemoteStore):
    """
    SQLite-backed remote store.

    Usage:
        remote = SQLiteRemoteStore(config.paths.remote_db_path)
        remote.put("alice", envelope, expected_version=None)
        record = remote.get("alice")

    Conditional writes are single statements: an INSERT relying on the
    primary key when no record is expected, otherwise an UPDATE guarded
    by ``version = ?`` whose rowcount reveals a conflict.
    """

    __slots__ = ("_db_path", "_timeout", "_device_id", "_log")

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS vaults (
        pk TEXT NOT NULL,
        sk TEXT NOT NULL,
        vault_id TEXT NOT NULL,
        vault_blob TEXT NOT NULL,
        version INTEGER NOT NULL,
        modified_at TEXT NOT NULL,
        device_id TEXT NOT NULL,
        PRIMARY KEY (pk, sk)
    );
    """

    def __init__(
        self,
        db_path: Path | str,
        timeout: float = 10.0,
        device_id: Optional[str] = None,
    ) -> None:
        """
        Args:
            db_path: Path to the SQLite database
            timeout: Seconds to wait on a busy database before failing
            device_id: Originating device recorded with each write
        """
        self._db_path = Path(db_path)
        self._timeout = timeout
        self._device_id = device_id or default_device_id()
        self._log = logging.getLogger("vaultctl.storage.remote")
        self.initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize_db(self) -> None:
        """Initialize the database schema."""
        ensure_private_dir(self._db_path.parent)
        try:
            with self._get_connection() as conn:
                conn.executescript(self._SCHEMA)
        except sqlite3.Error as e:
            raise StorageIO(f"failed to initialize remote store: {e}") from e

    def get(self, account: str) -> RemoteRecord:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM vaults WHERE pk = ? AND sk = ?",
                    (partition_key(account), VAULT_SORT_KEY),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageIO(f"failed to get remote vault: {e}") from e

        if row is None:
            raise RemoteNotFound(f"no remote vault for account {account!r}")
        return self._row_to_record(row)

    def put(self, account: str, envelope: Envelope, expected_version: Optional[int]) -> RemoteRecord:
        record = RemoteRecord.for_envelope(account, envelope, self._device_id)
        values = (
            record.vault_id,
            record.vault_blob,
            record.version,
            record.modified_at,
            record.device_id,
        )

        try:
            with self._get_connection() as conn:
                if expected_version is None:
                    try:
                        conn.execute(
                            """
                            INSERT INTO vaults (pk, sk, vault_id, vault_blob, version, modified_at, device_id)
                            VALUES (?, ?, ?, ?, ?, ?, ?)
                            """,
                            (record.pk, record.sk) + values,
                        )
                    except sqlite3.IntegrityError as e:
                        raise VersionConflict(None, self._current_version(conn, record.pk)) from e
                else:
                    cursor = conn.execute(
                        """
                        UPDATE vaults
                        SET vault_id = ?, vault_blob = ?, version = ?, modified_at = ?, device_id = ?
                        WHERE pk = ? AND sk = ? AND version = ?
                        """,
                        values + (record.pk, record.sk, expected_version),
                    )
                    if cursor.rowcount == 0:
                        raise VersionConflict(expected_version, self._current_version(conn, record.pk))
        except sqlite3.Error as e:
            raise StorageIO(f"failed to save remote vault: {e}") from e

        self._log.debug(f"Stored remote version {envelope.version} for {record.pk}")
        return record

    @staticmethod
    def _current_version(conn: sqlite3.Connection, pk: str) -> Optional[int]:
        row = conn.execute(
            "SELECT version FROM vaults WHERE pk = ? AND sk = ?",
            (pk, VAULT_SORT_KEY),
        ).fetchone()
        return None if row is None else int(row["version"])

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> RemoteRecord:
        try:
            return RemoteRecord(
                pk=row["pk"],
                sk=row["sk"],
                vault_id=row["vault_id"],
                vault_blob=row["vault_blob"],
                version=int(row["version"]),
                modified_at=row["modified_at"],
                device_id=row["device_id"],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseFailure(f"malformed remote record: {e}") from e

    def __repr__(self) -> str:
        return f"SQLiteRemoteStore(db_path={str(self._db_path)!r})"
