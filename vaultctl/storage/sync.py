"""
Sync Engine
===========

Reconciles the local replica with the remote store by version comparison.

Resolution is whole-envelope and version-wins; there is no field-level
merge. A strictly older local version never overwrites a newer remote one.

Algorithm, given local envelope L:
    1. Fetch remote R. Absent -> push L expecting no record.
    2. L.version >= R.version -> push L expecting R.version; on conflict
       re-fetch and start over, up to max_retries attempts.
    3. L.version < R.version -> return R without pushing; the caller
       must discard decrypted state and re-unlock against R.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Final

from vaultctl.core.errors import RemoteNotFound, SyncFailed, VersionConflict
from vaultctl.storage.remote import RemoteStore
from vaultctl.vault.envelope import Envelope

DEFAULT_MAX_RETRIES: Final[int] = 3


class SyncOutcome(Enum):
    """What a sync did."""
    PUSHED_NEW = "pushed_new"        # remote had no record
    PUSHED = "pushed"                # local replaced an older or equal remote
    REMOTE_NEWER = "remote_newer"    # remote wins, nothing pushed


@dataclass(frozen=True, slots=True)
class SyncResult:
    """
    Result of a sync.

    Attributes:
        envelope: The envelope both sides should now hold
        outcome: What happened
        attempts: Number of fetch/push rounds used
    """
    envelope: Envelope
    outcome: SyncOutcome
    attempts: int

    @property
    def pushed(self) -> bool:
        return self.outcome is not SyncOutcome.REMOTE_NEWER

    @property
    def remote_won(self) -> bool:
        return self.outcome is SyncOutcome.REMOTE_NEWER


class SyncEngine:
    """
    Optimistic-concurrency sync between one local envelope and a remote store.

    Usage:
        engine = SyncEngine(remote, account="alice")
        result = engine.sync(local_store.load())
        if result.remote_won:
            local_store.save(result.envelope)
    """

    __slots__ = ("_remote", "_account", "_max_retries", "_log")

    def __init__(
        self,
        remote: RemoteStore,
        account: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._remote = remote
        self._account = account
        self._max_retries = max_retries
        self._log = logging.getLogger("vaultctl.sync")

    @property
    def account(self) -> str:
        return self._account

    def sync(self, local: Envelope) -> SyncResult:
        """
        Reconcile ``local`` with the remote record.

        Raises:
            SyncFailed: If every attempt hit a version conflict
            StorageIO: On remote backend failure
        """
        last_conflict: VersionConflict | None = None

        for attempt in range(1, self._max_retries + 1):
            try:
                remote = self._remote.get(self._account).envelope
            except RemoteNotFound:
                remote = None

            try:
                if remote is None:
                    self._remote.put(self._account, local, expected_version=None)
                    self._log.info(f"Pushed local version {local.version} to empty remote")
                    return SyncResult(local, SyncOutcome.PUSHED_NEW, attempt)

                if local.version >= remote.version:
                    self._remote.put(self._account, local, expected_version=remote.version)
                    self._log.info(
                        f"Pushed local version {local.version} over remote version {remote.version}"
                    )
                    return SyncResult(local, SyncOutcome.PUSHED, attempt)

            except VersionConflict as e:
                last_conflict = e
                self._log.warning(f"Sync attempt {attempt}/{self._max_retries}: {e}")
                continue

            self._log.info(
                f"Remote version {remote.version} is newer than local version {local.version}"
            )
            return SyncResult(remote, SyncOutcome.REMOTE_NEWER, attempt)

        raise SyncFailed(
            f"sync failed after {self._max_retries} attempts: {last_conflict}"
        ) from last_conflict
