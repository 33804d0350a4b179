"""
Tamper-Aware Audit System
=========================

Append-only record of vault lifecycle events with hash-chain verification.

Events describe what happened to the vault (unlocks, mutations, syncs),
never what it contains: entry names, passphrases and key material are
kept out of the log.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Final, List, Optional

from vaultctl.core.errors import StorageIO

GENESIS_HASH: Final[str] = "genesis"


class AuditSeverity(Enum):
    """Audit event severity levels."""
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AuditEventType(Enum):
    """Types of auditable events."""
    # Lifecycle
    VAULT_INITIALIZED = "VAULT_INITIALIZED"
    UNLOCK_SUCCESS = "UNLOCK_SUCCESS"
    UNLOCK_FAILURE = "UNLOCK_FAILURE"
    VAULT_LOCKED = "VAULT_LOCKED"
    MASTER_ROTATED = "MASTER_ROTATED"

    # Entries
    ENTRY_ADDED = "ENTRY_ADDED"
    ENTRY_UPDATED = "ENTRY_UPDATED"
    ENTRY_REMOVED = "ENTRY_REMOVED"

    # Sync
    SYNC_COMPLETED = "SYNC_COMPLETED"
    SYNC_CONFLICT = "SYNC_CONFLICT"

    # Session
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_CLEARED = "SESSION_CLEARED"

    # Backup
    BACKUP_CREATED = "BACKUP_CREATED"
    VAULT_RESTORED = "VAULT_RESTORED"


@dataclass
class AuditEvent:
    """An auditable vault event."""
    event_type: AuditEventType
    severity: AuditSeverity
    timestamp: datetime
    vault_id: Optional[str] = None
    device_id: Optional[str] = None
    description: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    # Computed fields
    event_id: str = field(default="")
    previous_hash: str = field(default="")
    event_hash: str = field(default="")

    def __post_init__(self) -> None:
        if not self.event_id:
            self.event_id = hashlib.sha256(
                f"{self.timestamp.isoformat()}{self.event_type.value}{os.urandom(8).hex()}".encode()
            ).hexdigest()[:16]

    def _hash_payload(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "vault_id": self.vault_id,
            "device_id": self.device_id,
            "description": self.description,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }

    def compute_hash(self, previous_hash: str) -> str:
        """Compute event hash for chain integrity."""
        self.previous_hash = previous_hash
        self.event_hash = _digest(self._hash_payload())
        return self.event_hash

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        record = self._hash_payload()
        record["event_hash"] = self.event_hash
        return record


def _digest(payload: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


class TamperAwareAuditLog:
    """
    Append-only audit log with tamper detection.

    Features:
    - Chained SHA-256 hashes; editing or dropping a line breaks the chain
    - JSON Lines format, fsync'd per event
    - No sensitive plaintext
    """

    def __init__(self, log_path: Path | str):
        self._log_path = Path(log_path)
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH
        self._event_count = 0
        self._log = logging.getLogger("vaultctl.audit")

        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._load_chain()

    @property
    def path(self) -> Path:
        return self._log_path

    @property
    def event_count(self) -> int:
        return self._event_count

    def _load_chain(self) -> None:
        """Resume the chain from the last well-formed event."""
        if not self._log_path.exists():
            return

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    self._log.warning("Skipping malformed audit line")
                    continue
                self._last_hash = event.get("event_hash", self._last_hash)
                self._event_count += 1

    def log(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity,
        description: str,
        vault_id: Optional[str] = None,
        device_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log an audit event.

        Returns:
            Event ID

        Raises:
            StorageIO: If the event cannot be appended
        """
        event = AuditEvent(
            event_type=event_type,
            severity=severity,
            timestamp=datetime.now(timezone.utc),
            vault_id=vault_id,
            device_id=device_id,
            description=description,
            details=details or {},
        )

        with self._lock:
            event.compute_hash(self._last_hash)
            try:
                with open(self._log_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(event.to_dict()) + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise StorageIO(f"failed to append audit event: {e}") from e

            self._last_hash = event.event_hash
            self._event_count += 1

        return event.event_id

    def verify_integrity(self) -> tuple[bool, int]:
        """
        Verify log chain integrity.

        Every event's stored hash is recomputed and must link to its
        predecessor.

        Returns:
            Tuple of (is_valid, number of events verified)
        """
        if not self._log_path.exists():
            return True, 0

        previous_hash = GENESIS_HASH
        count = 0

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    return False, count

                stored_hash = event.pop("event_hash", "")
                if event.get("previous_hash") != previous_hash:
                    return False, count
                if _digest(event) != stored_hash:
                    return False, count

                previous_hash = stored_hash
                count += 1

        return True, count

    def get_events(
        self,
        since: Optional[datetime] = None,
        event_type: Optional[AuditEventType] = None,
        severity: Optional[AuditSeverity] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Get filtered events (read-only)."""
        events: List[Dict[str, Any]] = []

        if not self._log_path.exists():
            return events

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if since and datetime.fromisoformat(event["timestamp"]) < since:
                    continue
                if event_type and event["event_type"] != event_type.value:
                    continue
                if severity and event["severity"] != severity.value:
                    continue

                events.append(event)
                if len(events) >= limit:
                    break

        return events

    def __repr__(self) -> str:
        return f"TamperAwareAuditLog(path={str(self._log_path)!r}, events={self._event_count})"
