"""
Storage module - Local replica, remote store and sync engine.
"""

from vaultctl.storage.local import LocalReplicaStore
from vaultctl.storage.remote import (
    InMemoryRemoteStore,
    RemoteRecord,
    RemoteStore,
    SQLiteRemoteStore,
)
from vaultctl.storage.sync import SyncEngine, SyncOutcome, SyncResult

__all__ = [
    "InMemoryRemoteStore",
    "LocalReplicaStore",
    "RemoteRecord",
    "RemoteStore",
    "SQLiteRemoteStore",
    "SyncEngine",
    "SyncOutcome",
    "SyncResult",
]
