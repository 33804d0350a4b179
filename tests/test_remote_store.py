# Tests for the remote stores
#
# Coverage:
#   - Conditional put semantics (absent / matching / stale expectations)
#   - Record keys and blob fidelity
#   - Concurrent writers with the same expectation: exactly one wins
#   - Both the in-memory and the SQLite backend

import threading
from dataclasses import replace

import pytest

from vaultctl.core.errors import RemoteNotFound, VersionConflict
from vaultctl.storage import InMemoryRemoteStore, SQLiteRemoteStore
from vaultctl.storage.remote import VAULT_SORT_KEY, partition_key
from vaultctl.vault.envelope import create_envelope


@pytest.fixture(params=["memory", "sqlite"])
def remote(request, tmp_path):
    if request.param == "memory":
        return InMemoryRemoteStore(device_id="laptop-1")
    return SQLiteRemoteStore(tmp_path / "remote" / "remote.sqlite3", timeout=5.0, device_id="laptop-1")


@pytest.fixture
def envelope(fast_kdf):
    envelope, _, _ = create_envelope(b"passphrase", fast_kdf)
    return envelope


class TestConditionalPut:

    def test_get_missing(self, remote):
        with pytest.raises(RemoteNotFound):
            remote.get("alice")

    def test_create(self, remote, envelope):
        record = remote.put("alice", envelope, expected_version=None)
        assert record.pk == "USER#alice"
        assert record.sk == VAULT_SORT_KEY
        assert record.version == envelope.version
        assert record.device_id == "laptop-1"
        assert remote.get_envelope("alice") == envelope

    def test_blob_is_serialized_envelope(self, remote, envelope):
        remote.put("alice", envelope, expected_version=None)
        assert remote.get("alice").vault_blob.encode("utf-8") == envelope.to_json()

    def test_create_when_present_conflicts(self, remote, envelope):
        remote.put("alice", envelope, expected_version=None)
        with pytest.raises(VersionConflict) as exc_info:
            remote.put("alice", envelope, expected_version=None)
        assert exc_info.value.actual == envelope.version

    def test_update_when_absent_conflicts(self, remote, envelope):
        with pytest.raises(VersionConflict) as exc_info:
            remote.put("alice", envelope, expected_version=1)
        assert exc_info.value.expected == 1
        assert exc_info.value.actual is None

    def test_update_with_matching_version(self, remote, envelope):
        remote.put("alice", envelope, expected_version=None)
        newer = replace(envelope, version=2)
        remote.put("alice", newer, expected_version=1)
        assert remote.get("alice").version == 2

    def test_update_with_stale_version(self, remote, envelope):
        remote.put("alice", replace(envelope, version=3), expected_version=None)
        with pytest.raises(VersionConflict) as exc_info:
            remote.put("alice", replace(envelope, version=3), expected_version=2)
        assert exc_info.value.actual == 3

    def test_accounts_are_isolated(self, remote, envelope):
        remote.put("alice", envelope, expected_version=None)
        with pytest.raises(RemoteNotFound):
            remote.get("bob")


class TestConcurrentWriters:

    def test_exactly_one_winner(self, remote, envelope):
        remote.put("alice", envelope, expected_version=None)
        writers = 8
        barrier = threading.Barrier(writers)
        wins, conflicts = [], []

        def write(index):
            candidate = replace(envelope, version=2, modified_at=f"writer-{index}")
            barrier.wait()
            try:
                remote.put("alice", candidate, expected_version=1)
                wins.append(index)
            except VersionConflict:
                conflicts.append(index)

        threads = [threading.Thread(target=write, args=(i,)) for i in range(writers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert len(conflicts) == writers - 1
        assert remote.get("alice").modified_at == f"writer-{wins[0]}"


def test_partition_key():
    assert partition_key("alice") == "USER#alice"
