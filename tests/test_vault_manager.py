# Tests for the vault manager
#
# Coverage:
#   - init / unlock / lock round trip and wrong passphrase
#   - Session-first unlock and session invalidation
#   - Entry mutations, version monotonicity and remote pushes
#   - Push modes (best effort, strict, disabled) and push conflicts
#   - Unlock falling back to the remote store
#   - Sync in both directions through the manager
#   - Master passphrase rotation
#   - Backup / restore byte identity
#   - Audit trail contents

import logging
import os
import stat
import sys
from pathlib import Path

import pytest

from vaultctl.core.config import PathConfig, RemotePushMode, SyncConfig, VaultctlConfig
from vaultctl.core.crypto import generate_key
from vaultctl.core.errors import (
    AlreadyInitialized,
    EntryNotFound,
    InvalidPassphrase,
    InvalidSession,
    NoActiveSession,
    NotFound,
    ParseFailure,
    StorageIO,
    ValidationError,
    VaultLocked,
    VaultNotFound,
)
from vaultctl.security.audit import AuditEventType
from vaultctl.session import InMemorySecretBackend, SessionCache
from vaultctl.storage import InMemoryRemoteStore, LocalReplicaStore, SyncOutcome
from vaultctl.vault.manager import VaultManager

from tests.conftest import PASSPHRASE


class FailingRemote(InMemoryRemoteStore):
    """Remote whose writes always fail."""

    def put(self, account, envelope, expected_version):
        raise StorageIO("remote unreachable")


class StallingRemote(InMemoryRemoteStore):
    """Runs a one-shot callback before the next read, standing in for network latency."""

    def __init__(self):
        super().__init__()
        self.before_get = None

    def get(self, account):
        callback, self.before_get = self.before_get, None
        if callback is not None:
            callback()
        return super().get(account)


def make_manager(tmp_path, name, remote, fast_kdf, push_mode=RemotePushMode.BEST_EFFORT, session=True, audit=None):
    root = tmp_path / name
    cache = SessionCache(root / "session.json", InMemorySecretBackend()) if session else None
    return VaultManager(
        LocalReplicaStore(root / "vault.db"),
        remote,
        cache,
        account="alice",
        kdf_params=fast_kdf,
        push_mode=push_mode,
        backup_dir=root / "backups",
        device_id=name,
        audit=audit,
    )


class TestLifecycle:

    def test_init(self, manager, remote_store, unlocked):
        assert unlocked.is_unlocked
        assert unlocked.version == 1
        assert manager.is_initialized()
        assert remote_store.get("alice").version == 1
        assert manager.session_cache.has_active_session()

    def test_init_confirmation_mismatch(self, manager):
        with pytest.raises(ValidationError):
            manager.init(PASSPHRASE, b"something else")
        assert not manager.is_initialized()

    def test_init_empty_passphrase(self, manager):
        with pytest.raises(ValidationError):
            manager.init(b"", b"")

    def test_init_twice(self, manager, unlocked):
        with pytest.raises(AlreadyInitialized):
            manager.init(PASSPHRASE, PASSPHRASE)

    def test_unlock_round_trip(self, manager, unlocked):
        manager.add_entry(unlocked, "github", username="me", password=b"s3cret")
        manager.lock(unlocked)

        ctx = manager.unlock(PASSPHRASE)
        entry = manager.get_entry(ctx, "github")
        assert entry.username == "me"
        assert entry.password == b"s3cret"

    def test_unlock_accepts_text_passphrase(self, manager, unlocked):
        manager.lock(unlocked)
        assert manager.unlock(PASSPHRASE.decode()).is_unlocked

    def test_wrong_passphrase(self, manager, unlocked, audit_log):
        manager.lock(unlocked)
        with pytest.raises(InvalidPassphrase):
            manager.unlock(b"wrong passphrase")
        assert audit_log.get_events(event_type=AuditEventType.UNLOCK_FAILURE)

    def test_unlock_uninitialized(self, manager):
        with pytest.raises(VaultNotFound):
            manager.unlock(PASSPHRASE)

    def test_lock_wipes_context(self, manager, unlocked):
        key = unlocked.vault_key
        manager.lock(unlocked)
        assert not unlocked.is_unlocked
        assert all(b == 0 for b in key)
        assert not manager.session_cache.path.exists()

    def test_locked_context_rejects_operations(self, manager, unlocked):
        manager.lock(unlocked)
        with pytest.raises(VaultLocked):
            manager.list_entries(unlocked)
        with pytest.raises(VaultLocked):
            manager.add_entry(unlocked, "github")

    def test_repr_hides_key(self, unlocked):
        assert "vault_key" not in repr(unlocked)


class TestSessions:

    def test_unlock_from_session(self, manager, unlocked):
        manager.add_entry(unlocked, "github")
        ctx = manager.unlock_from_session()
        assert [s.name for s in manager.list_entries(ctx)] == ["github"]

    def test_load_session_after_lock(self, manager, unlocked):
        manager.lock(unlocked)
        with pytest.raises(NoActiveSession):
            manager.load_session()

    def test_session_for_other_vault_is_cleared(self, manager, unlocked):
        manager.session_cache.save_session(generate_key())
        with pytest.raises(InvalidSession):
            manager.unlock_from_session()
        assert not manager.session_cache.path.exists()

    def test_ensure_unlocked_prefers_session(self, manager, unlocked):
        def prompt():
            raise AssertionError("prompted despite an active session")

        assert manager.ensure_unlocked(prompt).is_unlocked

    def test_ensure_unlocked_prompts_without_session(self, manager, unlocked):
        manager.lock(unlocked)
        calls = []

        def prompt():
            calls.append(1)
            return bytearray(PASSPHRASE)

        ctx = manager.ensure_unlocked(prompt)
        assert ctx.is_unlocked
        assert calls == [1]
        assert manager.session_cache.has_active_session()

    def test_clear_session(self, manager, unlocked):
        manager.clear_session()
        manager.clear_session()
        with pytest.raises(NoActiveSession):
            manager.unlock_from_session()

    def test_save_session_explicitly(self, manager, unlocked):
        manager.clear_session()
        manager.save_session(unlocked)
        assert manager.unlock_from_session().is_unlocked

    def test_without_session_cache(self, tmp_path, fast_kdf):
        manager = make_manager(tmp_path, "nosession", None, fast_kdf, session=False)
        manager.init(PASSPHRASE, PASSPHRASE)
        with pytest.raises(NoActiveSession):
            manager.unlock_from_session()


class TestEntries:

    def test_version_increments_per_mutation(self, manager, remote_store, unlocked):
        start = unlocked.version
        manager.add_entry(unlocked, "a")
        manager.add_entry(unlocked, "b")
        manager.update_entry(unlocked, "a", username="someone")
        result = manager.remove_entry(unlocked, "b")

        assert result.version == start + 4
        assert manager.local.load().version == start + 4
        assert remote_store.get("alice").version == start + 4
        assert result.remote_pushed

    def test_each_mutation_uses_fresh_nonce(self, manager, unlocked):
        first = manager.add_entry(unlocked, "a").envelope
        second = manager.add_entry(unlocked, "b").envelope
        assert first.nonce != second.nonce
        assert first.enc_vault_key == second.enc_vault_key

    def test_update_entry(self, manager, unlocked):
        added = manager.add_entry(unlocked, "github", username="me", password=b"old").entry
        updated = manager.update_entry(unlocked, added.id, password=b"new").entry
        assert updated.id == added.id
        assert updated.username == "me"
        assert manager.get_entry(unlocked, "github").password == b"new"

    def test_duplicate_name_leaves_state_untouched(self, manager, unlocked):
        manager.add_entry(unlocked, "github")
        version = unlocked.version
        with pytest.raises(ValidationError):
            manager.add_entry(unlocked, "github")
        assert unlocked.version == version
        assert len(manager.list_entries(unlocked)) == 1
        assert manager.local.load().version == version

    def test_missing_entry(self, manager, unlocked):
        with pytest.raises(EntryNotFound):
            manager.get_entry(unlocked, "nope")
        with pytest.raises(EntryNotFound):
            manager.remove_entry(unlocked, "nope")

    def test_list_entries_has_no_secrets(self, manager, unlocked):
        manager.add_entry(unlocked, "github", password=b"s3cret")
        summary = manager.list_entries(unlocked)[0]
        assert not hasattr(summary, "password")

    def test_picks_up_changes_from_another_process(self, tmp_path, fast_kdf):
        remote = InMemoryRemoteStore()
        first = make_manager(tmp_path, "shared", remote, fast_kdf)
        second = VaultManager(
            LocalReplicaStore(first.local.path),
            remote,
            account="alice",
            kdf_params=fast_kdf,
        )

        ctx1 = first.init(PASSPHRASE, PASSPHRASE)
        ctx2 = second.unlock(PASSPHRASE)

        first.add_entry(ctx1, "a")
        result = second.add_entry(ctx2, "b")

        assert result.version == 3
        assert [s.name for s in second.list_entries(ctx2)] == ["a", "b"]
        assert remote.get("alice").version == 3


class TestPushModes:

    def test_best_effort_keeps_local_write(self, tmp_path, fast_kdf, caplog):
        manager = make_manager(tmp_path, "dev", FailingRemote(), fast_kdf)
        ctx = manager.init(PASSPHRASE, PASSPHRASE)

        with caplog.at_level(logging.WARNING, logger="vaultctl.manager"):
            result = manager.add_entry(ctx, "github")

        assert not result.remote_pushed
        assert manager.local.load().version == 2
        assert "Remote push of version 2 failed" in caplog.text

    def test_strict_raises_after_local_write(self, tmp_path, fast_kdf):
        manager = make_manager(tmp_path, "dev", FailingRemote(), fast_kdf, push_mode=RemotePushMode.STRICT)
        with pytest.raises(StorageIO):
            manager.init(PASSPHRASE, PASSPHRASE)
        assert manager.is_initialized()

    def test_disabled_never_pushes(self, tmp_path, fast_kdf):
        remote = InMemoryRemoteStore()
        manager = make_manager(tmp_path, "dev", remote, fast_kdf, push_mode=RemotePushMode.DISABLED)
        ctx = manager.init(PASSPHRASE, PASSPHRASE)
        result = manager.add_entry(ctx, "github")
        assert not result.remote_pushed
        with pytest.raises(NotFound):
            remote.get("alice")

    def test_stale_device_push_conflicts(self, tmp_path, fast_kdf, audit_log):
        remote = InMemoryRemoteStore()
        laptop = make_manager(tmp_path, "laptop", remote, fast_kdf)
        phone = make_manager(tmp_path, "phone", remote, fast_kdf, audit=audit_log)

        laptop_ctx = laptop.init(PASSPHRASE, PASSPHRASE)
        phone_ctx = phone.unlock(PASSPHRASE)
        laptop.add_entry(laptop_ctx, "from-laptop")

        result = phone.add_entry(phone_ctx, "from-phone")
        assert not result.remote_pushed
        assert remote.get("alice").version == 2
        assert audit_log.get_events(event_type=AuditEventType.SYNC_CONFLICT)


class TestRemoteFallbackAndSync:

    def test_unlock_falls_back_to_remote(self, tmp_path, fast_kdf):
        remote = InMemoryRemoteStore()
        laptop = make_manager(tmp_path, "laptop", remote, fast_kdf)
        ctx = laptop.init(PASSPHRASE, PASSPHRASE)
        laptop.add_entry(ctx, "github", password=b"s3cret")

        phone = make_manager(tmp_path, "phone", remote, fast_kdf)
        assert not phone.is_initialized()
        phone_ctx = phone.unlock(PASSPHRASE)

        assert phone.get_entry(phone_ctx, "github").password == b"s3cret"
        assert phone.is_initialized()
        assert phone.local.read_bytes() == laptop.local.read_bytes()

    def test_fallback_without_remote_record(self, tmp_path, fast_kdf):
        phone = make_manager(tmp_path, "phone", InMemoryRemoteStore(), fast_kdf)
        with pytest.raises(VaultNotFound):
            phone.unlock(PASSPHRASE)

    def test_sync_remote_newer_locks_context(self, tmp_path, fast_kdf):
        remote = InMemoryRemoteStore()
        laptop = make_manager(tmp_path, "laptop", remote, fast_kdf)
        phone = make_manager(tmp_path, "phone", remote, fast_kdf)

        laptop_ctx = laptop.init(PASSPHRASE, PASSPHRASE)
        phone_ctx = phone.unlock(PASSPHRASE)
        laptop.add_entry(laptop_ctx, "github")

        result = phone.sync(phone_ctx)
        assert result.outcome is SyncOutcome.REMOTE_NEWER
        assert not phone_ctx.is_unlocked
        assert phone.local.load().version == 2

        phone_ctx = phone.unlock(PASSPHRASE)
        assert [s.name for s in phone.list_entries(phone_ctx)] == ["github"]

    def test_sync_keeps_local_commit_made_during_round_trip(self, tmp_path, fast_kdf):
        remote = StallingRemote()
        laptop = make_manager(tmp_path, "laptop", remote, fast_kdf)
        laptop.init(PASSPHRASE, PASSPHRASE)

        phone = make_manager(tmp_path, "phone", remote, fast_kdf, push_mode=RemotePushMode.DISABLED)
        phone_ctx = phone.unlock(PASSPHRASE)

        laptop_ctx = laptop.unlock(PASSPHRASE)
        laptop.add_entry(laptop_ctx, "from-laptop")
        assert remote.get("alice").version == 2

        # A second process on the phone commits while sync waits on the remote
        other = VaultManager(LocalReplicaStore(phone.local.path), None, account="alice", kdf_params=fast_kdf)
        other_ctx = other.unlock(PASSPHRASE)

        def commit_locally():
            other.add_entry(other_ctx, "offline-1")
            other.add_entry(other_ctx, "offline-2")

        remote.before_get = commit_locally
        result = phone.sync(phone_ctx)

        assert result.outcome is SyncOutcome.PUSHED
        assert phone.local.load().version == 3
        assert remote.get("alice").version == 3
        assert phone_ctx.is_unlocked
        ctx = phone.unlock(PASSPHRASE)
        assert [s.name for s in phone.list_entries(ctx)] == ["offline-1", "offline-2"]

    def test_sync_pushes_offline_changes(self, tmp_path, fast_kdf):
        remote = InMemoryRemoteStore()
        laptop = make_manager(tmp_path, "laptop", remote, fast_kdf)
        laptop.init(PASSPHRASE, PASSPHRASE)

        phone = make_manager(tmp_path, "phone", remote, fast_kdf, push_mode=RemotePushMode.DISABLED)
        ctx = phone.unlock(PASSPHRASE)
        phone.add_entry(ctx, "offline")
        assert remote.get("alice").version == 1

        result = phone.sync(ctx)
        assert result.outcome is SyncOutcome.PUSHED
        assert ctx.is_unlocked
        assert remote.get("alice").version == 2

    def test_sync_to_empty_remote(self, tmp_path, fast_kdf):
        remote = InMemoryRemoteStore()
        manager = make_manager(tmp_path, "dev", remote, fast_kdf, push_mode=RemotePushMode.DISABLED)
        manager.init(PASSPHRASE, PASSPHRASE)
        assert manager.sync().outcome is SyncOutcome.PUSHED_NEW


class TestRotation:

    def test_rotation_preserves_entries(self, manager, unlocked):
        manager.add_entry(unlocked, "github", password=b"s3cret")
        version = unlocked.version

        result = manager.rotate_master(unlocked, PASSPHRASE, b"new passphrase", b"new passphrase")
        assert result.version == version + 1
        assert result.remote_pushed
        manager.lock(unlocked)

        with pytest.raises(InvalidPassphrase):
            manager.unlock(PASSPHRASE)
        ctx = manager.unlock(b"new passphrase")
        assert manager.get_entry(ctx, "github").password == b"s3cret"

    def test_rotation_wrong_current(self, manager, unlocked):
        with pytest.raises(InvalidPassphrase):
            manager.rotate_master(unlocked, b"wrong", b"new passphrase", b"new passphrase")
        assert manager.local.load().version == unlocked.version

    def test_rotation_confirmation_mismatch(self, manager, unlocked):
        with pytest.raises(ValidationError):
            manager.rotate_master(unlocked, PASSPHRASE, b"new passphrase", b"typo")

    def test_rotation_keeps_session_valid(self, manager, unlocked):
        manager.rotate_master(unlocked, PASSPHRASE, b"new passphrase", b"new passphrase")
        assert manager.unlock_from_session().is_unlocked


class TestBackupRestore:

    def test_backup_is_byte_identical(self, manager, unlocked):
        path = manager.backup()
        assert path.parent == manager.backup_dir
        assert path.name.startswith("vault-") and path.suffix == ".enc"
        assert path.read_bytes() == manager.local.read_bytes()

    def test_backup_to_explicit_path(self, manager, unlocked, tmp_path):
        target = tmp_path / "elsewhere" / "copy.enc"
        assert manager.backup(target) == target
        assert target.read_bytes() == manager.local.read_bytes()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
    def test_backup_keeps_explicit_directory_mode(self, manager, unlocked, tmp_path):
        shared = tmp_path / "shared"
        shared.mkdir()
        os.chmod(shared, 0o755)

        manager.backup(shared / "vault.enc")

        assert stat.S_IMODE(os.stat(shared).st_mode) == 0o755
        assert (shared / "vault.enc").read_bytes() == manager.local.read_bytes()

    def test_restore(self, manager, unlocked):
        manager.add_entry(unlocked, "keep")
        backup = manager.backup()
        manager.add_entry(unlocked, "discard")

        envelope = manager.restore(backup)
        assert manager.local.read_bytes() == backup.read_bytes()
        assert envelope.version == 2
        assert not manager.session_cache.path.exists()
        assert any(p.name.startswith("vault-before-restore-") for p in manager.backup_dir.iterdir())

        ctx = manager.unlock(PASSPHRASE)
        assert [s.name for s in manager.list_entries(ctx)] == ["keep"]

    def test_restore_without_safety_copy(self, manager, unlocked, tmp_path):
        backup = manager.backup(tmp_path / "b.enc")
        manager.restore(backup, backup_current=False)
        assert not manager.backup_dir.exists() or not any(manager.backup_dir.iterdir())

    def test_restore_missing(self, manager, unlocked, tmp_path):
        with pytest.raises(NotFound):
            manager.restore(tmp_path / "missing.enc")

    def test_restore_malformed_leaves_vault(self, manager, unlocked, tmp_path):
        before = manager.local.read_bytes()
        bad = tmp_path / "bad.enc"
        bad.write_bytes(b"not an envelope")
        with pytest.raises(ParseFailure):
            manager.restore(bad)
        assert manager.local.read_bytes() == before


class TestAudit:

    def test_events_recorded(self, manager, unlocked, audit_log):
        manager.add_entry(unlocked, "github", password=b"s3cret")
        manager.lock(unlocked)

        types = [e["event_type"] for e in audit_log.get_events()]
        assert types[0] == AuditEventType.VAULT_INITIALIZED.value
        assert AuditEventType.ENTRY_ADDED.value in types
        assert types[-1] == AuditEventType.VAULT_LOCKED.value
        assert audit_log.verify_integrity() == (True, len(types))

    def test_no_secrets_in_audit_log(self, manager, unlocked, audit_log):
        manager.add_entry(unlocked, "github", username="me", password=b"s3cret")
        text = Path(audit_log.path).read_text()
        assert "s3cret" not in text
        assert "github" not in text
        assert PASSPHRASE.decode() not in text


class TestFromConfig:

    def test_wiring(self, tmp_path):
        config = VaultctlConfig(
            paths=PathConfig(
                data_dir=tmp_path / "data",
                config_dir=tmp_path / "config",
                log_dir=tmp_path / "logs",
            ),
            sync=SyncConfig(account_id="bob", device_id="desk", remote_push_mode=RemotePushMode.STRICT),
        )
        manager = VaultManager.from_config(
            config,
            remote=InMemoryRemoteStore(),
            secret_backend=InMemorySecretBackend(),
        )

        assert manager.account == "bob"
        assert manager.push_mode is RemotePushMode.STRICT
        assert manager.local.path == tmp_path / "data" / "vault.db"
        assert manager.session_cache.path == tmp_path / "data" / "session.json"
        assert manager.backup_dir == tmp_path / "data" / "backups"
        assert not manager.is_initialized()
