"""
Shared pytest fixtures for the vaultctl test suite.

Everything runs against temp directories, an in-memory remote store and
an in-memory device secret. KDF costs are lowered so the suite stays fast;
production minimums live in SecurityConfig, not in KDFParams.
"""

from datetime import datetime, timedelta, timezone

import pytest

from vaultctl.core.config import RemotePushMode, VaultctlConfig
from vaultctl.core.crypto import KDFParams
from vaultctl.security.audit import TamperAwareAuditLog
from vaultctl.session import InMemorySecretBackend, SessionCache
from vaultctl.storage import InMemoryRemoteStore, LocalReplicaStore
from vaultctl.vault.manager import VaultManager

PASSPHRASE = b"correct horse battery staple"


class FakeClock:
    """Settable clock for session expiry tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _reset_config_singleton():
    VaultctlConfig.reset_instance()
    yield
    VaultctlConfig.reset_instance()


@pytest.fixture
def fast_kdf():
    return KDFParams(memory=64, iterations=1, parallelism=1)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def local_store(tmp_path):
    return LocalReplicaStore(tmp_path / "data" / "vault.db")


@pytest.fixture
def remote_store():
    return InMemoryRemoteStore(device_id="test-device")


@pytest.fixture
def secret_backend():
    return InMemorySecretBackend()


@pytest.fixture
def session_cache(tmp_path, secret_backend, clock):
    return SessionCache(tmp_path / "data" / "session.json", secret_backend, clock=clock)


@pytest.fixture
def audit_log(tmp_path):
    return TamperAwareAuditLog(tmp_path / "logs" / "audit.log")


@pytest.fixture
def manager(tmp_path, local_store, remote_store, session_cache, fast_kdf, audit_log):
    return VaultManager(
        local_store,
        remote_store,
        session_cache,
        account="alice",
        kdf_params=fast_kdf,
        push_mode=RemotePushMode.BEST_EFFORT,
        backup_dir=tmp_path / "backups",
        device_id="test-device",
        audit=audit_log,
    )


@pytest.fixture
def unlocked(manager):
    """A freshly initialized, unlocked vault context."""
    return manager.init(PASSPHRASE, PASSPHRASE)
