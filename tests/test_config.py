# Tests for configuration
#
# Coverage:
#   - Defaults and derived paths
#   - Validation of security minimums and sync settings
#   - Environment overrides, including skipped sensitive keys
#   - Immutability and the singleton accessor

from pathlib import Path

import pytest

from vaultctl.core.config import (
    LoggingConfig,
    PathConfig,
    RemotePushMode,
    SecurityConfig,
    SyncConfig,
    VaultctlConfig,
    default_device_id,
)


class TestDefaults:

    def test_security_defaults(self):
        security = SecurityConfig()
        assert security.kdf_memory_kib == 65536
        assert security.kdf_iterations == 3
        assert security.kdf_parallelism == 1
        assert security.session_timeout_seconds == 1800

    def test_sync_defaults(self):
        sync = SyncConfig()
        assert sync.account_id == "default"
        assert sync.max_retries == 3
        assert sync.remote_push_mode is RemotePushMode.BEST_EFFORT

    def test_derived_paths(self, tmp_path):
        paths = PathConfig(data_dir=tmp_path / "d", config_dir=tmp_path / "c", log_dir=tmp_path / "l")
        assert paths.vault_path == tmp_path / "d" / "vault.db"
        assert paths.session_path == tmp_path / "d" / "session.json"
        assert paths.backup_dir == tmp_path / "d" / "backups"
        assert paths.secrets_dir == tmp_path / "c" / "secrets"
        assert paths.audit_log_path == tmp_path / "l" / "audit.log"

    def test_default_device_id(self):
        assert default_device_id().rsplit("-", 1)[1].isdigit()


class TestValidation:

    def test_relative_paths_rejected(self):
        with pytest.raises(ValueError):
            PathConfig(data_dir=Path("relative"))

    @pytest.mark.parametrize("kwargs", [
        {"kdf_memory_kib": 1024},
        {"kdf_iterations": 1},
        {"kdf_parallelism": 0},
        {"session_timeout_seconds": 0},
    ])
    def test_security_minimums(self, kwargs):
        with pytest.raises(ValueError):
            SecurityConfig(**kwargs)

    @pytest.mark.parametrize("kwargs", [
        {"account_id": ""},
        {"max_retries": 0},
        {"remote_timeout_seconds": 0},
    ])
    def test_sync_validation(self, kwargs):
        with pytest.raises(ValueError):
            SyncConfig(**kwargs)

    def test_log_level(self):
        with pytest.raises(ValueError):
            LoggingConfig(level="CHATTY")


class TestEnvironment:

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VAULTCTL_PATHS__DATA_DIR", str(tmp_path / "data"))
        monkeypatch.setenv("VAULTCTL_SECURITY__SESSION_TIMEOUT_SECONDS", "600")
        monkeypatch.setenv("VAULTCTL_SYNC__ACCOUNT_ID", "alice")
        monkeypatch.setenv("VAULTCTL_SYNC__REMOTE_PUSH_MODE", "STRICT")
        monkeypatch.setenv("VAULTCTL_LOGGING__LEVEL", "DEBUG")

        config = VaultctlConfig.load()
        assert config.paths.data_dir == tmp_path / "data"
        assert config.security.session_timeout_seconds == 600
        assert config.sync.account_id == "alice"
        assert config.sync.remote_push_mode is RemotePushMode.STRICT
        assert config.logging.level == "DEBUG"

    def test_sensitive_keys_ignored(self, monkeypatch):
        monkeypatch.setenv("VAULTCTL_SECURITY__SESSION_SECRET_NAME", "attacker")
        overrides = VaultctlConfig._parse_env_overrides("VAULTCTL")
        assert "security.session_secret_name" not in overrides

    def test_custom_prefix(self, monkeypatch):
        monkeypatch.setenv("MYVAULT_SYNC__ACCOUNT_ID", "bob")
        assert VaultctlConfig.load(env_prefix="MYVAULT").sync.account_id == "bob"


class TestImmutability:

    def test_frozen(self):
        config = VaultctlConfig()
        with pytest.raises(AttributeError):
            config._sync = SyncConfig(account_id="mallory")

    def test_nested_frozen(self):
        with pytest.raises(AttributeError):
            VaultctlConfig().sync.account_id = "mallory"

    def test_singleton(self):
        assert VaultctlConfig.get_instance() is VaultctlConfig.get_instance()

    def test_hash_tracks_content(self):
        a = VaultctlConfig(sync=SyncConfig(account_id="a", device_id="d"))
        b = VaultctlConfig(sync=SyncConfig(account_id="b", device_id="d"))
        assert a.config_hash != b.config_hash

    def test_ensure_directories(self, tmp_path):
        config = VaultctlConfig(paths=PathConfig(
            data_dir=tmp_path / "d", config_dir=tmp_path / "c", log_dir=tmp_path / "l",
        ))
        config.ensure_directories()
        assert all((tmp_path / name).is_dir() for name in ("d", "c", "l"))
