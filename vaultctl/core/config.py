"""
Secure Configuration Module
===========================

Provides immutable, environment-aware configuration with security-first defaults.

Security Features:
- Immutable configuration after initialization
- Environment variable override support
- No secrets in default values
- OS-aware path handling
"""

from __future__ import annotations

import hashlib
import os
import platform
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Final, Optional


_APP_DIR_NAME: Final[str] = "vaultctl"

# Keys that can never be supplied through the environment
_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "passphrase", "secret", "token", "api_key",
    "private", "credential", "salt",
})


def _is_sensitive_key(key: str) -> bool:
    """Check if a configuration key might contain sensitive data."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def _get_default_data_dir() -> Path:
    """Get OS-appropriate default data directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif system == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    return base / _APP_DIR_NAME


def _get_default_config_dir() -> Path:
    """Get OS-appropriate default config directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif system == "darwin":
        base = Path.home() / "Library" / "Preferences"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))

    return base / _APP_DIR_NAME


def _get_default_log_dir() -> Path:
    """Get OS-appropriate default log directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
        return base / _APP_DIR_NAME / "Logs"
    elif system == "darwin":
        return Path.home() / "Library" / "Logs" / _APP_DIR_NAME
    else:
        return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state")) / _APP_DIR_NAME / "logs"


def default_device_id() -> str:
    """Identify this device in remote records as <hostname>-<pid>."""
    hostname = platform.node() or "unknown"
    return f"{hostname}-{os.getpid()}"


class RemotePushMode(str, Enum):
    """How mutations treat a failed push to the remote store."""
    BEST_EFFORT = "best_effort"  # warn and keep the local-only success
    STRICT = "strict"            # surface the remote failure
    DISABLED = "disabled"        # never push outside explicit sync


@dataclass(frozen=True, slots=True)
class PathConfig:
    """Immutable path configuration with OS-aware defaults."""

    data_dir: Path = field(default_factory=_get_default_data_dir)
    config_dir: Path = field(default_factory=_get_default_config_dir)
    log_dir: Path = field(default_factory=_get_default_log_dir)

    def __post_init__(self) -> None:
        for field_name in ("data_dir", "config_dir", "log_dir"):
            path = getattr(self, field_name)
            if not path.is_absolute():
                raise ValueError(f"{field_name} must be an absolute path: {path}")

    @property
    def vault_path(self) -> Path:
        return self.data_dir / "vault.db"

    @property
    def session_path(self) -> Path:
        return self.data_dir / "session.json"

    @property
    def backup_dir(self) -> Path:
        return self.data_dir / "backups"

    @property
    def secrets_dir(self) -> Path:
        return self.config_dir / "secrets"

    @property
    def remote_db_path(self) -> Path:
        return self.data_dir / "remote.sqlite3"

    @property
    def audit_log_path(self) -> Path:
        return self.log_dir / "audit.log"


@dataclass(frozen=True, slots=True)
class SecurityConfig:
    """Immutable security configuration."""

    # Argon2id settings (memory in KiB)
    kdf_memory_kib: int = 64 * 1024
    kdf_iterations: int = 3
    kdf_parallelism: int = 1

    # Session settings
    session_timeout_seconds: int = 1800  # 30 minutes
    session_secret_name: str = "vaultctl/session-key"

    def __post_init__(self) -> None:
        if self.kdf_memory_kib < 64 * 1024:
            raise ValueError("KDF memory must be at least 65536 KiB (64 MB)")
        if self.kdf_iterations < 3:
            raise ValueError("KDF iterations must be at least 3")
        if self.kdf_parallelism < 1:
            raise ValueError("KDF parallelism must be at least 1")
        if self.session_timeout_seconds <= 0:
            raise ValueError("Session timeout must be positive")


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Immutable remote store and sync configuration."""

    account_id: str = "default"
    device_id: str = field(default_factory=default_device_id)
    max_retries: int = 3
    remote_push_mode: RemotePushMode = RemotePushMode.BEST_EFFORT
    remote_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if not self.account_id:
            raise ValueError("Account id cannot be empty")
        if self.max_retries < 1:
            raise ValueError("Sync retries must be at least 1")
        if self.remote_timeout_seconds <= 0:
            raise ValueError("Remote timeout must be positive; indefinite waits are not allowed")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Immutable logging configuration."""

    level: str = "INFO"
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10 MB
    backup_count: int = 5
    date_format: str = "%Y-%m-%d %H:%M:%S"
    enable_console: bool = True
    enable_file: bool = True

    def __post_init__(self) -> None:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {self.level}")


class VaultctlConfig:
    """
    Centralized, immutable configuration with environment override support.

    Usage:
        config = VaultctlConfig.load()
        vault_path = config.paths.vault_path
        timeout = config.security.session_timeout_seconds
    """

    __slots__ = ("_paths", "_security", "_sync", "_logging", "_frozen", "_config_hash")

    _instance: Optional[VaultctlConfig] = None

    def __init__(
        self,
        paths: Optional[PathConfig] = None,
        security: Optional[SecurityConfig] = None,
        sync: Optional[SyncConfig] = None,
        logging: Optional[LoggingConfig] = None,
    ) -> None:
        """Initialize configuration. Use VaultctlConfig.load() for standard initialization."""
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_paths", paths or PathConfig())
        object.__setattr__(self, "_security", security or SecurityConfig())
        object.__setattr__(self, "_sync", sync or SyncConfig())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

    def _compute_hash(self) -> str:
        config_str = f"{self._paths}|{self._security}|{self._sync}|{self._logging}"
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def paths(self) -> PathConfig:
        return self._paths

    @property
    def security(self) -> SecurityConfig:
        return self._security

    @property
    def sync(self) -> SyncConfig:
        return self._sync

    @property
    def logging(self) -> LoggingConfig:
        return self._logging

    @property
    def config_hash(self) -> str:
        return self._config_hash

    @classmethod
    def load(cls, env_prefix: str = "VAULTCTL") -> VaultctlConfig:
        """
        Load configuration with environment variable overrides.

        Environment variables use the prefix and double underscores for
        nested values.

        Examples:
            VAULTCTL_LOGGING__LEVEL=DEBUG
            VAULTCTL_SECURITY__SESSION_TIMEOUT_SECONDS=600
            VAULTCTL_PATHS__DATA_DIR=/custom/path
            VAULTCTL_SYNC__ACCOUNT_ID=alice
        """
        env_overrides = cls._parse_env_overrides(env_prefix)

        paths_kwargs: dict[str, Any] = {}
        for name in ("data_dir", "config_dir", "log_dir"):
            if f"paths.{name}" in env_overrides:
                paths_kwargs[name] = Path(env_overrides[f"paths.{name}"])

        security_kwargs: dict[str, Any] = {}
        for name in ("kdf_memory_kib", "kdf_iterations", "kdf_parallelism", "session_timeout_seconds"):
            if f"security.{name}" in env_overrides:
                security_kwargs[name] = int(env_overrides[f"security.{name}"])

        sync_kwargs: dict[str, Any] = {}
        if "sync.account_id" in env_overrides:
            sync_kwargs["account_id"] = env_overrides["sync.account_id"]
        if "sync.device_id" in env_overrides:
            sync_kwargs["device_id"] = env_overrides["sync.device_id"]
        if "sync.max_retries" in env_overrides:
            sync_kwargs["max_retries"] = int(env_overrides["sync.max_retries"])
        if "sync.remote_push_mode" in env_overrides:
            sync_kwargs["remote_push_mode"] = RemotePushMode(env_overrides["sync.remote_push_mode"].lower())
        if "sync.remote_timeout_seconds" in env_overrides:
            sync_kwargs["remote_timeout_seconds"] = float(env_overrides["sync.remote_timeout_seconds"])

        logging_kwargs: dict[str, Any] = {}
        if "logging.level" in env_overrides:
            logging_kwargs["level"] = env_overrides["logging.level"]
        if "logging.enable_console" in env_overrides:
            logging_kwargs["enable_console"] = env_overrides["logging.enable_console"].lower() == "true"
        if "logging.enable_file" in env_overrides:
            logging_kwargs["enable_file"] = env_overrides["logging.enable_file"].lower() == "true"

        return cls(
            paths=PathConfig(**paths_kwargs) if paths_kwargs else None,
            security=SecurityConfig(**security_kwargs) if security_kwargs else None,
            sync=SyncConfig(**sync_kwargs) if sync_kwargs else None,
            logging=LoggingConfig(**logging_kwargs) if logging_kwargs else None,
        )

    @staticmethod
    def _parse_env_overrides(prefix: str) -> dict[str, str]:
        """Parse environment variables with the given prefix."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in os.environ.items():
            if key.startswith(prefix_upper):
                config_key = key[len(prefix_upper):].lower().replace("__", ".")

                # SECURITY: Skip sensitive keys from environment
                if _is_sensitive_key(config_key):
                    continue

                overrides[config_key] = value

        return overrides

    @classmethod
    def get_instance(cls) -> VaultctlConfig:
        """Get or create the singleton configuration instance."""
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance. Use only for testing."""
        cls._instance = None

    def ensure_directories(self) -> None:
        """Create all required directories with owner-only permissions."""
        directories = [
            self._paths.data_dir,
            self._paths.config_dir,
            self._paths.log_dir,
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)
            if platform.system().lower() != "windows":
                directory.chmod(stat.S_IRWXU)  # 700 - owner only

    def __repr__(self) -> str:
        return f"VaultctlConfig(hash={self._config_hash}, account={self._sync.account_id})"

    def __setattr__(self, name: str, value: Any) -> None:
        if hasattr(self, "_frozen") and self._frozen:
            raise AttributeError("VaultctlConfig is immutable after initialization")
        super().__setattr__(name, value)
