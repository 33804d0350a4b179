"""
Secure Logging Module
=====================

Security-aware logging for the vault core.

Security Features:
- Automatic filtering of passphrases, keys and encoded key material
- Rotating log files with size limits and owner-only directories
- Optional JSON output for log aggregation

Components obtain their loggers with ``logging.getLogger("vaultctl.<name>")``;
the handlers installed here attach to the ``vaultctl`` logger or the root.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final, List, Optional, Pattern

from vaultctl.core.config import LoggingConfig


_SENSITIVE_PATTERNS: Final[list[tuple[str, Pattern[str]]]] = [
    ("passphrase", re.compile(r'(?i)(passphrase|password|passwd|pwd)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("key", re.compile(r'(?i)(vault[_-]?key|session[_-]?key|master[_-]?key|device[_-]?secret)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("token", re.compile(r'(?i)(token|bearer)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("secret", re.compile(r'(?i)(secret|private[_-]?key)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    # Base64 blobs (wrapped keys, ciphertext, nonces)
    ("base64_secret", re.compile(r'[A-Za-z0-9+/]{40,}={0,2}')),
    ("hex_secret", re.compile(r'(?i)(?:0x)?[a-f0-9]{32,}')),
]

_REDACTED_TEXT: Final[str] = "[REDACTED]"
_CONSOLE_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_FILE_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"


class SecureLogFilter(logging.Filter):
    """
    Log filter that removes sensitive information from log messages.

    Records are always kept; only their text is sanitized.
    """

    def __init__(self, name: str = "", additional_patterns: Optional[list[Pattern[str]]] = None) -> None:
        super().__init__(name)
        self._additional_patterns = additional_patterns or []

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg and isinstance(record.msg, str):
            record.msg = self._sanitize(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._sanitize(v) if isinstance(v, str) else v
                               for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self._sanitize(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True

    def _sanitize(self, text: str) -> str:
        result = text
        for name, pattern in _SENSITIVE_PATTERNS:
            result = pattern.sub(f"{name}={_REDACTED_TEXT}", result)
        for pattern in self._additional_patterns:
            result = pattern.sub(_REDACTED_TEXT, result)
        return result


class StructuredLogFormatter(logging.Formatter):
    """Formatter that outputs logs as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class SecureRotatingFileHandler(RotatingFileHandler):
    """
    Rotating file handler that creates its directory owner-only (0700)
    and rejects traversal sequences in the log path.
    """

    def __init__(
        self,
        filename: str | Path,
        maxBytes: int = 10 * 1024 * 1024,
        backupCount: int = 5,
        encoding: str = "utf-8",
    ) -> None:
        if ".." in Path(filename).parts:
            raise ValueError("Log path cannot contain path traversal sequences")

        log_path = Path(filename).resolve()
        log_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        super().__init__(
            str(log_path),
            mode="a",
            maxBytes=maxBytes,
            backupCount=backupCount,
            encoding=encoding,
        )


def _build_handlers(
    log_file: Optional[Path],
    settings: LoggingConfig,
    enable_json: bool,
) -> List[logging.Handler]:
    secure_filter = SecureLogFilter()
    handlers: List[logging.Handler] = []

    if settings.enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt="%H:%M:%S"))
        handlers.append(console_handler)

    if settings.enable_file and log_file is not None:
        file_handler = SecureRotatingFileHandler(
            filename=log_file,
            maxBytes=settings.max_file_size_bytes,
            backupCount=settings.backup_count,
        )
        if enable_json:
            file_handler.setFormatter(StructuredLogFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=settings.date_format))
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(logging.DEBUG)
        handler.addFilter(secure_filter)

    return handlers


def get_secure_logger(
    name: str = "vaultctl",
    log_dir: Optional[Path] = None,
    settings: Optional[LoggingConfig] = None,
    enable_json: bool = False,
) -> logging.Logger:
    """
    Create a logger with automatic secret filtering.

    Args:
        name: Logger name; "vaultctl" covers every component logger
        log_dir: Directory for log files (file output disabled if None)
        settings: Logging configuration (defaults if None)
        enable_json: Whether to use JSON format for file output

    Returns:
        Configured logger instance
    """
    settings = settings or LoggingConfig()
    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, settings.level.upper()))

    log_file = log_dir / f"{name.replace('.', '_')}.log" if log_dir else None
    for handler in _build_handlers(log_file, settings, enable_json):
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def configure_root_logger(
    log_dir: Optional[Path] = None,
    settings: Optional[LoggingConfig] = None,
) -> None:
    """
    Configure the root logger with secure defaults.

    Call once at application startup so every logger inherits the
    secret filter.
    """
    settings = settings or LoggingConfig()
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.level.upper()))
    root_logger.handlers.clear()

    log_file = log_dir / "vaultctl.log" if log_dir else None
    for handler in _build_handlers(log_file, settings, enable_json=False):
        root_logger.addHandler(handler)
