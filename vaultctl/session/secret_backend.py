"""
Secret Backends
===============

Pluggable holders of the device secret that protects session keys at rest.

A stolen session file alone is not useful: its session key is wrapped
under a secret that lives somewhere else.
"""

from __future__ import annotations

import binascii
import logging
import os
import secrets
import tempfile
import threading
from abc import ABC, abstractmethod
from base64 import b64decode, b64encode
from pathlib import Path
from typing import Dict, Final

from vaultctl.core.errors import ParseFailure, StorageIO
from vaultctl.utils.paths import ensure_private_dir, restrict_to_owner, sanitize_filename

DEVICE_SECRET_SIZE: Final[int] = 32


class SecretBackend(ABC):
    """Abstract base for device secret stores."""

    @abstractmethod
    def get_or_create_named_secret(self, name: str) -> bytes:
        """
        Return the named secret, creating a random one on first use.

        Raises:
            StorageIO: If the backend cannot be reached
        """
        ...


class InMemorySecretBackend(SecretBackend):
    """Process-local secrets. Sessions do not survive the process."""

    def __init__(self) -> None:
        self._secrets: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get_or_create_named_secret(self, name: str) -> bytes:
        with self._lock:
            if name not in self._secrets:
                self._secrets[name] = secrets.token_bytes(DEVICE_SECRET_SIZE)
            return self._secrets[name]

    def __repr__(self) -> str:
        return f"InMemorySecretBackend(secrets={len(self._secrets)})"


class FileSecretBackend(SecretBackend):
    """
    Owner-only files, one per secret, under a private directory.

    A new secret is fully written to a temp file and then hard-linked into
    place. The link fails if the name exists, so readers never see a
    partial file and two processes racing on first use agree on a single
    secret.
    """

    __slots__ = ("_directory", "_log")

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)
        self._log = logging.getLogger("vaultctl.session.secrets")

    def _path_for(self, name: str) -> Path:
        return self._directory / f"{sanitize_filename(name)}.key"

    def get_or_create_named_secret(self, name: str) -> bytes:
        path = self._path_for(name)
        try:
            ensure_private_dir(self._directory)
            try:
                return self._read(path)
            except FileNotFoundError:
                pass

            secret = secrets.token_bytes(DEVICE_SECRET_SIZE)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._directory,
                prefix=f".{path.name}.",
                suffix=".tmp",
            )
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(b64encode(secret))
                    f.flush()
                    os.fsync(f.fileno())
                restrict_to_owner(tmp_path)
                try:
                    os.link(tmp_path, path)
                except FileExistsError:
                    return self._read(path)
            finally:
                tmp_path.unlink(missing_ok=True)

            self._log.info(f"Created device secret {path.name}")
            return secret
        except OSError as e:
            raise StorageIO(f"failed to access device secret: {e}") from e

    @staticmethod
    def _read(path: Path) -> bytes:
        try:
            secret = b64decode(path.read_bytes().strip(), validate=True)
        except binascii.Error as e:
            raise ParseFailure(f"device secret {path.name} is corrupted") from e
        if len(secret) != DEVICE_SECRET_SIZE:
            raise ParseFailure(f"device secret {path.name} has the wrong size")
        return secret

    def __repr__(self) -> str:
        return f"FileSecretBackend(directory={str(self._directory)!r})"
