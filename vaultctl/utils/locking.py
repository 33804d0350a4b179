"""
Cross-Process File Locks
========================

Exclusive advisory locks guarding read-modify-write of the local replica
and the session file when several invocations share one device.
"""

from __future__ import annotations

import platform
import time
from pathlib import Path
from typing import IO, Final, Optional

from vaultctl.core.errors import StorageIO
from vaultctl.utils.paths import ensure_private_dir

_IS_WINDOWS: Final[bool] = platform.system() == "Windows"
_POLL_INTERVAL: Final[float] = 0.05


class FileLock:
    """
    Re-entrant exclusive lock on a sidecar ``.lock`` file.

    Usage:
        lock = FileLock(vault_path.with_suffix(".lock"))
        with lock:
            envelope = store.load()
            store.save(mutated)

    Nested ``with`` blocks on the same instance only lock once.
    """

    __slots__ = ("_path", "_timeout", "_handle", "_depth")

    def __init__(self, path: Path | str, timeout: float = 10.0) -> None:
        self._path = Path(path)
        self._timeout = timeout
        self._handle: Optional[IO[bytes]] = None
        self._depth = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_held(self) -> bool:
        return self._depth > 0

    def acquire(self) -> None:
        """
        Take the lock, polling until the timeout.

        Raises:
            StorageIO: If another process holds the lock past the timeout
        """
        if self._depth > 0:
            self._depth += 1
            return

        ensure_private_dir(self._path.parent)
        handle = open(self._path, "a+b")
        deadline = time.monotonic() + self._timeout
        while True:
            try:
                self._try_lock(handle)
                break
            except OSError as e:
                if time.monotonic() >= deadline:
                    handle.close()
                    raise StorageIO(f"Timed out waiting for lock {self._path}") from e
                time.sleep(_POLL_INTERVAL)

        self._handle = handle
        self._depth = 1

    def release(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth > 0:
            return

        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            self._unlock(handle)
        finally:
            handle.close()

    @staticmethod
    def _try_lock(handle: IO[bytes]) -> None:
        if _IS_WINDOWS:
            import msvcrt
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    @staticmethod
    def _unlock(handle: IO[bytes]) -> None:
        if _IS_WINDOWS:
            import msvcrt
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        else:
            import fcntl
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"FileLock(path={str(self._path)!r}, held={self.is_held})"


def lock_path_for(path: Path) -> Path:
    """Sidecar lock file next to ``path``."""
    return path.with_name(path.name + ".lock")


__all__ = ["FileLock", "lock_path_for"]
