"""
Path Utilities
==============

Owner-only directories and atomic file replacement.
"""

from __future__ import annotations

import os
import platform
import re
import stat
import tempfile
from pathlib import Path
from typing import Final

# Characters not allowed in filenames across all platforms
_UNSAFE_CHARS: Final[re.Pattern[str]] = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

_IS_WINDOWS: Final[bool] = platform.system().lower() == "windows"


def sanitize_filename(filename: str, replacement: str = "_") -> str:
    """
    Sanitize a filename by removing potentially dangerous characters.

    Raises:
        ValueError: If the name is empty before or after sanitization
    """
    if not filename:
        raise ValueError("Filename cannot be empty")

    sanitized = _UNSAFE_CHARS.sub(replacement, filename).strip(". ")
    if not sanitized:
        raise ValueError("Filename becomes empty after sanitization")

    return sanitized[:200]


def ensure_private_dir(directory: Path) -> Path:
    """Create a directory (and parents) restricted to the owning account."""
    directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    if not _IS_WINDOWS:
        directory.chmod(stat.S_IRWXU)  # 700 - owner only
    return directory


def restrict_to_owner(path: Path) -> None:
    """Set 0600 on a file (no-op on Windows)."""
    if not _IS_WINDOWS:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)


def atomic_write_bytes(path: Path, data: bytes, private_dir: bool = True) -> None:
    """
    Replace ``path`` with ``data`` so readers see old or new bytes, never a mix.

    The data goes to an owner-only temp file in the same directory, is
    fsynced, then renamed over the target.

    Args:
        path: Target file
        data: New contents
        private_dir: Restrict the parent directory to the owner (0700).
            Pass False for caller-chosen destinations: a missing parent is
            created, an existing one keeps its permissions.
    """
    if private_dir:
        ensure_private_dir(path.parent)
    else:
        path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        restrict_to_owner(tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    if not _IS_WINDOWS:
        # Persist the rename itself
        dir_fd = os.open(path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
