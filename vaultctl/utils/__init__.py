"""
Utility module - Path handling, atomic writes and file locks.
"""

from vaultctl.utils.locking import FileLock, lock_path_for
from vaultctl.utils.paths import (
    atomic_write_bytes,
    ensure_private_dir,
    restrict_to_owner,
    sanitize_filename,
)

__all__ = [
    "FileLock",
    "atomic_write_bytes",
    "ensure_private_dir",
    "lock_path_for",
    "restrict_to_owner",
    "sanitize_filename",
]
