"""
Memory Zeroization Utilities
============================

Provides explicit zeroization of key and passphrase buffers.

Security Properties:
- Explicit zeroization (no GC reliance)
- Exception-safe cleanup
- Constant-time comparison for confirmation checks

Key Concepts:
- Zeroization: Overwriting memory with zeros/patterns
- Guard: Automatic cleanup on scope exit
"""

from __future__ import annotations

import ctypes
import hmac
from contextlib import contextmanager
from typing import Iterator, Optional


def secure_zero(data: Optional[bytearray | memoryview]) -> None:
    """
    Securely zero a byte buffer.

    Uses ctypes for direct memory access where possible,
    with fallback to Python-level zeroing.

    Args:
        data: Mutable byte buffer to zero (None is ignored)

    Security Notes:
        - This is best-effort; Python may have copies
        - Call immediately after use, before GC
        - Buffer must be mutable (bytearray, not bytes)
    """
    if data is None or len(data) == 0:
        return

    if isinstance(data, memoryview):
        for i in range(len(data)):
            data[i] = 0
        return

    try:
        addr = ctypes.addressof(
            (ctypes.c_char * len(data)).from_buffer(data)
        )

        # Multi-pass wipe
        ctypes.memset(addr, 0, len(data))
        ctypes.memset(addr, 0xFF, len(data))
        ctypes.memset(addr, 0, len(data))
    except (TypeError, ValueError, BufferError):
        # Fallback: Python-level zeroing
        for i in range(len(data)):
            data[i] = 0


def to_private_buffer(data: bytes | bytearray | memoryview) -> bytearray:
    """
    Copy caller-owned secret material into a private, wipeable buffer.

    The caller keeps responsibility for its own copy; routines zeroize
    the returned buffer on every exit path.
    """
    return bytearray(data)


def constant_time_equal(a: bytes | bytearray, b: bytes | bytearray) -> bool:
    """
    Perform constant-time comparison of two byte strings.

    Used for passphrase-confirmation checks.
    """
    return hmac.compare_digest(bytes(a), bytes(b))


@contextmanager
def ZeroizeContext(*buffers: Optional[bytearray]) -> Iterator[None]:
    """
    Context manager that zeroizes buffers on exit.

    Always zeroizes, whether exit is normal or exceptional.

    Usage:
        master_key = derive_master_key(passphrase, salt, params)

        with ZeroizeContext(master_key):
            vault_key = unwrap_key(wrapped, nonce, master_key)
        # master_key is now zeroed
    """
    try:
        yield
    finally:
        for buf in buffers:
            secure_zero(buf)
