"""
vaultctl Memory Security Module
===============================

Provides explicit zeroization of sensitive buffers.

WARNING:
- Python's memory model doesn't guarantee secure erasure
- These are best-effort mitigations
"""

from vaultctl.core.memory.zeroization import (
    secure_zero,
    to_private_buffer,
    constant_time_equal,
    ZeroizeContext,
)

__all__ = [
    "secure_zero",
    "to_private_buffer",
    "constant_time_equal",
    "ZeroizeContext",
]
