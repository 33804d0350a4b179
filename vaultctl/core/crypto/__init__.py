"""
vaultctl Cryptographic Core
===========================

Provides the primitives of the envelope-encryption hierarchy.

Architecture:
    1. Argon2id: passphrase -> master key
    2. XChaCha20-Poly1305: master key wraps vault key, vault key
       encrypts the record model

Security Properties:
    - All encryption is authenticated (AEAD)
    - Master keys never touch disk
    - Constant-time comparisons for confirmation checks
    - Secure RNG for all random values

WARNING: This module handles sensitive cryptographic material.
         Incorrect usage can compromise security.
"""

from vaultctl.core.crypto.kdf import (
    KDFParams,
    derive_master_key,
    expand_key,
    generate_key,
    generate_salt,
)
from vaultctl.core.crypto.xchacha20 import (
    CIPHER_NAME,
    XChaCha20Cipher,
    decrypt,
    encrypt,
    unwrap_key,
    wrap_key,
)

__all__ = [
    "CIPHER_NAME",
    "KDFParams",
    "XChaCha20Cipher",
    "decrypt",
    "derive_master_key",
    "encrypt",
    "expand_key",
    "generate_key",
    "generate_salt",
    "unwrap_key",
    "wrap_key",
]
