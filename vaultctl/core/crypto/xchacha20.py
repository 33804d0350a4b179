"""
XChaCha20-Poly1305 Authenticated Encryption
===========================================

Implements XChaCha20-Poly1305 for both the vault payload and key wrapping.

Security Properties:
    - 256-bit key
    - 192-bit nonce
    - 128-bit Poly1305 authentication tag

Why the extended nonce:
    - Nonces are drawn at random with no global counter
    - 24 random bytes keep the collision probability negligible for the
      lifetime of a vault, unlike the 12-byte IETF variant

WARNING:
    - Never reuse (key, nonce) pairs
    - Always verify tag before using plaintext
"""

from __future__ import annotations

import secrets
from typing import Final, Optional, Tuple

from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_ABYTES,
    crypto_aead_xchacha20poly1305_ietf_KEYBYTES,
    crypto_aead_xchacha20poly1305_ietf_NPUBBYTES,
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

from vaultctl.core.errors import AuthenticationFailure, ValidationError

CIPHER_NAME: Final[str] = "xchacha20poly1305"
XCHACHA_KEY_SIZE: Final[int] = crypto_aead_xchacha20poly1305_ietf_KEYBYTES  # 32
XCHACHA_NONCE_SIZE: Final[int] = crypto_aead_xchacha20poly1305_ietf_NPUBBYTES  # 24
XCHACHA_TAG_SIZE: Final[int] = crypto_aead_xchacha20poly1305_ietf_ABYTES  # 16


class XChaCha20Cipher:
    """
    XChaCha20-Poly1305 AEAD cipher.

    Usage:
        cipher = XChaCha20Cipher()

        ciphertext, nonce = cipher.encrypt(plaintext, key)
        plaintext = cipher.decrypt(ciphertext, nonce, key)

    Security Notes:
        - A fresh random nonce is generated for every call
        - Failed verification never returns partial plaintext
    """

    __slots__ = ()

    @staticmethod
    def generate_nonce() -> bytes:
        """
        Generate a cryptographically secure random nonce.

        Returns:
            24 bytes of cryptographic random data
        """
        return secrets.token_bytes(XCHACHA_NONCE_SIZE)

    def encrypt(
        self,
        plaintext: bytes | bytearray,
        key: bytes | bytearray,
        aad: Optional[bytes] = None,
    ) -> Tuple[bytes, bytes]:
        """
        Encrypt plaintext using XChaCha20-Poly1305.

        Args:
            plaintext: Data to encrypt
            key: 32-byte key
            aad: Additional Authenticated Data

        Returns:
            Tuple of (ciphertext with appended tag, nonce)

        Raises:
            ValidationError: If key is wrong size
        """
        if len(key) != XCHACHA_KEY_SIZE:
            raise ValidationError(f"Key must be exactly {XCHACHA_KEY_SIZE} bytes")

        nonce = self.generate_nonce()
        ciphertext = crypto_aead_xchacha20poly1305_ietf_encrypt(
            bytes(plaintext), aad, nonce, bytes(key)
        )
        return ciphertext, nonce

    def decrypt(
        self,
        ciphertext: bytes,
        nonce: bytes,
        key: bytes | bytearray,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt ciphertext using XChaCha20-Poly1305 with integrity verification.

        Args:
            ciphertext: Encrypted data with Poly1305 tag
            nonce: The nonce used during encryption
            key: The 32-byte encryption key
            aad: Additional Authenticated Data

        Returns:
            Decrypted plaintext bytes

        Raises:
            ValidationError: If parameters are the wrong size
            AuthenticationFailure: If authentication fails

        Security:
            Integrity verified before ANY plaintext returned
        """
        if len(key) != XCHACHA_KEY_SIZE:
            raise ValidationError(f"Key must be exactly {XCHACHA_KEY_SIZE} bytes")
        if len(nonce) != XCHACHA_NONCE_SIZE:
            raise ValidationError(f"Nonce must be exactly {XCHACHA_NONCE_SIZE} bytes")
        if len(ciphertext) < XCHACHA_TAG_SIZE:
            raise AuthenticationFailure()

        try:
            return crypto_aead_xchacha20poly1305_ietf_decrypt(
                bytes(ciphertext), aad, bytes(nonce), bytes(key)
            )
        except CryptoError as e:
            raise AuthenticationFailure() from e


_CIPHER: Final[XChaCha20Cipher] = XChaCha20Cipher()


def encrypt(plaintext: bytes | bytearray, key: bytes | bytearray) -> Tuple[bytes, bytes]:
    """Encrypt with a fresh random nonce. Returns (ciphertext, nonce)."""
    return _CIPHER.encrypt(plaintext, key)


def decrypt(ciphertext: bytes, nonce: bytes, key: bytes | bytearray) -> bytes:
    """Decrypt and verify. Raises AuthenticationFailure on tag mismatch."""
    return _CIPHER.decrypt(ciphertext, nonce, key)


def wrap_key(key: bytes | bytearray, wrapping_key: bytes | bytearray) -> Tuple[bytes, bytes]:
    """Encrypt one key under another (envelope encryption)."""
    return _CIPHER.encrypt(key, wrapping_key)


def unwrap_key(
    wrapped: bytes,
    nonce: bytes,
    wrapping_key: bytes | bytearray,
) -> bytearray:
    """Recover a wrapped key into a wipeable buffer."""
    return bytearray(_CIPHER.decrypt(wrapped, nonce, wrapping_key))
