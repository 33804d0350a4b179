"""
Key Derivation Functions
========================

Password-based derivation of the master key, and random key material.

Implements:
    - Argon2id for memory-hard password hashing
    - HKDF for purpose-bound subkeys
    - Secure random salts and symmetric keys
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Final, Mapping

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from vaultctl.core.errors import ValidationError
from vaultctl.core.memory.zeroization import secure_zero, to_private_buffer

KDF_ALGORITHM: Final[str] = "argon2id"

# Argon2id parameters
ARGON2_MEMORY_COST: Final[int] = 64 * 1024  # 64 MB in KiB
ARGON2_TIME_COST: Final[int] = 3
ARGON2_PARALLELISM: Final[int] = 1

SALT_SIZE: Final[int] = 32
MASTER_KEY_SIZE: Final[int] = 32
VAULT_KEY_SIZE: Final[int] = 32


@dataclass(frozen=True, slots=True)
class KDFParams:
    """
    Argon2id parameters stored alongside the salt in every envelope.

    Attributes:
        algo: Algorithm tag (only "argon2id" is accepted)
        memory: Memory cost in KiB
        iterations: Number of passes
        parallelism: Degree of parallelism
    """

    algo: str = KDF_ALGORITHM
    memory: int = ARGON2_MEMORY_COST
    iterations: int = ARGON2_TIME_COST
    parallelism: int = ARGON2_PARALLELISM

    def validate(self) -> None:
        """
        Check the parameters are usable.

        Raises:
            ValidationError: On unknown algorithm or out-of-range costs
        """
        if self.algo != KDF_ALGORITHM:
            raise ValidationError(f"Unsupported KDF algorithm: {self.algo}")
        if self.iterations < 1:
            raise ValidationError("KDF iterations must be at least 1")
        if self.parallelism < 1:
            raise ValidationError("KDF parallelism must be at least 1")
        if self.memory < 8 * self.parallelism:
            raise ValidationError("KDF memory must be at least 8 KiB per lane")

    def to_dict(self) -> dict[str, Any]:
        return {
            "algo": self.algo,
            "memory": self.memory,
            "iterations": self.iterations,
            "parallelism": self.parallelism,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "KDFParams":
        return cls(
            algo=str(data["algo"]),
            memory=int(data["memory"]),
            iterations=int(data["iterations"]),
            parallelism=int(data["parallelism"]),
        )


def derive_master_key(
    passphrase: bytes | bytearray,
    salt: bytes,
    params: KDFParams = KDFParams(),
) -> bytearray:
    """
    Derive the master key from a passphrase using Argon2id.

    Args:
        passphrase: Raw passphrase bytes (caller keeps ownership)
        salt: Random salt from the envelope
        params: Argon2id cost parameters

    Returns:
        32-byte master key in a wipeable buffer

    Security:
        - The private passphrase copy is zeroized on every exit path
    """
    params.validate()
    secret = to_private_buffer(passphrase)
    try:
        derived = hash_secret_raw(
            secret=bytes(secret),
            salt=salt,
            time_cost=params.iterations,
            memory_cost=params.memory,
            parallelism=params.parallelism,
            hash_len=MASTER_KEY_SIZE,
            type=Type.ID,
        )
    except HashingError as e:
        raise ValidationError(f"Key derivation failed: {e}") from e
    finally:
        secure_zero(secret)

    return bytearray(derived)


def generate_salt() -> bytes:
    """Generate a random 32-byte KDF salt."""
    return secrets.token_bytes(SALT_SIZE)


def generate_key() -> bytearray:
    """Generate a random 32-byte symmetric key in a wipeable buffer."""
    return bytearray(secrets.token_bytes(VAULT_KEY_SIZE))


def expand_key(
    key_material: bytes | bytearray,
    length: int = 32,
    info: bytes = b"",
    salt: bytes | None = None,
) -> bytearray:
    """
    Derive a purpose-bound subkey from high-entropy key material using HKDF.

    Args:
        key_material: Input key material (e.g. a device secret)
        length: Output length
        info: Context/application info binding the subkey to one use
        salt: Optional salt

    Returns:
        Derived key in a wipeable buffer
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info,
    )
    return bytearray(hkdf.derive(bytes(key_material)))
