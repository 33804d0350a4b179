"""
Envelope Format
===============

The persisted and transmitted form of a vault.

Encryption Flow:
    passphrase
        ↓ Argon2id (salt_master, kdf_params)
    master key
        ↓ XChaCha20-Poly1305 (vault_key_nonce)
    enc_vault_key
    record model JSON
        ↓ XChaCha20-Poly1305 under vault key (nonce)
    ciphertext

Field names are a compatibility contract shared with every device and
with backup files. Envelopes written before ``vault_key_nonce`` existed
unwrap the vault key with the payload ``nonce``; new writes always carry
the dedicated field.

Envelopes are immutable: every mutation produces a new envelope with the
version incremented by exactly one.
"""

from __future__ import annotations

import binascii
import json
from base64 import b64decode, b64encode
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Final, Optional, Tuple

from vaultctl.core.crypto import (
    CIPHER_NAME,
    KDFParams,
    decrypt,
    derive_master_key,
    encrypt,
    generate_key,
    generate_salt,
    unwrap_key,
    wrap_key,
)
from vaultctl.core.errors import AuthenticationFailure, InvalidPassphrase, ParseFailure, ValidationError
from vaultctl.core.memory import ZeroizeContext, secure_zero
from vaultctl.vault.models import SCHEMA_VERSION, Vault

INITIAL_VERSION: Final[int] = 1


def _timestamp() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _b64(data: bytes) -> str:
    return b64encode(data).decode("ascii")


@dataclass(frozen=True, slots=True)
class Envelope:
    """
    Immutable container for an encrypted vault.

    Contains everything needed for decryption except the passphrase.
    This can be safely serialized, stored and transmitted.
    """

    schema_version: int
    vault_id: str
    salt_master: bytes
    kdf_params: KDFParams
    enc_vault_key: bytes
    vault_key_nonce: Optional[bytes]
    cipher: str
    ciphertext: bytes
    nonce: bytes
    modified_at: str
    version: int

    def __repr__(self) -> str:
        """Safe representation without key material."""
        return (
            f"Envelope(vault_id={self.vault_id!r}, version={self.version}, "
            f"ciphertext_len={len(self.ciphertext)})"
        )

    @property
    def is_legacy(self) -> bool:
        """True when the wrapped key shares the payload nonce."""
        return not self.vault_key_nonce

    @property
    def effective_vault_key_nonce(self) -> bytes:
        return self.vault_key_nonce or self.nonce

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "vault_id": self.vault_id,
            "salt_master": _b64(self.salt_master),
            "enc_vault_key": _b64(self.enc_vault_key),
            "vault_key_nonce": _b64(self.vault_key_nonce) if self.vault_key_nonce else "",
            "kdf_params": self.kdf_params.to_dict(),
            "cipher": self.cipher,
            "ciphertext": _b64(self.ciphertext),
            "nonce": _b64(self.nonce),
            "modified_at": self.modified_at,
            "version": self.version,
        }

    def to_json(self) -> bytes:
        """Serialize to the JSON wire/disk format."""
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> "Envelope":
        """
        Deserialize from JSON.

        Raises:
            ParseFailure: If data is malformed or fields are missing
        """
        try:
            raw = json.loads(data)
            if not isinstance(raw, dict):
                raise ParseFailure("Envelope must be a JSON object")

            key_nonce = raw.get("vault_key_nonce") or ""
            return cls(
                schema_version=int(raw.get("schema_version", SCHEMA_VERSION)),
                vault_id=str(raw["vault_id"]),
                salt_master=b64decode(raw["salt_master"], validate=True),
                kdf_params=KDFParams.from_dict(raw["kdf_params"]),
                enc_vault_key=b64decode(raw["enc_vault_key"], validate=True),
                vault_key_nonce=b64decode(key_nonce, validate=True) if key_nonce else None,
                cipher=str(raw.get("cipher") or CIPHER_NAME),
                ciphertext=b64decode(raw["ciphertext"], validate=True),
                nonce=b64decode(raw["nonce"], validate=True),
                modified_at=str(raw.get("modified_at") or ""),
                version=int(raw["version"]),
            )
        except (json.JSONDecodeError, UnicodeDecodeError, binascii.Error,
                KeyError, TypeError, ValueError) as e:
            raise ParseFailure(f"Malformed envelope: {e}") from e


def create_envelope(
    passphrase: bytes | bytearray,
    kdf_params: KDFParams = KDFParams(),
) -> Tuple[Envelope, Vault, bytearray]:
    """
    Build the first envelope for a new, empty vault.

    Returns:
        Tuple of (envelope at the initial version, empty vault, vault key)
    """
    salt = generate_salt()
    vault_key = generate_key()
    master_key = derive_master_key(passphrase, salt, kdf_params)

    try:
        with ZeroizeContext(master_key):
            enc_vault_key, vault_key_nonce = wrap_key(vault_key, master_key)

        vault = Vault.new()
        ciphertext, nonce = encrypt(vault.to_json(), vault_key)
    except Exception:
        secure_zero(vault_key)
        raise

    envelope = Envelope(
        schema_version=SCHEMA_VERSION,
        vault_id=vault.vault_id,
        salt_master=salt,
        kdf_params=kdf_params,
        enc_vault_key=enc_vault_key,
        vault_key_nonce=vault_key_nonce,
        cipher=CIPHER_NAME,
        ciphertext=ciphertext,
        nonce=nonce,
        modified_at=_timestamp(),
        version=INITIAL_VERSION,
    )
    return envelope, vault, vault_key


def _check_cipher(envelope: Envelope) -> None:
    if envelope.cipher != CIPHER_NAME:
        raise ValidationError(f"Unsupported cipher: {envelope.cipher}")


def unwrap_vault_key(envelope: Envelope, passphrase: bytes | bytearray) -> bytearray:
    """
    Re-derive the master key and unwrap the vault key.

    Raises:
        InvalidPassphrase: If the wrapped key fails authentication
    """
    _check_cipher(envelope)
    master_key = derive_master_key(passphrase, envelope.salt_master, envelope.kdf_params)
    with ZeroizeContext(master_key):
        try:
            return unwrap_key(
                envelope.enc_vault_key,
                envelope.effective_vault_key_nonce,
                master_key,
            )
        except AuthenticationFailure as e:
            raise InvalidPassphrase() from e


def decrypt_vault(envelope: Envelope, vault_key: bytes | bytearray) -> Vault:
    """
    Decrypt the record model with an already unwrapped vault key.

    Raises:
        AuthenticationFailure: If the payload fails authentication
        ParseFailure: If the decrypted payload is not a record model
    """
    _check_cipher(envelope)
    plaintext = bytearray(decrypt(envelope.ciphertext, envelope.nonce, vault_key))
    with ZeroizeContext(plaintext):
        return Vault.from_json(bytes(plaintext))


def open_envelope(
    envelope: Envelope,
    passphrase: bytes | bytearray,
) -> Tuple[Vault, bytearray]:
    """
    Unlock an envelope with a passphrase.

    Returns:
        Tuple of (decrypted vault, vault key)

    Raises:
        InvalidPassphrase: On authentication failure at either step
    """
    vault_key = unwrap_vault_key(envelope, passphrase)
    try:
        vault = decrypt_vault(envelope, vault_key)
    except AuthenticationFailure as e:
        secure_zero(vault_key)
        raise InvalidPassphrase() from e
    except Exception:
        secure_zero(vault_key)
        raise
    return vault, vault_key


def reseal(envelope: Envelope, vault: Vault, vault_key: bytes | bytearray) -> Envelope:
    """
    Re-encrypt a mutated vault under the existing vault key.

    The payload gets a fresh nonce; wrapped-key material is untouched.
    """
    plaintext = bytearray(vault.to_json())
    with ZeroizeContext(plaintext):
        ciphertext, nonce = encrypt(plaintext, vault_key)

    return replace(
        envelope,
        ciphertext=ciphertext,
        nonce=nonce,
        modified_at=_timestamp(),
        version=envelope.version + 1,
    )


def rewrap(
    envelope: Envelope,
    vault_key: bytes | bytearray,
    new_passphrase: bytes | bytearray,
    kdf_params: Optional[KDFParams] = None,
) -> Envelope:
    """
    Wrap the same vault key under a master key from a new passphrase.

    Entries are not re-encrypted; salt, wrapped key and its nonce are
    replaced and the version incremented.
    """
    params = kdf_params or envelope.kdf_params
    salt = generate_salt()
    master_key = derive_master_key(new_passphrase, salt, params)
    with ZeroizeContext(master_key):
        enc_vault_key, vault_key_nonce = wrap_key(vault_key, master_key)

    return replace(
        envelope,
        salt_master=salt,
        kdf_params=params,
        enc_vault_key=enc_vault_key,
        vault_key_nonce=vault_key_nonce,
        modified_at=_timestamp(),
        version=envelope.version + 1,
    )
