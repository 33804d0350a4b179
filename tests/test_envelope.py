# Tests for the envelope format
#
# Coverage:
#   - Creation, passphrase unlock, wrong passphrase
#   - Reseal / rewrap version and nonce behaviour
#   - Legacy envelopes without a dedicated key-wrap nonce
#   - JSON field names and parse failures

import json
from dataclasses import replace

import pytest

from vaultctl.core.crypto import derive_master_key
from vaultctl.core.errors import InvalidPassphrase, ParseFailure, ValidationError
from vaultctl.vault.envelope import (
    INITIAL_VERSION,
    Envelope,
    create_envelope,
    open_envelope,
    reseal,
    rewrap,
)


@pytest.fixture
def created(fast_kdf):
    return create_envelope(b"passphrase", fast_kdf)


class TestLifecycle:

    def test_create_and_open(self, created):
        envelope, vault, vault_key = created
        assert envelope.version == INITIAL_VERSION
        assert envelope.vault_id == vault.vault_id
        assert envelope.cipher == "xchacha20poly1305"
        assert not envelope.is_legacy

        opened, key = open_envelope(envelope, b"passphrase")
        assert opened.vault_id == vault.vault_id
        assert key == vault_key

    def test_wrong_passphrase(self, created):
        envelope, _, _ = created
        with pytest.raises(InvalidPassphrase):
            open_envelope(envelope, b"wrong")

    def test_reseal_bumps_version_and_nonce(self, created):
        envelope, vault, vault_key = created
        vault.add_entry("github", password=b"s3cret")
        updated = reseal(envelope, vault, vault_key)

        assert updated.version == envelope.version + 1
        assert updated.nonce != envelope.nonce
        assert updated.enc_vault_key == envelope.enc_vault_key
        assert updated.salt_master == envelope.salt_master

        opened, _ = open_envelope(updated, b"passphrase")
        assert opened.get_entry("github").password == b"s3cret"

    def test_rewrap_changes_passphrase(self, created):
        envelope, _, vault_key = created
        rotated = rewrap(envelope, vault_key, b"new passphrase")

        assert rotated.version == envelope.version + 1
        assert rotated.salt_master != envelope.salt_master
        assert rotated.ciphertext == envelope.ciphertext
        with pytest.raises(InvalidPassphrase):
            open_envelope(rotated, b"passphrase")
        _, key = open_envelope(rotated, b"new passphrase")
        assert key == vault_key

    def test_unsupported_cipher(self, created):
        envelope, _, _ = created
        with pytest.raises(ValidationError):
            open_envelope(replace(envelope, cipher="aes-256-gcm"), b"passphrase")

    def test_unknown_kdf_algorithm(self, created):
        envelope, _, _ = created
        params = replace(envelope.kdf_params, algo="pbkdf2")
        with pytest.raises(ValidationError):
            open_envelope(replace(envelope, kdf_params=params), b"passphrase")


class TestLegacyNonce:

    def _legacy(self, envelope, vault_key, fast_kdf):
        """Rebuild the wrapped key the old way: under the payload nonce."""
        from nacl.bindings import crypto_aead_xchacha20poly1305_ietf_encrypt

        master_key = derive_master_key(b"passphrase", envelope.salt_master, fast_kdf)
        enc_vault_key = crypto_aead_xchacha20poly1305_ietf_encrypt(
            bytes(vault_key), None, envelope.nonce, bytes(master_key)
        )
        return replace(envelope, enc_vault_key=enc_vault_key, vault_key_nonce=None)

    def test_legacy_envelope_opens(self, created, fast_kdf):
        envelope, vault, vault_key = created
        legacy = self._legacy(envelope, vault_key, fast_kdf)
        assert legacy.is_legacy

        opened, _ = open_envelope(legacy, b"passphrase")
        assert opened.vault_id == vault.vault_id

    def test_legacy_survives_serialization(self, created, fast_kdf):
        envelope, _, vault_key = created
        legacy = self._legacy(envelope, vault_key, fast_kdf)
        raw = json.loads(legacy.to_json())
        assert raw["vault_key_nonce"] == ""

        del raw["vault_key_nonce"]
        parsed = Envelope.from_json(json.dumps(raw))
        assert parsed.vault_key_nonce is None
        open_envelope(parsed, b"passphrase")

    def test_writes_populate_dedicated_nonce(self, created, fast_kdf):
        envelope, vault, vault_key = created
        legacy = self._legacy(envelope, vault_key, fast_kdf)
        rotated = rewrap(legacy, vault_key, b"passphrase")
        assert rotated.vault_key_nonce is not None
        assert rotated.vault_key_nonce != rotated.nonce


class TestSerialization:

    def test_field_names(self, created):
        envelope, _, _ = created
        raw = json.loads(envelope.to_json())
        assert set(raw) == {
            "schema_version", "vault_id", "salt_master", "enc_vault_key",
            "vault_key_nonce", "kdf_params", "cipher", "ciphertext", "nonce",
            "modified_at", "version",
        }
        assert raw["kdf_params"]["algo"] == "argon2id"
        assert raw["modified_at"].endswith("Z")

    def test_parse_round_trip(self, created):
        envelope, _, _ = created
        assert Envelope.from_json(envelope.to_json()) == envelope

    def test_repr_hides_key_material(self, created):
        envelope, _, _ = created
        assert "enc_vault_key" not in repr(envelope)

    @pytest.mark.parametrize("data", [
        b"not json",
        b"[]",
        b'{"vault_id": "x"}',
    ])
    def test_malformed(self, data):
        with pytest.raises(ParseFailure):
            Envelope.from_json(data)

    def test_bad_base64(self, created):
        envelope, _, _ = created
        raw = json.loads(envelope.to_json())
        raw["ciphertext"] = "***"
        with pytest.raises(ParseFailure):
            Envelope.from_json(json.dumps(raw))

    def test_tampered_ciphertext_rejected(self, created):
        envelope, _, _ = created
        flipped = bytes([envelope.ciphertext[0] ^ 0x01]) + envelope.ciphertext[1:]
        with pytest.raises(InvalidPassphrase):
            open_envelope(replace(envelope, ciphertext=flipped), b"passphrase")
