"""
Tests for encryption utilities.

Tests AES-256-GCM encryption/decryption for credential storage, HMAC
signatures, constant-time comparison and self-verifying API keys.
"""

import base64
from unittest.mock import patch

import pytest

from ledger_connect.platform.errors import ConfigurationError, DecryptionFailed, EmptyInput
from ledger_connect.utils.encryption import (
    NONCE_SIZE,
    TAG_SIZE,
    CipherBox,
    constant_time_equals,
    derive_key,
)


@pytest.fixture
def other_cipher() -> CipherBox:
    return CipherBox("a-different-master-secret", iterations=1000)


# ============================================================================
# KEY DERIVATION
# ============================================================================

class TestDeriveKey:
    """Tests for PBKDF2 key derivation."""

    def test_derives_32_byte_key(self):
        assert len(derive_key("secret", iterations=1000)) == 32

    def test_same_secret_same_key(self):
        assert derive_key("secret", 1000) == derive_key("secret", 1000)

    def test_different_secret_different_key(self):
        assert derive_key("secret-a", 1000) != derive_key("secret-b", 1000)

    def test_empty_secret_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            CipherBox("")
        assert exc_info.value.code == "SYSTEM_CONFIG_MISSING"

    def test_repr_hides_key(self, cipher):
        assert "REDACTED" in repr(cipher)


# ============================================================================
# ENCRYPT / DECRYPT
# ============================================================================

class TestEncryptDecrypt:
    """Tests for AES-256-GCM encryption."""

    def test_round_trip(self, cipher):
        token = cipher.encrypt("access-token-value")
        assert cipher.decrypt(token) == "access-token-value"

    def test_round_trip_unicode(self, cipher):
        assert cipher.decrypt(cipher.encrypt("clé-секрет-🔑")) == "clé-секрет-🔑"

    def test_ciphertext_differs_each_call(self, cipher):
        """Fresh nonce per encryption."""
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_serialized_layout(self, cipher):
        raw = base64.b64decode(cipher.encrypt("abc"))
        assert len(raw) == NONCE_SIZE + TAG_SIZE + len("abc")

    def test_plaintext_not_in_output(self, cipher):
        assert "super-secret" not in cipher.encrypt("super-secret")

    def test_encrypt_empty_raises(self, cipher):
        with pytest.raises(EmptyInput):
            cipher.encrypt("")

    def test_decrypt_empty_raises(self, cipher):
        with pytest.raises(EmptyInput):
            cipher.decrypt("")

    def test_wrong_key_fails(self, cipher, other_cipher):
        token = cipher.encrypt("value")
        with pytest.raises(DecryptionFailed):
            other_cipher.decrypt(token)

    def test_tampered_ciphertext_fails(self, cipher):
        raw = bytearray(base64.b64decode(cipher.encrypt("value")))
        raw[-1] ^= 0x01
        with pytest.raises(DecryptionFailed):
            cipher.decrypt(base64.b64encode(bytes(raw)).decode())

    def test_tampered_tag_fails(self, cipher):
        raw = bytearray(base64.b64decode(cipher.encrypt("value")))
        raw[NONCE_SIZE] ^= 0x01
        with pytest.raises(DecryptionFailed):
            cipher.decrypt(base64.b64encode(bytes(raw)).decode())

    def test_invalid_base64_fails(self, cipher):
        with pytest.raises(DecryptionFailed):
            cipher.decrypt("not base64 at all!!")

    def test_short_payload_fails(self, cipher):
        with pytest.raises(DecryptionFailed):
            cipher.decrypt(base64.b64encode(b"short").decode())

    def test_object_round_trip(self, cipher):
        data = {"realm_id": "123", "scopes": ["a", "b"]}
        assert cipher.decrypt_object(cipher.encrypt_object(data)) == data

    def test_object_non_json_fails(self, cipher):
        with pytest.raises(DecryptionFailed):
            cipher.decrypt_object(cipher.encrypt("plain text"))


# ============================================================================
# SIGNATURES
# ============================================================================

class TestSignatures:
    """Tests for HMAC-SHA256 signing and verification."""

    def test_sign_is_hex_sha256(self, cipher):
        signature = cipher.sign(b"payload", secret="s")
        assert len(signature) == 64
        int(signature, 16)

    def test_verify_matching_signature(self, cipher):
        signature = cipher.sign(b"payload", secret="s")
        assert cipher.verify_signature(b"payload", signature, secret="s") is True

    def test_verify_rejects_other_secret(self, cipher):
        signature = cipher.sign(b"payload", secret="s")
        assert cipher.verify_signature(b"payload", signature, secret="t") is False

    def test_verify_rejects_modified_body(self, cipher):
        signature = cipher.sign(b"payload", secret="s")
        assert cipher.verify_signature(b"payload!", signature, secret="s") is False

    def test_verify_rejects_empty_signature(self, cipher):
        assert cipher.verify_signature(b"payload", "", secret="s") is False

    def test_default_key_is_derived_key(self, cipher, other_cipher):
        assert cipher.sign("data") != other_cipher.sign("data")
        assert cipher.verify_signature("data", cipher.sign("data")) is True

    def test_str_and_bytes_sign_identically(self, cipher):
        assert cipher.sign("payload", secret="s") == cipher.sign(b"payload", secret="s")


class TestConstantTimeEquals:
    """Tests for constant-time comparison."""

    def test_equal_values(self):
        assert constant_time_equals("abc", "abc") is True

    def test_unequal_values(self):
        assert constant_time_equals("abc", "abd") is False

    def test_length_mismatch_short_circuits(self):
        with patch("ledger_connect.utils.encryption.hmac.compare_digest") as compare:
            assert constant_time_equals("abc", "abcd") is False
        compare.assert_not_called()

    def test_equal_length_uses_compare_digest(self):
        with patch(
            "ledger_connect.utils.encryption.hmac.compare_digest", return_value=False
        ) as compare:
            constant_time_equals("abc", "abd")
        compare.assert_called_once_with(b"abc", b"abd")


# ============================================================================
# TOKENS, HASHES AND API KEYS
# ============================================================================

class TestTokensAndApiKeys:
    """Tests for random tokens, hashing and API keys."""

    def test_random_token_length(self):
        assert len(CipherBox.random_token(16)) == 32

    def test_random_tokens_unique(self):
        assert CipherBox.random_token() != CipherBox.random_token()

    def test_hash_is_stable(self):
        assert CipherBox.hash("value") == CipherBox.hash(b"value")
        assert len(CipherBox.hash("value")) == 64

    def test_api_key_format(self, cipher):
        key = cipher.generate_api_key()
        assert key.startswith("ttya_")
        assert "." in key
        assert "=" not in key

    def test_api_key_verifies(self, cipher):
        assert cipher.verify_api_key(cipher.generate_api_key()) is True

    def test_api_key_custom_prefix(self, cipher):
        key = cipher.generate_api_key(prefix="test")
        assert key.startswith("test_")
        assert cipher.verify_api_key(key) is True

    def test_api_key_from_other_cipher_rejected(self, cipher, other_cipher):
        assert cipher.verify_api_key(other_cipher.generate_api_key()) is False

    def test_tampered_api_key_rejected(self, cipher):
        key = cipher.generate_api_key()
        random_part, _, signature = key.rpartition(".")
        tampered = random_part[:-1] + ("A" if random_part[-1] != "A" else "B")
        assert cipher.verify_api_key(f"{tampered}.{signature}") is False

    @pytest.mark.parametrize("key", ["", "ttya", "ttya_abc", "nounderscore.sig", "ttya_.sig", "ttya_abc."])
    def test_malformed_api_keys_rejected(self, cipher, key):
        assert cipher.verify_api_key(key) is False
