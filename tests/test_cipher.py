"""
Tests for the secret cipher (PBKDF2 + AES-256-GCM).
"""

import base64
import json

import pytest

from reins_auth.credentials.cipher import (
    DERIVATION_ITERATIONS,
    EncryptedPayload,
    SecretCipher,
    decrypt,
    derive_key,
    encrypt,
)
from reins_auth.errors import AuthError, CredentialDecryptionError, CredentialEncryptionError


def _flip_bit(value: str, byte_index: int = 0, bit: int = 0) -> str:
    raw = bytearray(base64.b64decode(value))
    raw[byte_index] ^= 1 << bit
    return base64.b64encode(bytes(raw)).decode("ascii")


class TestKeyDerivation:
    def test_derives_256_bit_key(self):
        key = derive_key("secret", b"0123456789abcdef")
        assert len(key) == 32

    def test_same_inputs_same_key(self):
        salt = b"0123456789abcdef"
        assert derive_key("secret", salt) == derive_key("secret", salt)

    def test_different_salt_different_key(self):
        assert derive_key("secret", b"a" * 16) != derive_key("secret", b"b" * 16)

    def test_rejects_low_iteration_count(self):
        with pytest.raises(CredentialEncryptionError, match="at least"):
            derive_key("secret", b"a" * 16, iterations=DERIVATION_ITERATIONS - 1)


class TestEncryptDecrypt:
    def test_round_trip(self):
        payload = encrypt("hello world", "secret")
        assert decrypt(payload, "secret") == b"hello world"

    def test_round_trip_unicode_and_empty(self):
        for plaintext in ["", "ключ-🔑", "x" * 10_000]:
            assert decrypt(encrypt(plaintext, "s3cret"), "s3cret") == plaintext.encode("utf-8")

    def test_payload_shape(self):
        payload = encrypt("data", "secret")

        assert payload.v == 1
        assert len(base64.b64decode(payload.salt)) == 16
        assert len(base64.b64decode(payload.iv)) == 12
        # ciphertext carries the 16-byte GCM tag
        assert len(base64.b64decode(payload.ciphertext)) == len(b"data") + 16

    def test_fresh_salt_and_iv_per_call(self):
        first = encrypt("same", "secret")
        second = encrypt("same", "secret")

        assert first.salt != second.salt
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    def test_wrong_secret_fails(self):
        payload = encrypt("data", "secret-one")

        with pytest.raises(CredentialDecryptionError, match="wrong secret or tampered"):
            decrypt(payload, "secret-two")

    @pytest.mark.parametrize("byte_index,bit", [(0, 0), (3, 7), (-1, 4)])
    def test_ciphertext_bit_flip_fails(self, byte_index, bit):
        payload = encrypt("sensitive payload", "secret")
        tampered = payload.model_copy(
            update={"ciphertext": _flip_bit(payload.ciphertext, byte_index, bit)}
        )

        with pytest.raises(CredentialDecryptionError):
            decrypt(tampered, "secret")

    @pytest.mark.parametrize("byte_index", [0, 5, 11])
    def test_iv_bit_flip_fails(self, byte_index):
        payload = encrypt("sensitive payload", "secret")
        tampered = payload.model_copy(update={"iv": _flip_bit(payload.iv, byte_index)})

        with pytest.raises(CredentialDecryptionError):
            decrypt(tampered, "secret")

    def test_accepts_plain_dict(self):
        payload = encrypt("data", "secret").model_dump()
        assert decrypt(payload, "secret") == b"data"


class TestMalformedPayload:
    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"v": 2, "salt": "AA==", "iv": "AA==", "ciphertext": "AA=="},
            {"v": 1, "salt": "not base64!", "iv": "AA==", "ciphertext": "AA=="},
            {"v": 1, "salt": 123, "iv": "AA==", "ciphertext": "AA=="},
            {"v": "1", "salt": "AA==", "iv": "AA==", "ciphertext": "AA=="},
        ],
    )
    def test_malformed_shape_fails(self, payload):
        with pytest.raises(CredentialDecryptionError, match="malformed"):
            decrypt(payload, "secret")

    def test_wrong_iv_length_fails(self):
        payload = encrypt("data", "secret")
        short_iv = payload.model_copy(update={"iv": base64.b64encode(b"short").decode()})

        with pytest.raises(CredentialDecryptionError, match="malformed"):
            decrypt(short_iv, "secret")

    def test_errors_are_auth_errors_with_cause(self):
        payload = encrypt("data", "secret-one")

        with pytest.raises(AuthError) as exc_info:
            decrypt(payload, "secret-two")
        assert exc_info.value.cause is not None
        assert exc_info.value.__cause__ is exc_info.value.cause


class TestSecretCipher:
    def test_json_round_trip(self):
        cipher = SecretCipher("secret")
        value = {"key": "sk-test", "nested": {"n": 1, "list": [1, 2]}}

        assert cipher.decrypt_json(cipher.encrypt_json(value)) == value

    def test_json_is_canonical(self):
        cipher = SecretCipher("secret")
        plaintext = cipher.decrypt(cipher.encrypt_json({"b": 1, "a": 2}))
        assert plaintext == b'{"a":2,"b":1}'

    def test_non_serializable_value_fails(self):
        with pytest.raises(CredentialEncryptionError, match="not JSON serializable"):
            SecretCipher("secret").encrypt_json({"bad": object()})

    def test_non_json_plaintext_fails(self):
        cipher = SecretCipher("secret")
        with pytest.raises(CredentialDecryptionError, match="not valid JSON"):
            cipher.decrypt_json(cipher.encrypt("not json {"))

    def test_empty_secret_rejected(self):
        with pytest.raises(CredentialEncryptionError):
            SecretCipher("")

    def test_repr_hides_secret(self):
        assert "hunter2" not in repr(SecretCipher("hunter2"))

    def test_payload_serializes_to_versioned_json(self):
        payload = SecretCipher("secret").encrypt("x")
        data = json.loads(payload.model_dump_json())

        assert set(data) == {"v", "salt", "iv", "ciphertext"}
        assert EncryptedPayload.model_validate(data) == payload
