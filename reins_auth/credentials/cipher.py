"""
Secret Cipher - authenticated encryption for credential payloads.

AES-256-GCM with a key derived from a user secret by PBKDF2-HMAC-SHA256.
Each call to ``encrypt`` draws a fresh salt and iv, so the same plaintext
never produces the same payload twice.

Payload format (all fields base64):

    {"v": 1, "salt": "...", "iv": "...", "ciphertext": "..."}

The GCM tag is appended to the ciphertext. Any modification of ``iv`` or
``ciphertext`` makes ``decrypt`` raise ``CredentialDecryptionError``; a
corrupted plaintext is never returned.

Usage:
    cipher = SecretCipher("my-secret")
    payload = cipher.encrypt_json({"key": "sk-..."})
    data = cipher.decrypt_json(payload)
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from typing import Any, Literal

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, ConfigDict, ValidationError

from reins_auth.errors import CredentialDecryptionError, CredentialEncryptionError

PAYLOAD_VERSION = 1
DERIVATION_ITERATIONS = 100_000
SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32


class EncryptedPayload(BaseModel):
    """Versioned AES-GCM payload. All binary fields are standard base64."""

    model_config = ConfigDict(frozen=True, strict=True)

    v: Literal[1] = PAYLOAD_VERSION
    salt: str
    iv: str
    ciphertext: str


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def derive_key(secret: str, salt: bytes, iterations: int = DERIVATION_ITERATIONS) -> bytes:
    """Derive a 256-bit AES key from ``secret`` and ``salt``."""
    if iterations < DERIVATION_ITERATIONS:
        raise CredentialEncryptionError(
            f"PBKDF2 iteration count must be at least {DERIVATION_ITERATIONS}"
        )
    try:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(secret.encode("utf-8"))
    except (TypeError, ValueError) as e:
        raise CredentialEncryptionError("Unable to derive credential encryption key", e) from e


def encrypt(
    plaintext: str | bytes,
    secret: str,
    iterations: int = DERIVATION_ITERATIONS,
) -> EncryptedPayload:
    """Encrypt ``plaintext`` under ``secret``. Strings are encoded as UTF-8."""
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    key = derive_key(secret, salt, iterations)
    try:
        ciphertext = AESGCM(key).encrypt(iv, data, None)
    except (TypeError, ValueError, OverflowError) as e:
        raise CredentialEncryptionError("Unable to encrypt credential payload", e) from e

    return EncryptedPayload(
        v=PAYLOAD_VERSION,
        salt=_b64encode(salt),
        iv=_b64encode(iv),
        ciphertext=_b64encode(ciphertext),
    )


def decrypt(
    payload: EncryptedPayload | dict[str, Any],
    secret: str,
    iterations: int = DERIVATION_ITERATIONS,
) -> bytes:
    """
    Decrypt and authenticate ``payload``.

    Raises:
        CredentialDecryptionError: wrong secret, tampered iv/ciphertext,
            or a payload that does not match the versioned shape.
    """
    try:
        if not isinstance(payload, EncryptedPayload):
            payload = EncryptedPayload.model_validate(payload)
        salt = _b64decode(payload.salt)
        iv = _b64decode(payload.iv)
        ciphertext = _b64decode(payload.ciphertext)
    except (ValidationError, binascii.Error, ValueError) as e:
        raise CredentialDecryptionError("Encrypted payload is malformed", e) from e

    if len(salt) == 0 or len(iv) != IV_BYTES:
        raise CredentialDecryptionError("Encrypted payload is malformed")

    key = derive_key(secret, salt, iterations)
    try:
        return AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise CredentialDecryptionError(
            "Unable to decrypt credential payload (wrong secret or tampered data)", e
        ) from e
    except ValueError as e:
        raise CredentialDecryptionError("Unable to decrypt credential payload", e) from e


class SecretCipher:
    """Binds a secret and iteration count; adds JSON helpers."""

    def __init__(self, secret: str, iterations: int = DERIVATION_ITERATIONS):
        if not secret:
            raise CredentialEncryptionError("Encryption secret must not be empty")
        self._secret = secret
        self._iterations = iterations

    def __repr__(self) -> str:
        return f"SecretCipher(iterations={self._iterations})"

    def encrypt(self, plaintext: str | bytes) -> EncryptedPayload:
        return encrypt(plaintext, self._secret, self._iterations)

    def decrypt(self, payload: EncryptedPayload | dict[str, Any]) -> bytes:
        return decrypt(payload, self._secret, self._iterations)

    def encrypt_json(self, value: Any) -> EncryptedPayload:
        """Serialize ``value`` as JSON and encrypt it."""
        try:
            text = json.dumps(value, sort_keys=True, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise CredentialEncryptionError("Credential payload is not JSON serializable", e) from e
        return self.encrypt(text)

    def decrypt_json(self, payload: EncryptedPayload | dict[str, Any]) -> Any:
        """Decrypt ``payload`` and parse the plaintext as JSON."""
        plaintext = self.decrypt(payload)
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CredentialDecryptionError("Decrypted credential payload is not valid JSON", e) from e
