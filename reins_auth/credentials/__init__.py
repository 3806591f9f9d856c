"""
Credential storage for provider secrets.

Records are persisted in a single encrypted file; each record's secret is
encrypted again on its own.

Quick Start:
    from reins_auth.credentials import (
        CredentialQuery,
        CredentialRecordInput,
        CredentialType,
        EncryptedCredentialStore,
    )

    store = EncryptedCredentialStore.with_config()
    record = await store.set(CredentialRecordInput(
        provider="openai", type=CredentialType.API_KEY, payload={"key": "sk-..."},
    ))
    envelope = await store.get_envelope()  # checksum for the sync client
"""

from reins_auth.credentials.cipher import (
    DERIVATION_ITERATIONS,
    EncryptedPayload,
    SecretCipher,
    decrypt,
    derive_key,
    encrypt,
)
from reins_auth.credentials.models import (
    CredentialQuery,
    CredentialRecord,
    CredentialRecordInput,
    CredentialStoreState,
    CredentialType,
    SyncEnvelope,
    build_checksum,
)
from reins_auth.credentials.store import EncryptedCredentialStore

__all__ = [
    # Cipher
    "DERIVATION_ITERATIONS",
    "EncryptedPayload",
    "SecretCipher",
    "derive_key",
    "encrypt",
    "decrypt",
    # Models
    "CredentialType",
    "CredentialRecord",
    "CredentialRecordInput",
    "CredentialQuery",
    "CredentialStoreState",
    "SyncEnvelope",
    "build_checksum",
    # Store
    "EncryptedCredentialStore",
]
