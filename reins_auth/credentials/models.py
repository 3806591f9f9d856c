"""
Credential record models.

These are the shapes persisted (encrypted) by ``EncryptedCredentialStore``.
Decrypted store JSON is validated through these models before use, so a
truncated or hand-edited file surfaces as an error instead of half-loaded
state.
"""

from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from reins_auth.credentials.cipher import EncryptedPayload

STATE_VERSION = 1


def normalize_identifier(value: str) -> str:
    """Trim and lowercase a provider or account identifier."""
    return value.strip().lower()


def utc_now() -> datetime:
    return datetime.now(UTC)


class CredentialType(StrEnum):
    """Kind of secret a record holds."""

    API_KEY = "api_key"
    OAUTH = "oauth"
    TOKEN = "token"


class SyncEnvelope(BaseModel):
    """Consistency metadata consumed by the sync client."""

    model_config = ConfigDict(frozen=True)

    version: int = STATE_VERSION
    checksum: str
    updated_at: datetime
    synced_at: datetime | None = None


class CredentialRecord(BaseModel):
    """A single stored credential. The secret lives only in ``encrypted_payload``."""

    id: str
    provider: str
    type: CredentialType
    account_id: str | None = None
    metadata: dict[str, str] | None = None
    encrypted_payload: EncryptedPayload
    created_at: datetime
    updated_at: datetime
    revoked_at: datetime | None = None
    sync: SyncEnvelope

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return normalize_identifier(value)

    @field_validator("account_id")
    @classmethod
    def _normalize_account(cls, value: str | None) -> str | None:
        return normalize_identifier(value) if value is not None else None

    @field_validator("metadata")
    @classmethod
    def _sort_metadata(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        if value is None:
            return None
        return dict(sorted(value.items()))

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def canonical_shape(self) -> dict[str, Any]:
        """Checksum input: every field except the volatile sync envelope."""
        return self.model_dump(mode="json", exclude={"sync"})


class CredentialStoreState(BaseModel):
    """Plaintext of the store file."""

    version: int = STATE_VERSION
    records: dict[str, CredentialRecord] = Field(default_factory=dict)
    envelope: SyncEnvelope

    @model_validator(mode="after")
    def _check_record_ids(self) -> CredentialStoreState:
        for key, record in self.records.items():
            if key != record.id:
                raise ValueError(f"Credential record identifier mismatch: {key!r} != {record.id!r}")
        return self


def build_checksum(records: dict[str, CredentialRecord]) -> str:
    """SHA-256 over the id-sorted canonical record shapes."""
    canonical = [records[record_id].canonical_shape() for record_id in sorted(records)]
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class CredentialRecordInput(BaseModel):
    """Arguments to ``EncryptedCredentialStore.set``."""

    provider: str
    type: CredentialType
    payload: Any
    id: str | None = None
    account_id: str | None = None
    metadata: dict[str, str] | None = None


class CredentialQuery(BaseModel):
    """Filter for ``get``/``list``. Unset fields match everything."""

    id: str | None = None
    provider: str | None = None
    type: CredentialType | None = None
    account_id: str | None = None
    include_revoked: bool = False

    def matches(self, record: CredentialRecord) -> bool:
        if self.id and record.id != self.id:
            return False
        if self.provider and record.provider != normalize_identifier(self.provider):
            return False
        if self.type and record.type != self.type:
            return False
        if self.account_id and record.account_id != normalize_identifier(self.account_id):
            return False
        if not self.include_revoked and record.is_revoked:
            return False
        return True
