"""
Repository-backed API key strategy.

Keys are trimmed, checked against an optional per-provider format rule, and
stored as ``{"key": ...}`` under the record id ``auth_<provider>_api_key``.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass

from pydantic import BaseModel, ValidationError

from reins_auth.credentials.models import (
    CredentialQuery,
    CredentialRecord,
    CredentialRecordInput,
    CredentialType,
    normalize_identifier,
)
from reins_auth.credentials.store import EncryptedCredentialStore
from reins_auth.errors import CredentialDecryptionError, CredentialValidationError
from reins_auth.registry import REINS_GATEWAY_PROVIDER_ID, AuthMode
from reins_auth.strategies.base import DEFAULT_ACCOUNT_ID, credential_id_for, latest_record


@dataclass(frozen=True)
class KeyFormatRule:
    """A provider's accepted key shape."""

    pattern: re.Pattern[str]
    message: str

    def check(self, key: str) -> bool:
        return self.pattern.fullmatch(key) is not None


DEFAULT_KEY_RULES: dict[str, KeyFormatRule] = {
    REINS_GATEWAY_PROVIDER_ID: KeyFormatRule(
        pattern=re.compile(r"rk_(live|test)_[a-zA-Z0-9]+"),
        message="Reins Gateway key must use rk_live_* or rk_test_* format",
    ),
}


class ApiKeyPayload(BaseModel):
    key: str


def normalize_metadata(metadata: Mapping[str, str] | None) -> dict[str, str] | None:
    """Trim keys and values, drop blank entries; None when nothing remains."""
    if not metadata:
        return None
    entries = {
        key.strip(): value.strip()
        for key, value in metadata.items()
        if key.strip() and value.strip()
    }
    return entries or None


async def read_api_key(store: EncryptedCredentialStore, record: CredentialRecord) -> str:
    """Decrypt and validate an ``api_key`` record."""
    raw = await store.decrypt_payload(record)
    try:
        return ApiKeyPayload.model_validate(raw).key
    except ValidationError as e:
        raise CredentialDecryptionError(
            f"Stored API key for provider {record.provider} is invalid", e
        ) from e


class StoreApiKeyStrategy:
    """Default ``ApiKeyAuthStrategy`` persisting keys in the credential store."""

    def __init__(
        self,
        store: EncryptedCredentialStore,
        rules: Mapping[str, KeyFormatRule] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._store = store
        self._rules = dict(DEFAULT_KEY_RULES if rules is None else rules)
        self._logger = logger or logging.getLogger(__name__)

    def validate(self, provider: str, key: str) -> str:
        """Return the canonical key or raise ``CredentialValidationError``."""
        provider = normalize_identifier(provider)
        trimmed = key.strip()
        if not trimmed:
            raise CredentialValidationError(f"API key is required for provider {provider}")

        rule = self._rules.get(provider)
        if rule is not None and not rule.check(trimmed):
            raise CredentialValidationError(rule.message)
        return trimmed

    async def store(
        self,
        provider: str,
        key: str,
        metadata: dict[str, str] | None = None,
    ) -> CredentialRecord:
        provider = normalize_identifier(provider)
        canonical = self.validate(provider, key)
        return await self._store.set(
            CredentialRecordInput(
                id=credential_id_for(provider, AuthMode.API_KEY),
                provider=provider,
                type=CredentialType.API_KEY,
                account_id=DEFAULT_ACCOUNT_ID,
                metadata=normalize_metadata(metadata),
                payload=ApiKeyPayload(key=canonical).model_dump(),
            )
        )

    async def retrieve(self, provider: str) -> str | None:
        """Decrypted key of the most recent active record, or None."""
        provider = normalize_identifier(provider)
        record = latest_record(
            await self._store.list(CredentialQuery(provider=provider, type=CredentialType.API_KEY))
        )
        if record is None:
            return None
        return await read_api_key(self._store, record)

    async def revoke(self, provider: str) -> bool:
        """Revoke every active API key record for ``provider``."""
        provider = normalize_identifier(provider)
        records = await self._store.list(
            CredentialQuery(provider=provider, type=CredentialType.API_KEY)
        )
        revoked = False
        for record in records:
            revoked = await self._store.revoke(record.id) or revoked
        if revoked:
            self._logger.info(
                f"Revoked API key for provider {provider}",
                extra={"event": "api_key_revoked", "provider": provider},
            )
        return revoked
