"""Strategy contracts and helpers shared by the default implementations."""

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from reins_auth.credentials.models import CredentialRecord
from reins_auth.oauth.models import (
    AuthorizationResult,
    OAuthCallbackContext,
    OAuthInitiateContext,
    OAuthRefreshContext,
    OAuthTokens,
)
from reins_auth.registry import AuthMode

DEFAULT_ACCOUNT_ID = "default"


def credential_id_for(provider: str, mode: AuthMode) -> str:
    """Stable record id: one credential per provider and auth mode."""
    return f"auth_{provider}_{mode.value}"


def latest_record(records: Iterable[CredentialRecord]) -> CredentialRecord | None:
    """Most recently updated record, or None."""
    return max(records, key=lambda record: record.updated_at, default=None)


@runtime_checkable
class ApiKeyAuthStrategy(Protocol):
    """API-key behavior for a provider."""

    def validate(self, provider: str, key: str) -> str: ...

    async def store(
        self, provider: str, key: str, metadata: dict[str, str] | None = None
    ) -> CredentialRecord: ...

    async def retrieve(self, provider: str) -> str | None: ...

    async def revoke(self, provider: str) -> bool: ...


@runtime_checkable
class OAuthStrategy(Protocol):
    """OAuth behavior for a provider."""

    async def initiate(self, context: OAuthInitiateContext) -> AuthorizationResult: ...

    async def handle_callback(self, context: OAuthCallbackContext) -> OAuthTokens: ...

    async def refresh(self, context: OAuthRefreshContext) -> OAuthTokens: ...

    async def store_tokens(self, provider: str, tokens: OAuthTokens) -> CredentialRecord: ...

    async def retrieve_tokens(self, provider: str) -> OAuthTokens | None: ...

    async def revoke(self, provider: str) -> bool: ...
