"""
Repository-backed OAuth strategy.

Network exchanges go through a per-provider ``OAuthFlowHandler``; tokens are
persisted as the payload of the ``auth_<provider>_oauth`` record.
"""

import logging
import uuid
from collections.abc import Mapping

from pydantic import ValidationError

from reins_auth.credentials.models import (
    CredentialQuery,
    CredentialRecord,
    CredentialRecordInput,
    CredentialType,
    normalize_identifier,
)
from reins_auth.credentials.store import EncryptedCredentialStore
from reins_auth.errors import (
    CredentialDecryptionError,
    CredentialRefreshError,
    CredentialValidationError,
    OAuthProtocolError,
)
from reins_auth.oauth.flow import OAuthFlowHandler
from reins_auth.oauth.models import (
    AuthorizationCodeResult,
    OAuthCallbackContext,
    OAuthInitiateContext,
    OAuthRefreshContext,
    OAuthTokens,
)
from reins_auth.registry import AuthMode
from reins_auth.strategies.base import DEFAULT_ACCOUNT_ID, credential_id_for, latest_record


async def read_tokens(store: EncryptedCredentialStore, record: CredentialRecord) -> OAuthTokens:
    """Decrypt and validate an ``oauth`` record."""
    raw = await store.decrypt_payload(record)
    try:
        return OAuthTokens.model_validate(raw)
    except ValidationError as e:
        raise CredentialDecryptionError(
            f"Stored OAuth tokens for provider {record.provider} are invalid", e
        ) from e


class StoreOAuthStrategy:
    """Default ``OAuthStrategy`` for providers with a standard token endpoint."""

    def __init__(
        self,
        store: EncryptedCredentialStore,
        flows: Mapping[str, OAuthFlowHandler] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._store = store
        self._flows = {normalize_identifier(name): flow for name, flow in (flows or {}).items()}
        self._logger = logger or logging.getLogger(__name__)

    def register_flow(self, provider: str, flow: OAuthFlowHandler) -> None:
        self._flows[normalize_identifier(provider)] = flow

    def _flow_for(self, provider: str) -> OAuthFlowHandler:
        flow = self._flows.get(provider)
        if flow is None:
            raise OAuthProtocolError(f"No OAuth client is configured for provider {provider}")
        return flow

    async def initiate(self, context: OAuthInitiateContext) -> AuthorizationCodeResult:
        provider = normalize_identifier(context.provider)
        flow = self._flow_for(provider)

        state = context.state or uuid.uuid4().hex
        code_verifier = None
        code_challenge = None
        if flow.config.use_pkce:
            if context.code_verifier:
                code_verifier = context.code_verifier
                code_challenge = flow.compute_pkce_challenge(code_verifier)
            else:
                pkce = flow.generate_pkce_pair()
                code_verifier, code_challenge = pkce.verifier, pkce.challenge

        authorization_url = flow.get_authorization_url(
            state,
            code_challenge=code_challenge,
            redirect_uri=context.redirect_uri,
        )
        return AuthorizationCodeResult(
            authorization_url=authorization_url,
            state=state,
            code_verifier=code_verifier,
        )

    async def handle_callback(self, context: OAuthCallbackContext) -> OAuthTokens:
        """Exchange the authorization code and persist the tokens."""
        provider = normalize_identifier(context.provider)
        code = context.code.strip()
        if not code:
            raise CredentialValidationError(f"OAuth callback code is required for provider {provider}")

        flow = self._flow_for(provider)
        try:
            tokens = await flow.exchange_code(
                code,
                code_verifier=context.code_verifier,
                redirect_uri=context.redirect_uri,
                state=context.state,
            )
        except OAuthProtocolError as e:
            raise OAuthProtocolError(
                f"OAuth callback failed for provider {provider} against {flow.config.token_url}. "
                "Complete sign-in again and retry token exchange.",
                e,
            ) from e

        await self.store_tokens(provider, tokens)
        return tokens

    async def refresh(self, context: OAuthRefreshContext) -> OAuthTokens:
        """Exchange a refresh token and persist the new tokens."""
        provider = normalize_identifier(context.provider)
        refresh_token = context.refresh_token.strip()
        if not refresh_token:
            raise CredentialRefreshError(f"Refresh token is required for provider {provider}")

        flow = self._flow_for(provider)
        try:
            tokens = await flow.refresh_tokens(refresh_token, scope=context.scope)
        except OAuthProtocolError as e:
            raise CredentialRefreshError(
                f"OAuth refresh failed for provider {provider} against {flow.config.token_url}. "
                "Re-authenticate to continue using this provider.",
                e,
            ) from e

        await self.store_tokens(provider, tokens)
        self._logger.info(
            f"Refreshed OAuth tokens for provider {provider}",
            extra={"event": "oauth_tokens_refreshed", "provider": provider},
        )
        return tokens

    async def store_tokens(self, provider: str, tokens: OAuthTokens) -> CredentialRecord:
        provider = normalize_identifier(provider)
        return await self._store.set(
            CredentialRecordInput(
                id=credential_id_for(provider, AuthMode.OAUTH),
                provider=provider,
                type=CredentialType.OAUTH,
                account_id=DEFAULT_ACCOUNT_ID,
                payload=tokens.model_dump(mode="json"),
            )
        )

    async def retrieve_tokens(self, provider: str) -> OAuthTokens | None:
        """Tokens of the most recent active OAuth record, or None."""
        provider = normalize_identifier(provider)
        record = latest_record(
            await self._store.list(CredentialQuery(provider=provider, type=CredentialType.OAUTH))
        )
        if record is None:
            return None
        return await read_tokens(self._store, record)

    async def revoke(self, provider: str) -> bool:
        """Revoke every active OAuth record for ``provider``."""
        provider = normalize_identifier(provider)
        records = await self._store.list(
            CredentialQuery(provider=provider, type=CredentialType.OAUTH)
        )
        revoked = False
        for record in records:
            revoked = await self._store.revoke(record.id) or revoked
        if revoked:
            self._logger.info(
                f"Revoked OAuth tokens for provider {provider}",
                extra={"event": "oauth_tokens_revoked", "provider": provider},
            )
        return revoked
