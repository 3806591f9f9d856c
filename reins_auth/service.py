"""
Provider Auth Service - credential status and auth commands for every surface.

Composes the credential store, per-provider strategies, the OAuth callback
listener and a provider registry behind one API. Surfaces talk to
``handle_command`` only.

Connection state, computed on every query and never persisted:

    requires_auth = False                       -> ready
    unknown provider, no credential             -> invalid
    no active credential                        -> requires_auth
    stored payload unreadable                   -> invalid
    OAuth expired (inside buffer), no refresh   -> requires_reauth
    otherwise                                   -> ready

Tokens inside the buffer but holding a refresh token read as ``ready``;
``get_oauth_access_token`` refreshes them lazily, so status reads have no
side effects.

Pending OAuth sessions:
    One per provider, guarded by a lock. ``initiate_oauth`` stops any
    previous session for the provider before binding a new listener (last
    initiate wins), including one whose completion is still waiting on the
    listener; that waiter fails with ``OAuthProtocolError``. A session stays in
    the map while its listener is awaited and is removed once the wait
    settles; a completion whose session was replaced meanwhile never reaches
    the strategy. Sessions are always stopped, on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from reins_auth.commands import (
    AuthSurface,
    ConfigureApiKeyPayload,
    ConfigureOAuthPayload,
    ConnectionState,
    ConversationReadiness,
    GetProviderAuthPayload,
    GuidanceAction,
    ListProviderAuthPayload,
    OAuthCallbackPayload,
    OAuthInitiatePayload,
    ProviderAuthCommandPayload,
    ProviderAuthCommandResult,
    ProviderAuthStatus,
    RevokeProviderAuthPayload,
    build_guidance,
)
from reins_auth.config import AuthConfig, load_auth_config
from reins_auth.credentials.models import (
    CredentialQuery,
    CredentialRecord,
    CredentialType,
    normalize_identifier,
    utc_now,
)
from reins_auth.credentials.store import EncryptedCredentialStore
from reins_auth.errors import (
    AuthError,
    CredentialDecryptionError,
    CredentialRefreshError,
    CredentialValidationError,
    OAuthProtocolError,
    OAuthStateMismatchError,
)
from reins_auth.oauth.callback_server import (
    CallbackServerConfig,
    OAuthCallbackServer,
    start_callback_server,
)
from reins_auth.oauth.flow import OAuthFlowHandler
from reins_auth.oauth.keepalive import OAuthTokenKeepalive
from reins_auth.oauth.models import (
    EXPIRY_BUFFER,
    AuthorizationCodeResult,
    AuthorizationResult,
    OAuthCallbackContext,
    OAuthInitiateContext,
    OAuthRefreshContext,
    OAuthTokens,
    TokenIssuedResult,
)
from reins_auth.observability.logging import reset_auth_context, set_auth_context
from reins_auth.registry import AuthMode, ProviderCapabilities, ProviderRegistry
from reins_auth.strategies.api_key import StoreApiKeyStrategy, read_api_key
from reins_auth.strategies.base import ApiKeyAuthStrategy, OAuthStrategy, latest_record
from reins_auth.strategies.oauth import StoreOAuthStrategy, read_tokens

SUPPORTED_CREDENTIAL_TYPES = (CredentialType.API_KEY, CredentialType.OAUTH)


@dataclass
class PendingOAuthSession:
    """An OAuth flow between initiate and callback."""

    provider: str
    state: str = field(repr=False)
    code_verifier: str | None = field(default=None, repr=False)
    redirect_uri: str | None = None
    server: OAuthCallbackServer | None = None
    created_at: datetime = field(default_factory=utc_now)
    waiting: bool = False

    async def stop(self) -> None:
        if self.server is not None:
            await self.server.stop()


class ProviderAuthService:
    """
    Auth orchestrator over the store, strategies, listener and registry.

    Public methods raise ``AuthError`` subclasses on failure, except
    ``handle_command`` which turns configure/initiate/callback failures into
    a result carrying ``guidance``.
    """

    def __init__(
        self,
        store: EncryptedCredentialStore,
        registry: ProviderRegistry,
        api_key_strategies: Mapping[str, ApiKeyAuthStrategy] | None = None,
        oauth_strategies: Mapping[str, OAuthStrategy] | None = None,
        oauth_flows: Mapping[str, OAuthFlowHandler] | None = None,
        callback_config: CallbackServerConfig | None = None,
        refresh_buffer: timedelta = EXPIRY_BUFFER,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ):
        """
        Args:
            store: Credential repository.
            registry: Per-provider capabilities.
            api_key_strategies: Per-provider overrides of the store-backed default.
            oauth_strategies: Per-provider overrides of the store-backed default.
            oauth_flows: Token-endpoint clients used by the default OAuth strategy.
            callback_config: Listener settings for ``initiate_oauth``.
            refresh_buffer: Lead time before expiry at which tokens count as expired.
            clock: Current time source.
            logger: Log sink shared with the default strategies.
        """
        self._store = store
        self._registry = registry
        self._logger = logger or logging.getLogger(__name__)
        self._api_key_strategies = {
            normalize_identifier(name): strategy
            for name, strategy in (api_key_strategies or {}).items()
        }
        self._oauth_strategies = {
            normalize_identifier(name): strategy
            for name, strategy in (oauth_strategies or {}).items()
        }
        self._default_api_key_strategy = StoreApiKeyStrategy(store, logger=self._logger)
        self._default_oauth_strategy = StoreOAuthStrategy(store, oauth_flows, logger=self._logger)
        self._callback_config = callback_config or CallbackServerConfig()
        self._refresh_buffer = refresh_buffer
        self._clock = clock

        self._sessions: dict[str, PendingOAuthSession] = {}
        self._sessions_lock = asyncio.Lock()
        self._initiate_locks: dict[str, asyncio.Lock] = {}
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        self._keepalives: list[OAuthTokenKeepalive] = []

    @classmethod
    def from_config(
        cls,
        registry: ProviderRegistry,
        config: AuthConfig | None = None,
        oauth_flows: Mapping[str, OAuthFlowHandler] | None = None,
        logger: logging.Logger | None = None,
    ) -> ProviderAuthService:
        """Build the service and its store from ``AuthConfig`` (defaults to ``load_auth_config()``)."""
        config = config or load_auth_config()
        return cls(
            store=EncryptedCredentialStore.with_config(config, logger=logger),
            registry=registry,
            oauth_flows=oauth_flows,
            callback_config=CallbackServerConfig(
                host=config.callback_host,
                callback_path=config.callback_path,
                timeout_seconds=config.callback_timeout_seconds,
            ),
            refresh_buffer=timedelta(seconds=config.refresh_buffer_seconds),
            logger=logger,
        )

    # === RESOLUTION ===

    @staticmethod
    def _normalize_provider(provider: str) -> str:
        normalized = normalize_identifier(provider)
        if not normalized:
            raise CredentialValidationError("Provider is required")
        return normalized

    def requires_auth(self, provider: str) -> bool:
        """Unknown providers are treated as requiring auth."""
        capabilities = self._registry.get_capabilities(normalize_identifier(provider))
        return capabilities.requires_auth if capabilities else True

    def get_auth_methods(self, provider: str) -> list[AuthMode]:
        capabilities = self._registry.get_capabilities(normalize_identifier(provider))
        return list(capabilities.auth_modes) if capabilities else []

    def _require_mode(self, provider: str, mode: AuthMode) -> None:
        if mode not in self.get_auth_methods(provider):
            raise CredentialValidationError(
                f"Provider {provider} does not support {mode.value} authentication"
            )

    def _api_key_strategy(self, provider: str) -> ApiKeyAuthStrategy:
        return self._api_key_strategies.get(provider, self._default_api_key_strategy)

    def _oauth_strategy(self, provider: str) -> OAuthStrategy:
        return self._oauth_strategies.get(provider, self._default_oauth_strategy)

    # === CREDENTIALS ===

    async def set_api_key(
        self,
        provider: str,
        key: str,
        metadata: dict[str, str] | None = None,
    ) -> CredentialRecord:
        """Validate and store an API key, replacing any previous one."""
        provider = self._normalize_provider(provider)
        strategy = self._api_key_strategy(provider)
        canonical = strategy.validate(provider, key)
        self._require_mode(provider, AuthMode.API_KEY)
        return await strategy.store(provider, canonical, metadata)

    async def set_oauth_tokens(self, provider: str, tokens: OAuthTokens) -> CredentialRecord:
        provider = self._normalize_provider(provider)
        self._require_mode(provider, AuthMode.OAUTH)
        return await self._oauth_strategy(provider).store_tokens(provider, tokens)

    async def get_credential(self, provider: str) -> CredentialRecord | None:
        """Most recently updated active API key or OAuth record."""
        provider = self._normalize_provider(provider)
        records = await self._store.list(CredentialQuery(provider=provider))
        return latest_record(r for r in records if r.type in SUPPORTED_CREDENTIAL_TYPES)

    async def revoke_provider(self, provider: str) -> bool:
        """
        Revoke the provider's credentials in every supported mode and drop
        any pending OAuth session.

        Returns:
            True if at least one credential was revoked.
        """
        provider = self._normalize_provider(provider)
        modes = self.get_auth_methods(provider)
        if self._registry.get_capabilities(provider) is None:
            modes = [AuthMode.API_KEY, AuthMode.OAUTH]

        revoked = False
        if AuthMode.API_KEY in modes:
            revoked = await self._api_key_strategy(provider).revoke(provider) or revoked
        if AuthMode.OAUTH in modes:
            revoked = await self._oauth_strategy(provider).revoke(provider) or revoked

        async with self._sessions_lock:
            session = self._sessions.pop(provider, None)
        if session is not None:
            await session.stop()

        self._logger.info(
            f"Revoke for provider {provider}: {'revoked' if revoked else 'nothing to revoke'}",
            extra={"event": "provider_revoked", "provider": provider},
        )
        return revoked

    # === STATUS ===

    async def get_provider_auth_status(self, provider: str) -> ProviderAuthStatus:
        provider = self._normalize_provider(provider)
        records = await self._store.list(CredentialQuery(provider=provider))
        return await self._build_status(provider, self._registry.get_capabilities(provider), records)

    async def list_providers(self) -> list[ProviderAuthStatus]:
        """Status of every registered provider, sorted by id."""
        records = await self._store.list()
        by_provider: dict[str, list[CredentialRecord]] = {}
        for record in records:
            by_provider.setdefault(record.provider, []).append(record)

        return [
            await self._build_status(
                capabilities.provider_id,
                capabilities,
                by_provider.get(capabilities.provider_id, []),
            )
            for capabilities in self._registry.list_capabilities()
        ]

    async def _build_status(
        self,
        provider: str,
        capabilities: ProviderCapabilities | None,
        records: list[CredentialRecord],
    ) -> ProviderAuthStatus:
        record = latest_record(r for r in records if r.type in SUPPORTED_CREDENTIAL_TYPES)
        expires_at = None

        if capabilities is not None and not capabilities.requires_auth:
            state = ConnectionState.READY
        elif capabilities is None and record is None:
            state = ConnectionState.INVALID
        elif record is None:
            state = ConnectionState.REQUIRES_AUTH
        else:
            try:
                if record.type == CredentialType.OAUTH:
                    tokens = await read_tokens(self._store, record)
                    expires_at = tokens.expires_at
                    expired = tokens.is_expired(self._clock(), self._refresh_buffer)
                    if expired and tokens.refresh_token is None:
                        state = ConnectionState.REQUIRES_REAUTH
                    else:
                        state = ConnectionState.READY
                else:
                    await read_api_key(self._store, record)
                    state = ConnectionState.READY
            except CredentialDecryptionError as e:
                self._logger.warning(
                    f"Stored credential '{record.id}' is unreadable: {e.message}",
                    extra={"event": "credential_unreadable", "provider": provider},
                )
                state = ConnectionState.INVALID

        return ProviderAuthStatus(
            provider=provider,
            requires_auth=capabilities.requires_auth if capabilities else True,
            auth_modes=list(capabilities.auth_modes) if capabilities else [],
            configured=record is not None,
            connection_state=state,
            credential_type=record.type if record else None,
            updated_at=record.updated_at if record else None,
            expires_at=expires_at,
            env_vars=list(capabilities.env_vars) if capabilities else [],
            base_url=capabilities.base_url if capabilities else None,
            user_configurable=capabilities.user_configurable if capabilities else False,
        )

    async def check_conversation_ready(
        self,
        provider: str,
        source: AuthSurface = "tui",
    ) -> ConversationReadiness:
        """Whether a conversation may start with ``provider``, with guidance if not."""
        status = await self.get_provider_auth_status(provider)
        state = status.connection_state
        guidance = None
        if state == ConnectionState.REQUIRES_REAUTH:
            guidance = build_guidance(GuidanceAction.REAUTH, status.provider, source, status.auth_modes)
        elif state == ConnectionState.REQUIRES_AUTH:
            guidance = build_guidance(GuidanceAction.CONFIGURE, status.provider, source, status.auth_modes)
        elif state == ConnectionState.INVALID:
            detail = (
                "stored credentials could not be read"
                if status.configured
                else "provider is not registered"
            )
            guidance = build_guidance(
                GuidanceAction.CONFIGURE, status.provider, source, status.auth_modes, detail
            )
        return ConversationReadiness(
            provider=status.provider,
            allowed=state == ConnectionState.READY,
            connection_state=state,
            guidance=guidance,
        )

    # === OAUTH ===

    async def initiate_oauth(
        self,
        provider: str,
        use_callback_server: bool = True,
    ) -> AuthorizationResult:
        """
        Start an OAuth flow.

        For code flows a loopback listener is started (unless disabled by the
        caller or by the provider's ``oauth_local_callback`` capability) and
        its redirect URI is handed to the strategy. Any pending session for the
        provider is stopped first.

        Returns:
            The strategy's result. The PKCE verifier stays in the pending
            session and is not returned.
        """
        provider = self._normalize_provider(provider)
        self._require_mode(provider, AuthMode.OAUTH)
        strategy = self._oauth_strategy(provider)
        capabilities = self._registry.get_capabilities(provider)
        listen = use_callback_server and (capabilities is None or capabilities.oauth_local_callback)

        token = set_auth_context(provider=provider, flow_id=uuid.uuid4().hex)
        try:
            # Initiates for one provider are serialized; the sessions lock only
            # guards the map so other providers and callbacks are not blocked.
            async with self._initiate_locks.setdefault(provider, asyncio.Lock()):
                async with self._sessions_lock:
                    previous = self._sessions.pop(provider, None)
                    if previous is not None:
                        self._logger.info(
                            f"Replacing pending OAuth sign-in for {provider}",
                            extra={"event": "oauth_session_replaced", "provider": provider},
                        )
                        # Wakes a completion waiting on the old listener
                        await previous.stop()

                server = None
                if listen:
                    server = await start_callback_server(self._callback_config, logger=self._logger)
                try:
                    result = await strategy.initiate(
                        OAuthInitiateContext(
                            provider=provider,
                            redirect_uri=server.redirect_uri if server else None,
                        )
                    )
                except BaseException:
                    if server is not None:
                        await server.stop()
                    raise

                if isinstance(result, AuthorizationCodeResult):
                    async with self._sessions_lock:
                        self._sessions[provider] = PendingOAuthSession(
                            provider=provider,
                            state=result.state,
                            code_verifier=result.code_verifier,
                            redirect_uri=server.redirect_uri if server else None,
                            server=server,
                        )
                elif server is not None:
                    await server.stop()

            if isinstance(result, TokenIssuedResult):
                await strategy.store_tokens(provider, result.tokens)

            self._logger.info(
                f"OAuth sign-in started for {provider} ({result.type})",
                extra={"event": "oauth_initiated", "provider": provider},
            )
        finally:
            reset_auth_context(token)

        if isinstance(result, AuthorizationCodeResult):
            return result.model_copy(update={"code_verifier": None})
        return result

    async def complete_oauth_callback(
        self,
        provider: str,
        code: str | None = None,
        state: str | None = None,
    ) -> OAuthTokens:
        """
        Finish a pending code flow and persist the tokens.

        With an explicit ``code`` (optionally pasted as ``code#state``) the
        state, when present, must match the one issued at initiate time.
        Without one, waits for the listener to receive the redirect.

        Raises:
            OAuthStateMismatchError: state differs from the issued one.
            OAuthProtocolError: no pending session, timeout, listener stopped,
                or token exchange failure.
        """
        provider = self._normalize_provider(provider)
        explicit_code = (code or "").strip()
        async with self._sessions_lock:
            session = self._sessions.get(provider)
            if session is None:
                raise OAuthProtocolError(
                    f"No pending OAuth sign-in for provider {provider}. Start sign-in again."
                )
            if session.waiting:
                raise OAuthProtocolError(
                    f"OAuth sign-in for provider {provider} is already waiting for its callback"
                )
            if explicit_code or session.server is None:
                del self._sessions[provider]
            else:
                # Stays visible to initiate_oauth/revoke/close until the wait settles
                session.waiting = True

        token = set_auth_context(provider=provider)
        try:
            if explicit_code:
                actual_code, _, embedded_state = explicit_code.partition("#")
                callback_state = (state or "").strip() or embedded_state.strip() or None
                if callback_state is not None and callback_state != session.state:
                    raise OAuthStateMismatchError(
                        "OAuth callback state mismatch. Restart sign-in and try again."
                    )
            elif session.server is not None:
                current = False
                try:
                    params = await session.server.wait_for_callback(expected_state=session.state)
                finally:
                    async with self._sessions_lock:
                        current = self._sessions.get(provider) is session
                        if current:
                            del self._sessions[provider]
                if not current:
                    raise OAuthProtocolError(
                        f"OAuth sign-in for provider {provider} was replaced by a newer sign-in"
                    )
                actual_code, callback_state = params.code, params.state
            else:
                raise OAuthProtocolError(
                    f"Authorization code is required to complete sign-in for {provider}"
                )

            tokens = await self._oauth_strategy(provider).handle_callback(
                OAuthCallbackContext(
                    provider=provider,
                    code=actual_code,
                    state=callback_state,
                    code_verifier=session.code_verifier,
                    redirect_uri=session.redirect_uri,
                )
            )
            self._logger.info(
                f"OAuth sign-in completed for {provider}",
                extra={"event": "oauth_completed", "provider": provider},
            )
            return tokens
        finally:
            await session.stop()
            reset_auth_context(token)

    async def get_oauth_access_token(self, provider: str) -> str:
        """
        Current access token, refreshed and persisted first if inside the buffer.

        Refreshes for one provider are serialized, so concurrent callers share
        the result of a single refresh.

        Raises:
            CredentialRefreshError: no tokens, expired without a refresh token,
                or the refresh was rejected.
        """
        provider = self._normalize_provider(provider)
        strategy = self._oauth_strategy(provider)
        lock = self._refresh_locks.setdefault(provider, asyncio.Lock())

        async with lock:
            tokens = await strategy.retrieve_tokens(provider)
            if tokens is None:
                raise CredentialRefreshError(
                    f"No OAuth tokens found for provider {provider}. Re-authenticate this provider."
                )
            if not tokens.is_expired(self._clock(), self._refresh_buffer):
                return tokens.access_token
            if tokens.refresh_token is None:
                raise CredentialRefreshError(
                    f"OAuth tokens expired and no refresh token is available for {provider}. "
                    "Re-authenticate this provider."
                )

            refreshed = await strategy.refresh(
                OAuthRefreshContext(
                    provider=provider,
                    refresh_token=tokens.refresh_token,
                    scope=tokens.scope or None,
                )
            )
            return refreshed.access_token

    def create_keepalive(self, provider: str) -> OAuthTokenKeepalive:
        """Keepalive that refreshes ``provider``'s token ahead of expiry. Stopped by ``close``."""
        provider = self._normalize_provider(provider)
        strategy = self._oauth_strategy(provider)
        keepalive = OAuthTokenKeepalive(
            provider,
            refresh=lambda: self.get_oauth_access_token(provider),
            load_tokens=lambda: strategy.retrieve_tokens(provider),
            refresh_buffer=self._refresh_buffer,
            clock=self._clock,
            logger=self._logger,
        )
        self._keepalives.append(keepalive)
        return keepalive

    async def close(self) -> None:
        """Stop every pending listener and keepalive."""
        async with self._sessions_lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.stop()
        for keepalive in self._keepalives:
            await keepalive.stop()
        self._keepalives.clear()

    def has_pending_session(self, provider: str) -> bool:
        return normalize_identifier(provider) in self._sessions

    # === COMMANDS ===

    async def handle_command(self, payload: ProviderAuthCommandPayload) -> ProviderAuthCommandResult:
        """
        Single entry point for CLI, TUI and desktop.

        configure / oauth_initiate / oauth_callback failures come back as a
        result with ``guidance``; get / list / revoke failures raise.
        """
        source = payload.source
        provider = getattr(payload, "provider", None)
        token = set_auth_context(source=source, **({"provider": provider} if provider else {}))
        try:
            if isinstance(payload, ListProviderAuthPayload):
                return ProviderAuthCommandResult(
                    action=payload.action, providers=await self.list_providers()
                )
            if isinstance(payload, GetProviderAuthPayload):
                return ProviderAuthCommandResult(
                    action=payload.action,
                    provider=provider,
                    status=await self.get_provider_auth_status(provider),
                )
            if isinstance(payload, RevokeProviderAuthPayload):
                revoked = await self.revoke_provider(provider)
                return ProviderAuthCommandResult(
                    action=payload.action,
                    provider=provider,
                    revoked=revoked,
                    status=await self.get_provider_auth_status(provider),
                )
            return await self._handle_recoverable(payload)
        finally:
            reset_auth_context(token)

    async def _handle_recoverable(self, payload: ProviderAuthCommandPayload) -> ProviderAuthCommandResult:
        provider = payload.provider
        try:
            if isinstance(payload, ConfigureApiKeyPayload):
                await self.set_api_key(provider, payload.key, payload.metadata)
            elif isinstance(payload, ConfigureOAuthPayload):
                await self.set_oauth_tokens(provider, payload.tokens)
            elif isinstance(payload, OAuthInitiatePayload):
                authorization = await self.initiate_oauth(
                    provider, use_callback_server=payload.use_callback_server
                )
                return ProviderAuthCommandResult(
                    action=payload.action, provider=provider, authorization=authorization
                )
            elif isinstance(payload, OAuthCallbackPayload):
                await self.complete_oauth_callback(provider, payload.code, payload.state)
            else:
                raise CredentialValidationError(
                    f"Unsupported auth command: {getattr(payload, 'action', payload)!r}"
                )
            status = await self.get_provider_auth_status(provider)
        except AuthError as e:
            self._logger.warning(
                f"Auth command '{payload.action}' failed for {provider}: {e.message}",
                extra={"event": "auth_command_failed", "provider": provider},
            )
            return ProviderAuthCommandResult(
                action=payload.action,
                provider=provider,
                guidance=build_guidance(
                    self._guidance_action_for(payload, e),
                    provider,
                    payload.source,
                    self.get_auth_methods(provider),
                    detail=e.message,
                ),
            )

        return ProviderAuthCommandResult(action=payload.action, provider=provider, status=status)

    @staticmethod
    def _guidance_action_for(payload: ProviderAuthCommandPayload, error: AuthError) -> GuidanceAction:
        if isinstance(error, CredentialRefreshError):
            return GuidanceAction.REAUTH
        if isinstance(payload, ConfigureApiKeyPayload | ConfigureOAuthPayload):
            return GuidanceAction.CONFIGURE
        return GuidanceAction.RETRY
