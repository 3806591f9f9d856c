"""
OAuth Flow Handler - generic RFC 6749 authorization-code client.

Builds authorization URLs (with PKCE S256), exchanges codes and refresh
tokens at the provider's token endpoint, and validates the response shape.
Provider-specific wire quirks live in per-provider collaborators; this class
covers the common form-encoded and JSON token endpoints.

Usage:
    flow = OAuthFlowHandler(OAuthConfig(
        client_id="...",
        authorization_url="https://auth.example.com/authorize",
        token_url="https://auth.example.com/token",
        scopes=["openid"],
    ))
    pkce = flow.generate_pkce_pair()
    url = flow.get_authorization_url(state, code_challenge=pkce.challenge, redirect_uri=uri)
    tokens = await flow.exchange_code(code, code_verifier=pkce.verifier, redirect_uri=uri)
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Literal
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from pydantic import BaseModel, ValidationError

from reins_auth.credentials.models import utc_now
from reins_auth.errors import OAuthProtocolError
from reins_auth.oauth.models import DEFAULT_EXPIRES_IN_SECONDS, OAuthConfig, OAuthTokens

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class PkcePair:
    verifier: str
    challenge: str
    method: Literal["S256"] = "S256"


class TokenResponse(BaseModel):
    """Subset of the RFC 6749 section 5.1 response this client relies on."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | float | None = None
    scope: str | None = None
    token_type: str | None = None


class OAuthFlowHandler:
    """Authorization-code + refresh client for one provider's token endpoint."""

    def __init__(
        self,
        config: OAuthConfig,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """
        Args:
            config: Provider OAuth settings.
            http_client: Shared client (tests pass one built on ``httpx.MockTransport``).
                When omitted, a client is created per request.
            timeout: Per-request timeout in seconds.
        """
        self.config = config
        self._http_client = http_client
        self._timeout = timeout

    # === PKCE ===

    def generate_pkce_pair(self) -> PkcePair:
        verifier = _base64url(secrets.token_bytes(32))
        return PkcePair(verifier=verifier, challenge=self.compute_pkce_challenge(verifier))

    @staticmethod
    def compute_pkce_challenge(verifier: str) -> str:
        return _base64url(hashlib.sha256(verifier.encode("ascii")).digest())

    # === AUTHORIZATION ===

    def get_authorization_url(
        self,
        state: str,
        code_challenge: str | None = None,
        redirect_uri: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """Build the browser URL for the authorization request."""
        parts = urlsplit(self.config.authorization_url)
        params = dict(parse_qsl(parts.query))
        params.update(
            {
                "client_id": self.config.client_id,
                "response_type": "code",
                "redirect_uri": redirect_uri or self.config.redirect_uri,
                "scope": " ".join(self.config.scopes),
            }
        )
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params["state"] = state
        params.update(self.config.extra_authorize_params)
        if extra_params:
            params.update(extra_params)
        return urlunsplit(parts._replace(query=urlencode(params)))

    # === TOKEN ENDPOINT ===

    async def exchange_code(
        self,
        code: str,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
        state: str | None = None,
    ) -> OAuthTokens:
        """
        Exchange an authorization code for tokens.

        A pasted ``code#state`` value is split; the embedded state is sent
        when no explicit ``state`` is given.
        """
        actual_code, _, embedded_state = code.strip().partition("#")
        if not actual_code:
            raise OAuthProtocolError("OAuth authorization code is required")

        body: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": actual_code,
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri or self.config.redirect_uri,
        }
        callback_state = state or embedded_state
        if callback_state:
            body["state"] = callback_state
        if self.config.client_secret:
            body["client_secret"] = self.config.client_secret
        if code_verifier:
            body["code_verifier"] = code_verifier

        return await self._request_tokens(body)

    async def refresh_tokens(self, refresh_token: str, scope: str | None = None) -> OAuthTokens:
        """Exchange a refresh token. The old refresh token is kept if none is returned."""
        if not refresh_token.strip():
            raise OAuthProtocolError("Refresh token is required")

        body: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
        }
        if self.config.client_secret:
            body["client_secret"] = self.config.client_secret
        if scope:
            body["scope"] = scope

        return await self._request_tokens(body, current_refresh_token=refresh_token)

    async def _request_tokens(
        self,
        body: dict[str, str],
        current_refresh_token: str | None = None,
    ) -> OAuthTokens:
        grant_type = body["grant_type"]
        request_kwargs: dict[str, Any] = {"headers": {"Accept": "application/json"}}
        if self.config.json_body:
            request_kwargs["json"] = body
        else:
            request_kwargs["data"] = body

        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    self.config.token_url, timeout=self._timeout, **request_kwargs
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self.config.token_url, **request_kwargs)
        except httpx.HTTPError as e:
            raise OAuthProtocolError(
                f"OAuth token request to {self.config.token_url} failed: {e}", e
            ) from e

        if response.status_code >= 400:
            detail = response.text or response.reason_phrase
            logger.warning(
                f"Token endpoint rejected {grant_type} grant (HTTP {response.status_code})",
                extra={"event": "oauth_token_rejected"},
            )
            raise OAuthProtocolError(
                f"OAuth token request failed ({response.status_code}): {detail}"
            )

        try:
            data = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise OAuthProtocolError("OAuth token response is malformed", e) from e
        if not data.access_token:
            raise OAuthProtocolError("OAuth token response missing access_token")

        expires_in = data.expires_in if data.expires_in is not None else DEFAULT_EXPIRES_IN_SECONDS
        logger.debug(
            f"Token endpoint issued tokens for {grant_type} grant",
            extra={"event": "oauth_token_issued"},
        )
        return OAuthTokens(
            access_token=data.access_token,
            refresh_token=data.refresh_token or current_refresh_token,
            expires_at=utc_now() + timedelta(seconds=expires_in),
            scope=data.scope if data.scope is not None else " ".join(self.config.scopes),
            token_type=data.token_type or "Bearer",
        )
