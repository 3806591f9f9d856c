"""
OAuth data models.

Tokens, provider OAuth configuration, the three initiate outcomes, strategy
contexts, and callback query parsing.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from reins_auth.credentials.models import utc_now
from reins_auth.errors import OAuthProtocolError, OAuthStateMismatchError

EXPIRY_BUFFER = timedelta(minutes=5)
DEFAULT_EXPIRES_IN_SECONDS = 3600


class OAuthTokens(BaseModel):
    """Token set issued by a provider. Persisted as the payload of an ``oauth`` record."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime
    scope: str = ""
    token_type: str = "Bearer"

    @field_validator("refresh_token")
    @classmethod
    def _blank_refresh_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    def is_expired(self, now: datetime | None = None, buffer: timedelta = EXPIRY_BUFFER) -> bool:
        """True once ``now`` is inside the buffer window before ``expires_at``."""
        now = now or utc_now()
        return now >= self.expires_at - buffer

    def __repr__(self) -> str:
        return (
            f"OAuthTokens(expires_at={self.expires_at.isoformat()!r}, "
            f"has_refresh_token={self.refresh_token is not None}, scope={self.scope!r})"
        )


@dataclass
class OAuthConfig:
    """Per-provider OAuth client settings."""

    client_id: str
    authorization_url: str
    token_url: str
    scopes: list[str] = field(default_factory=list)
    redirect_uri: str = ""
    client_secret: str | None = field(default=None, repr=False)
    use_pkce: bool = True
    # Some token endpoints only accept a JSON body
    json_body: bool = False
    extra_authorize_params: dict[str, str] = field(default_factory=dict)


# === INITIATE RESULTS ===


class AuthorizationCodeResult(BaseModel):
    """Browser redirect flow: open ``authorization_url`` and wait for the code."""

    type: Literal["authorization_code"] = "authorization_code"
    authorization_url: str
    state: str
    code_verifier: str | None = None


class DeviceCodeResult(BaseModel):
    """Device flow: the user enters ``user_code`` at ``verification_uri``."""

    type: Literal["device_code"] = "device_code"
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int = 5


class TokenIssuedResult(BaseModel):
    """Non-redirect flow that issued tokens directly."""

    type: Literal["token_issued"] = "token_issued"
    tokens: OAuthTokens


AuthorizationResult = Annotated[
    AuthorizationCodeResult | DeviceCodeResult | TokenIssuedResult,
    Field(discriminator="type"),
]


# === STRATEGY CONTEXTS ===


@dataclass
class OAuthInitiateContext:
    provider: str
    redirect_uri: str | None = None
    state: str | None = None
    code_verifier: str | None = None


@dataclass
class OAuthCallbackContext:
    provider: str
    code: str
    state: str | None = None
    code_verifier: str | None = None
    redirect_uri: str | None = None


@dataclass
class OAuthRefreshContext:
    provider: str
    refresh_token: str
    scope: str | None = None


# === CALLBACK PARAMETERS ===


class OAuthCallbackParameters(BaseModel):
    """Validated ``code``/``state`` pair received on the redirect."""

    model_config = ConfigDict(frozen=True)

    code: str
    state: str

    def __repr__(self) -> str:
        return f"OAuthCallbackParameters(state={self.state!r})"


def parse_callback_parameters(
    query: Mapping[str, str],
    expected_state: str | None = None,
) -> OAuthCallbackParameters:
    """
    Validate a redirect query string.

    Raises:
        OAuthProtocolError: provider returned ``error``, or code/state missing.
        OAuthStateMismatchError: ``state`` differs from ``expected_state``.
    """
    error = query.get("error")
    if error:
        description = query.get("error_description") or "OAuth authorization failed"
        raise OAuthProtocolError(f"OAuth callback returned error: {error}. {description}")

    code = (query.get("code") or "").strip()
    state = (query.get("state") or "").strip()

    if not code:
        raise OAuthProtocolError("OAuth callback is missing authorization code")
    if not state:
        raise OAuthProtocolError("OAuth callback is missing state parameter")
    if expected_state and state != expected_state:
        raise OAuthStateMismatchError("OAuth callback state mismatch. Restart sign-in and try again.")

    return OAuthCallbackParameters(code=code, state=state)
