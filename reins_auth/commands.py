"""
Command payloads and results for the single auth entry point.

Surfaces (CLI, TUI, desktop) send one ``ProviderAuthCommandPayload`` to
``ProviderAuthService.handle_command`` and render the
``ProviderAuthCommandResult`` they get back, including any ``guidance``.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from reins_auth.credentials.models import CredentialType
from reins_auth.oauth.models import AuthorizationResult, OAuthTokens
from reins_auth.registry import AuthMode

AuthSurface = Literal["cli", "tui", "desktop"]


class ConnectionState(StrEnum):
    READY = "ready"
    REQUIRES_AUTH = "requires_auth"
    REQUIRES_REAUTH = "requires_reauth"
    INVALID = "invalid"


class GuidanceAction(StrEnum):
    CONFIGURE = "configure"
    REAUTH = "reauth"
    RETRY = "retry"


# === PAYLOADS ===


class _ProviderCommand(BaseModel):
    provider: str
    source: AuthSurface

    @field_validator("provider")
    @classmethod
    def _provider_required(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("Provider is required")
        return value


class ConfigureApiKeyPayload(_ProviderCommand):
    action: Literal["configure"] = "configure"
    mode: Literal["api_key"] = "api_key"
    key: str = Field(repr=False)
    metadata: dict[str, str] | None = None


class ConfigureOAuthPayload(_ProviderCommand):
    action: Literal["configure"] = "configure"
    mode: Literal["oauth"] = "oauth"
    tokens: OAuthTokens


ConfigurePayload = Annotated[
    ConfigureApiKeyPayload | ConfigureOAuthPayload,
    Field(discriminator="mode"),
]


class GetProviderAuthPayload(_ProviderCommand):
    action: Literal["get"] = "get"


class ListProviderAuthPayload(BaseModel):
    action: Literal["list"] = "list"
    source: AuthSurface


class RevokeProviderAuthPayload(_ProviderCommand):
    action: Literal["revoke"] = "revoke"


class OAuthInitiatePayload(_ProviderCommand):
    action: Literal["oauth_initiate"] = "oauth_initiate"
    # False: the caller collects the code itself (pasted code, device flow)
    use_callback_server: bool = True


class OAuthCallbackPayload(_ProviderCommand):
    action: Literal["oauth_callback"] = "oauth_callback"
    code: str | None = None
    state: str | None = None


ProviderAuthCommandPayload = Annotated[
    ConfigurePayload
    | GetProviderAuthPayload
    | ListProviderAuthPayload
    | RevokeProviderAuthPayload
    | OAuthInitiatePayload
    | OAuthCallbackPayload,
    Field(discriminator="action"),
]

_command_adapter: TypeAdapter[Any] = TypeAdapter(ProviderAuthCommandPayload)


def parse_command(data: dict[str, Any] | str | bytes) -> Any:
    """Validate raw surface input (dict or JSON) into a command payload."""
    if isinstance(data, str | bytes):
        return _command_adapter.validate_json(data)
    return _command_adapter.validate_python(data)


# === RESULTS ===


class AuthGuidance(BaseModel):
    """What the surface should tell the user to do next."""

    action: GuidanceAction
    message: str
    supported_modes: list[AuthMode] = Field(default_factory=list)


class ProviderAuthStatus(BaseModel):
    """Derived, never persisted. Recomputed on every query."""

    provider: str
    requires_auth: bool
    auth_modes: list[AuthMode]
    configured: bool
    connection_state: ConnectionState
    credential_type: CredentialType | None = None
    updated_at: datetime | None = None
    expires_at: datetime | None = None
    env_vars: list[str] = Field(default_factory=list)
    base_url: str | None = None
    user_configurable: bool = True


class ConversationReadiness(BaseModel):
    provider: str
    allowed: bool
    connection_state: ConnectionState
    guidance: AuthGuidance | None = None


class ProviderAuthCommandResult(BaseModel):
    """Outcome of ``handle_command``. Recoverable failures carry ``guidance``."""

    action: str
    provider: str | None = None
    status: ProviderAuthStatus | None = None
    providers: list[ProviderAuthStatus] | None = None
    authorization: AuthorizationResult | None = None
    revoked: bool | None = None
    guidance: AuthGuidance | None = None

    @property
    def ok(self) -> bool:
        return self.guidance is None


# === GUIDANCE MESSAGES ===


def _connect_hint(provider: str, source: AuthSurface) -> str:
    if source == "desktop":
        return f"Open Settings > Providers, or type /connect {provider} in a conversation"
    if source == "tui":
        return f"Type /connect {provider}"
    return f"Run /connect {provider} from the Reins CLI"


def build_guidance(
    action: GuidanceAction,
    provider: str,
    source: AuthSurface,
    supported_modes: list[AuthMode],
    detail: str | None = None,
) -> AuthGuidance:
    """Guidance message personalised for the surface that sent the command."""
    hint = _connect_hint(provider, source)
    modes = ", ".join(mode.value for mode in supported_modes) or "none"
    if action == GuidanceAction.CONFIGURE:
        message = f"{provider} is not configured. {hint} to add credentials (supported: {modes})."
    elif action == GuidanceAction.REAUTH:
        message = f"Your {provider} sign-in has expired. {hint} to sign in again."
    else:
        message = f"Could not complete authentication for {provider}. {hint} to try again."
    if detail:
        message = f"{message} ({detail})"
    return AuthGuidance(action=action, message=message, supported_modes=list(supported_modes))
