"""OAuth authorization-code flow: token models, token-endpoint client, loopback listener, keepalive."""

from reins_auth.oauth.callback_server import (
    CallbackServerConfig,
    OAuthCallbackServer,
    start_callback_server,
)
from reins_auth.oauth.flow import OAuthFlowHandler, PkcePair
from reins_auth.oauth.keepalive import OAuthTokenKeepalive
from reins_auth.oauth.models import (
    EXPIRY_BUFFER,
    AuthorizationCodeResult,
    AuthorizationResult,
    DeviceCodeResult,
    OAuthCallbackContext,
    OAuthCallbackParameters,
    OAuthConfig,
    OAuthInitiateContext,
    OAuthRefreshContext,
    OAuthTokens,
    TokenIssuedResult,
    parse_callback_parameters,
)

__all__ = [
    "EXPIRY_BUFFER",
    "AuthorizationCodeResult",
    "AuthorizationResult",
    "CallbackServerConfig",
    "DeviceCodeResult",
    "OAuthCallbackContext",
    "OAuthCallbackParameters",
    "OAuthCallbackServer",
    "OAuthConfig",
    "OAuthFlowHandler",
    "OAuthInitiateContext",
    "OAuthRefreshContext",
    "OAuthTokenKeepalive",
    "OAuthTokens",
    "PkcePair",
    "TokenIssuedResult",
    "parse_callback_parameters",
    "start_callback_server",
]
