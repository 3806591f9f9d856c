"""
Pluggable per-provider auth behavior.

The service resolves a strategy by normalized provider id from the override
maps it was constructed with, falling back to the store-backed defaults.
"""

from reins_auth.strategies.api_key import (
    DEFAULT_KEY_RULES,
    KeyFormatRule,
    StoreApiKeyStrategy,
    normalize_metadata,
)
from reins_auth.strategies.base import ApiKeyAuthStrategy, OAuthStrategy, credential_id_for
from reins_auth.strategies.oauth import StoreOAuthStrategy

__all__ = [
    "ApiKeyAuthStrategy",
    "OAuthStrategy",
    "StoreApiKeyStrategy",
    "StoreOAuthStrategy",
    "KeyFormatRule",
    "DEFAULT_KEY_RULES",
    "credential_id_for",
    "normalize_metadata",
]
