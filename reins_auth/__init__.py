"""
Reins Auth - provider credential vault and authentication lifecycle.

Encrypted-at-rest credential storage, per-provider API key and OAuth
strategies, a loopback OAuth callback listener, and a provider auth service
that surfaces call through one command entry point.
"""

from reins_auth.commands import (
    AuthGuidance,
    ConnectionState,
    ConversationReadiness,
    ProviderAuthCommandPayload,
    ProviderAuthCommandResult,
    ProviderAuthStatus,
    parse_command,
)
from reins_auth.config import AuthConfig, load_auth_config
from reins_auth.credentials import EncryptedCredentialStore, SecretCipher
from reins_auth.errors import (
    AuthError,
    CredentialDecryptionError,
    CredentialEncryptionError,
    CredentialPersistenceError,
    CredentialRefreshError,
    CredentialValidationError,
    OAuthProtocolError,
    OAuthStateMismatchError,
)
from reins_auth.registry import (
    AuthMode,
    InMemoryProviderRegistry,
    ProviderCapabilities,
    ProviderRegistry,
)
from reins_auth.service import ProviderAuthService

__version__ = "0.1.0"

__all__ = [
    # Service
    "ProviderAuthService",
    "ProviderAuthCommandPayload",
    "ProviderAuthCommandResult",
    "ProviderAuthStatus",
    "ConversationReadiness",
    "ConnectionState",
    "AuthGuidance",
    "parse_command",
    # Registry
    "AuthMode",
    "ProviderCapabilities",
    "ProviderRegistry",
    "InMemoryProviderRegistry",
    # Storage
    "EncryptedCredentialStore",
    "SecretCipher",
    # Config
    "AuthConfig",
    "load_auth_config",
    # Errors
    "AuthError",
    "CredentialValidationError",
    "CredentialEncryptionError",
    "CredentialDecryptionError",
    "CredentialPersistenceError",
    "OAuthProtocolError",
    "OAuthStateMismatchError",
    "CredentialRefreshError",
]
