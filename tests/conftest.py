"""Shared fixtures for reins_auth tests."""

from datetime import timedelta

import pytest

from reins_auth.credentials.models import utc_now
from reins_auth.credentials.store import EncryptedCredentialStore
from reins_auth.oauth.callback_server import CallbackServerConfig
from reins_auth.oauth.models import OAuthTokens
from reins_auth.observability.logging import clear_auth_context
from reins_auth.registry import AuthMode, InMemoryProviderRegistry, ProviderCapabilities
from reins_auth.service import ProviderAuthService

TEST_SECRET = "test-encryption-secret"


@pytest.fixture(autouse=True)
def _reset_auth_context():
    clear_auth_context()
    yield
    clear_auth_context()


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "reins" / "credentials" / "store.enc.json"


@pytest.fixture
def encryption_secret():
    return TEST_SECRET


@pytest.fixture
def store(store_path):
    """Encrypted store in a temp directory."""
    return EncryptedCredentialStore(encryption_secret=TEST_SECRET, file_path=store_path)


@pytest.fixture
def registry():
    """Registry with one provider per auth shape."""
    return InMemoryProviderRegistry(
        [
            ProviderCapabilities(
                provider_id="anthropic",
                auth_modes=[AuthMode.API_KEY, AuthMode.OAUTH],
                env_vars=["ANTHROPIC_API_KEY"],
                base_url="https://api.anthropic.com",
            ),
            ProviderCapabilities(provider_id="openai", auth_modes=[AuthMode.API_KEY]),
            ProviderCapabilities(provider_id="reins-gateway", auth_modes=[AuthMode.API_KEY]),
            ProviderCapabilities(provider_id="acme", auth_modes=[AuthMode.OAUTH]),
            ProviderCapabilities(
                provider_id="ollama",
                requires_auth=False,
                auth_modes=[],
                user_configurable=False,
            ),
        ]
    )


@pytest.fixture
def callback_config():
    return CallbackServerConfig(host="127.0.0.1", port=0, timeout_seconds=5.0)


@pytest.fixture
async def service(store, registry, callback_config):
    """Auth service over the temp store; closed after the test."""
    auth_service = ProviderAuthService(
        store=store,
        registry=registry,
        callback_config=callback_config,
    )
    yield auth_service
    await auth_service.close()


def make_tokens(
    expires_in: timedelta = timedelta(hours=1),
    refresh_token: str | None = "refresh-token",
    access_token: str = "access-token",
) -> OAuthTokens:
    return OAuthTokens(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=utc_now() + expires_in,
        scope="openid",
        token_type="Bearer",
    )


@pytest.fixture
def token_factory():
    """Factory for OAuthTokens with a relative expiry."""
    return make_tokens
