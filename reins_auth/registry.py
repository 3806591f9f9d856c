"""Provider registry contract consumed by the auth service."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol, runtime_checkable

from reins_auth.credentials.models import normalize_identifier

REINS_GATEWAY_PROVIDER_ID = "reins-gateway"


class AuthMode(StrEnum):
    API_KEY = "api_key"
    OAUTH = "oauth"


@dataclass
class ProviderCapabilities:
    """What a provider needs before it can be used."""

    provider_id: str
    requires_auth: bool = True
    auth_modes: list[AuthMode] = field(default_factory=lambda: [AuthMode.API_KEY])
    env_vars: list[str] = field(default_factory=list)
    base_url: str | None = None
    user_configurable: bool = True
    # False for providers whose OAuth flow does not redirect back to a local listener
    oauth_local_callback: bool = True

    def __post_init__(self) -> None:
        self.provider_id = normalize_identifier(self.provider_id)
        self.auth_modes = [AuthMode(mode) for mode in self.auth_modes]


@runtime_checkable
class ProviderRegistry(Protocol):
    """Source of per-provider capabilities."""

    def get_capabilities(self, provider: str) -> ProviderCapabilities | None: ...

    def list_capabilities(self) -> list[ProviderCapabilities]: ...


class InMemoryProviderRegistry:
    """Dict-backed ``ProviderRegistry``."""

    def __init__(self, providers: Iterable[ProviderCapabilities] = ()):
        self._providers: dict[str, ProviderCapabilities] = {}
        for capabilities in providers:
            self.register(capabilities)

    def register(self, capabilities: ProviderCapabilities) -> None:
        """Register or replace a provider's capabilities."""
        self._providers[capabilities.provider_id] = capabilities

    def get_capabilities(self, provider: str) -> ProviderCapabilities | None:
        return self._providers.get(normalize_identifier(provider))

    def list_capabilities(self) -> list[ProviderCapabilities]:
        return sorted(self._providers.values(), key=lambda caps: caps.provider_id)


def default_provider_registry() -> InMemoryProviderRegistry:
    """Registry with the built-in gateway provider."""
    return InMemoryProviderRegistry(
        [
            ProviderCapabilities(
                provider_id=REINS_GATEWAY_PROVIDER_ID,
                auth_modes=[AuthMode.API_KEY],
                env_vars=["REINS_GATEWAY_KEY"],
            ),
        ]
    )
