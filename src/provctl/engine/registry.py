"""Provider registry owned by the engine.

Lookups never return None: a miss raises ProviderNotFoundError, which
names the resource that asked for the provider.
"""

from __future__ import annotations

from collections.abc import Iterator

from provctl.engine.provider import CloudProvider
from provctl.errors import ProviderNotFoundError
from provctl.models import ResourceID


class ProviderRegistry:
    """Name-keyed collection of cloud providers."""

    def __init__(self, providers: list[CloudProvider] | None = None) -> None:
        self._providers: dict[str, CloudProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: CloudProvider) -> None:
        """Register a provider. Re-registering a name replaces it."""
        if not provider.name:
            raise ValueError("Provider name must not be empty")
        self._providers[provider.name] = provider

    def unregister(self, name: str) -> None:
        self._providers.pop(name, None)

    def resolve(self, name: str, resource: ResourceID | None = None) -> CloudProvider:
        """Return the provider registered under *name*.

        Raises:
            ProviderNotFoundError: If no provider has that name.
        """
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name, resource=resource)
        return provider

    def names(self) -> list[str]:
        return sorted(self._providers)

    def items(self) -> list[tuple[str, CloudProvider]]:
        return [(name, self._providers[name]) for name in self.names()]

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[CloudProvider]:
        return iter(self._providers[name] for name in self.names())

    def __len__(self) -> int:
        return len(self._providers)
