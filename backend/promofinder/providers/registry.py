"""Static registry of provider instances."""

from typing import Dict, Iterator, List, Optional, Sequence

import structlog

from promofinder.core.exceptions import ConfigurationError
from promofinder.providers.base import BaseProvider


logger = structlog.get_logger(__name__)


class ProviderRegistry:
    """Registry of provider instances assembled at startup.

    Adding a provider is a register() call; the aggregator resolves
    providers by id from here and never imports adapters dynamically.
    """

    def __init__(self, providers: Optional[Sequence[BaseProvider]] = None):
        self._providers: Dict[str, BaseProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: BaseProvider) -> None:
        """Register a provider instance.

        Args:
            provider: Provider instance (must inherit from BaseProvider)

        Raises:
            ValueError: If the object is not a provider, has no id, or the id
                is already registered
        """
        if not isinstance(provider, BaseProvider):
            raise ValueError(f"Provider must inherit from BaseProvider: {provider!r}")
        if not provider.provider_id:
            raise ValueError(f"Provider has no provider_id: {provider!r}")
        if provider.provider_id in self._providers:
            raise ValueError(f"Provider already registered: {provider.provider_id}")

        self._providers[provider.provider_id] = provider
        logger.info(
            "provider_registered",
            provider=provider.provider_id,
            adapter_type=provider.adapter_type,
        )

    def get(self, provider_id: str) -> BaseProvider:
        """Look up a provider by id.

        Raises:
            ConfigurationError: If no provider is registered under that id
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ConfigurationError(
                "ENABLED_PROVIDERS",
                f"No provider registered for '{provider_id}'",
            )
        return provider

    def get_many(self, provider_ids: Optional[Sequence[str]] = None) -> List[BaseProvider]:
        """Resolve a list of ids, or every registered provider when None."""
        if provider_ids is None:
            return list(self._providers.values())
        return [self.get(pid) for pid in provider_ids]

    def provider_ids(self) -> List[str]:
        return list(self._providers.keys())

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def __contains__(self, provider_id: str) -> bool:
        return self.has_provider(provider_id)

    def __iter__(self) -> Iterator[BaseProvider]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)

    async def close(self) -> None:
        """Close every registered provider."""
        for provider in self._providers.values():
            await provider.close()
