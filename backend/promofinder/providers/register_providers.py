"""Build the provider registry from settings.

Call build_provider_registry() once during startup. Each enabled API
provider is constructed eagerly so that a missing credential fails here,
legibly, instead of on the first aggregation.
"""

from typing import Callable, Dict, Optional

import httpx
import structlog

from promofinder.config import Settings
from promofinder.core.exceptions import ConfigurationError
from promofinder.providers.base import BaseProvider
from promofinder.providers.registry import ProviderRegistry
from promofinder.providers.adapters import RapidApiProvider, RainforestProvider

logger = structlog.get_logger(__name__)


def _provider_factories(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport],
) -> Dict[str, Callable[[], BaseProvider]]:
    return {
        "rapidapi": lambda: RapidApiProvider(
            api_key=settings.RAPIDAPI_KEY,
            timeout=settings.API_TIMEOUT,
            transport=transport,
        ),
        "rainforest": lambda: RainforestProvider(
            api_key=settings.RAINFOREST_API_KEY,
            timeout=settings.API_TIMEOUT,
            transport=transport,
        ),
    }


def build_provider_registry(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderRegistry:
    """Register every provider listed in ENABLED_PROVIDERS.

    Args:
        settings: Engine settings
        transport: Optional httpx transport shared by API providers

    Returns:
        Populated ProviderRegistry

    Raises:
        ConfigurationError: If a provider id is unknown or its API key is missing
    """
    registry = ProviderRegistry()
    factories = _provider_factories(settings, transport)

    for provider_id in settings.get_enabled_providers():
        factory = factories.get(provider_id)
        if factory is None:
            raise ConfigurationError(
                "ENABLED_PROVIDERS",
                f"Unknown provider '{provider_id}' in ENABLED_PROVIDERS "
                f"(known: {', '.join(sorted(factories))})",
            )
        registry.register(factory())

    logger.info(
        "all_providers_registered",
        count=len(registry),
        providers=registry.provider_ids(),
    )

    return registry
