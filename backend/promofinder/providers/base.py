"""Base provider interface.

All upstream sources (paid search APIs and scraping subsystems) inherit
from BaseProvider and implement the abstract methods defined here.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import httpx
import structlog

from promofinder.core.exceptions import ConfigurationError, ProviderError
from promofinder.schemas.product import ProductCategory


def _canonical_price(value: Optional[Decimal]) -> Optional[str]:
    """Render a price so that 50, 50.0 and 50.00 compare equal."""
    if value is None:
        return None
    return format(Decimal(str(value)).normalize(), "f")


@dataclass
class ProviderQuery:
    """Provider-agnostic search request."""

    query: str = ""
    brand: Optional[str] = None
    category: Optional[ProductCategory] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    limit: int = 20
    page: int = 1
    sort_by: Optional[str] = None  # 'relevance', 'price', 'rating'

    def __post_init__(self):
        """Validate data after initialization."""
        if not self.query and not self.brand:
            raise ValueError("query or brand is required")
        if self.limit <= 0:
            raise ValueError("limit must be positive")
        if self.page < 1:
            raise ValueError("page must be >= 1")

    @property
    def search_terms(self) -> str:
        """Free-text search string sent upstream."""
        parts = [p for p in (self.brand, self.query) if p]
        return " ".join(parts).strip()

    def cache_params(self) -> Dict[str, Any]:
        """Parameters that identify this query for caching.

        None values are dropped so that an omitted field and an explicit
        None produce the same cache key.
        """
        params = {
            "query": " ".join(self.query.split()).lower() or None,
            "brand": " ".join(self.brand.split()).lower() if self.brand else None,
            "category": self.category.value if self.category else None,
            "min_price": _canonical_price(self.min_price),
            "max_price": _canonical_price(self.max_price),
            "limit": self.limit,
            "page": self.page,
            "sort_by": self.sort_by,
        }
        return {k: v for k, v in params.items() if v is not None}


@dataclass
class RawCandidate:
    """One record in the provider's native shape."""

    provider: str
    payload: Dict[str, Any]
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CandidateFields:
    """Provider-neutral view of a raw candidate, prior to price parsing.

    Price and discount fields hold whatever the provider sent (numbers or
    free text); the Normalizer owns parsing them.
    """

    name: Optional[str]
    brand: Optional[str]
    product_url: Optional[str]
    sale_price: Union[str, float, int, Decimal, None]
    original_price: Union[str, float, int, Decimal, None] = None
    discount: Union[str, float, int, None] = None
    category_hint: Optional[str] = None
    images: List[str] = field(default_factory=list)
    external_id: Optional[str] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    availability: Optional[bool] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


class BaseProvider(ABC):
    """Abstract base class for all providers (API and scraper).

    All providers must implement search() and extract_fields().
    Providers are either API-based or scraper-based, distinguished by adapter_type.
    """

    provider_id: str = ""  # Must be overridden in subclass (e.g., "rapidapi")
    provider_name: str = ""
    adapter_type: str = ""  # Must be 'api' or 'scraper'
    endpoint: str = "search"
    cost_per_request: float = 0.0  # Estimated USD per upstream call
    max_discount: int = 90  # Provider-specific authenticity cap

    def __init__(self):
        """Initialize the provider with a bound logger."""
        self.logger = structlog.get_logger(provider=self.provider_id)

    @abstractmethod
    async def search(self, query: ProviderQuery) -> List[RawCandidate]:
        """Run a query against this provider.

        Args:
            query: Provider-agnostic query

        Returns:
            List of RawCandidate records in the provider's native shape

        Raises:
            ProviderError: If the upstream call fails
        """
        pass

    @abstractmethod
    def extract_fields(self, payload: Dict[str, Any]) -> Optional[CandidateFields]:
        """Map a native payload onto CandidateFields.

        Args:
            payload: One raw record as returned by search()

        Returns:
            CandidateFields, or None if the payload cannot be mapped
        """
        pass

    async def health_check(self) -> bool:
        """Check if this provider can serve a trivial query.

        Returns:
            True if healthy, False otherwise
        """
        try:
            await self.search(ProviderQuery(query="sale", limit=1))
            return True
        except ProviderError as e:
            self.logger.error("health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        """Release resources held by this provider."""
        pass


class BaseAPIProvider(BaseProvider):
    """Base class for paid HTTP API providers.

    Owns the httpx client and translates transport failures into
    ProviderError with an HTTP-like status code for retry classification.
    """

    adapter_type = "api"
    base_url: str = ""
    api_key_setting: str = ""  # Name of the setting holding the key

    def __init__(
        self,
        api_key: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize API provider.

        Args:
            api_key: Provider credential
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)

        Raises:
            ConfigurationError: If api_key is empty
        """
        super().__init__()
        if not api_key:
            raise ConfigurationError(
                self.api_key_setting,
                f"{self.api_key_setting} is not set; cannot use provider '{self.provider_id}'",
            )
        self.api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _default_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                headers=self._default_headers(),
                transport=self._transport,
            )
        return self._client

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET a JSON document from the provider.

        Args:
            path: Path relative to base_url
            params: Query parameters (None values are dropped)

        Returns:
            Decoded JSON object

        Raises:
            ProviderError: On HTTP error status, timeout, network failure or
                a body that is not a JSON object
        """
        clean_params = {k: v for k, v in params.items() if v is not None}
        client = self._get_client()

        try:
            response = await client.get(path, params=clean_params)
            response.raise_for_status()
            data = response.json()

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            self.logger.error("provider_http_error", status_code=status, path=path)
            raise ProviderError(
                self.provider_id,
                f"HTTP {status} from {path}",
                status_code=status,
            ) from e

        except httpx.TimeoutException as e:
            self.logger.error("provider_timeout", path=path, error=str(e))
            raise ProviderError(
                self.provider_id, f"Request to {path} timed out", status_code=408
            ) from e

        except httpx.TransportError as e:
            self.logger.error("provider_network_error", path=path, error=str(e))
            raise ProviderError(
                self.provider_id, f"Network error: {e}"
            ) from e

        except ValueError as e:
            self.logger.error("provider_invalid_json", path=path, error=str(e))
            raise ProviderError(
                self.provider_id, "Response body is not valid JSON"
            ) from e

        if not isinstance(data, dict):
            raise ProviderError(self.provider_id, "Unexpected response shape")

        return data

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class BaseScraperProvider(BaseProvider):
    """Base class for providers backed by a scraping subsystem.

    Browser automation lives outside the engine; subclasses only adapt the
    scraper's output records.
    """

    adapter_type = "scraper"
