"""Bridge adapter for the external scraping subsystem.

Browser-automation scrapers (Nike, Zalando, ASOS, ...) run outside the
engine and hand back plain dict records. This adapter wraps such a scraper
callable so the aggregator can treat it like any other provider.

Expected record keys (all optional except where noted by the Normalizer):
    name, brand, url | productUrl, salePrice | price, originalPrice,
    discount, image | images, category, id
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from promofinder.core.exceptions import ProviderError
from promofinder.providers.base import (
    BaseScraperProvider,
    CandidateFields,
    ProviderQuery,
    RawCandidate,
)


ScrapeFunc = Callable[[ProviderQuery], Awaitable[List[Dict[str, Any]]]]


class ScraperFeedProvider(BaseScraperProvider):
    """Provider backed by an async scraping callable.

    Scraped markdowns are noisier than API data, so the authenticity cap
    defaults to 70% instead of the global 90%.
    """

    endpoint = "scrape"

    def __init__(
        self,
        provider_id: str,
        scrape: ScrapeFunc,
        provider_name: Optional[str] = None,
        max_discount: int = 70,
        cost_per_request: float = 0.0,
    ):
        """Initialize scraper feed provider.

        Args:
            provider_id: Identifier used for caching, quotas and diagnostics
            scrape: Async callable that runs the scraper for a query
            provider_name: Human-readable name
            max_discount: Provider-specific authenticity cap
            cost_per_request: Estimated cost of one scrape run (proxies, etc.)
        """
        self.provider_id = provider_id
        self.provider_name = provider_name or provider_id
        self.max_discount = max_discount
        self.cost_per_request = cost_per_request
        super().__init__()
        self._scrape = scrape

    async def search(self, query: ProviderQuery) -> List[RawCandidate]:
        """Run the scraper and wrap its records.

        Raises:
            ProviderError: If the scraper fails or returns a non-list
        """
        try:
            records = await self._scrape(query)
        except ProviderError:
            raise
        except asyncio.TimeoutError as e:
            raise ProviderError(
                self.provider_id, "Scraper timed out", status_code=408
            ) from e
        except Exception as e:
            self.logger.error("scraper_failed", error=str(e), exc_info=True)
            raise ProviderError(self.provider_id, f"Scraper failed: {e}") from e

        if not isinstance(records, list):
            raise ProviderError(self.provider_id, "Scraper returned a non-list result")

        candidates = [
            RawCandidate(provider=self.provider_id, payload=record)
            for record in records[: query.limit]
            if isinstance(record, dict)
        ]

        self.logger.info("scraper_feed_complete", returned_items=len(candidates))
        return candidates

    def extract_fields(self, payload: Dict[str, Any]) -> Optional[CandidateFields]:
        """Map a scraper record onto CandidateFields."""
        name = payload.get("name") or payload.get("title")
        if not name:
            return None

        images = payload.get("images") or []
        if isinstance(images, str):
            images = [images]
        if not images and payload.get("image"):
            images = [payload["image"]]

        record_id = payload.get("id")

        return CandidateFields(
            name=name,
            brand=payload.get("brand"),
            product_url=payload.get("url") or payload.get("productUrl"),
            sale_price=payload.get("salePrice", payload.get("price")),
            original_price=payload.get("originalPrice"),
            discount=payload.get("discount"),
            category_hint=payload.get("category") or name,
            images=[i for i in images if isinstance(i, str) and i],
            external_id=str(record_id) if record_id else None,
            currency=payload.get("currency"),
            description=payload.get("description"),
        )
