"""Rainforest API adapter.

Fetches Amazon search results through the Rainforest API.
Documentation: https://docs.trajectdata.com/rainforestapi/product-data-api/overview
"""

from typing import Any, Dict, List, Optional

import httpx

from promofinder.core.exceptions import ProviderError
from promofinder.providers.base import (
    BaseAPIProvider,
    CandidateFields,
    ProviderQuery,
    RawCandidate,
)


class RainforestProvider(BaseAPIProvider):
    """Rainforest (Amazon) search provider.

    Requires RAINFOREST_API_KEY in environment variables. The key is sent as
    a query parameter rather than a header.
    """

    provider_id = "rainforest"
    provider_name = "Rainforest API"
    endpoint = "request"
    cost_per_request = 0.0125

    # API Configuration
    base_url = "https://api.rainforestapi.com"
    api_key_setting = "RAINFOREST_API_KEY"

    SORT_MAP = {
        "relevance": "relevanceblender",
        "price": "price_low_to_high",
        "price_desc": "price_high_to_low",
        "rating": "average_review",
        "newest": "most_recent",
    }

    def __init__(
        self,
        api_key: str,
        timeout: float = 5.0,
        amazon_domain: str = "amazon.com",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Rainforest provider."""
        super().__init__(api_key=api_key, timeout=timeout, transport=transport)
        self.amazon_domain = amazon_domain

    async def search(self, query: ProviderQuery) -> List[RawCandidate]:
        """Search Amazon via Rainforest.

        Rainforest has no page-size parameter, so results are truncated to
        query.limit after the call.

        Raises:
            ProviderError: If the API call fails or request_info reports failure
        """
        params = {
            "api_key": self.api_key,
            "type": "search",
            "amazon_domain": self.amazon_domain,
            "search_term": query.search_terms,
            "page": query.page,
            "output": "json",
            "sort_by": self.SORT_MAP.get(query.sort_by) if query.sort_by else None,
            "min_price": query.min_price,
            "max_price": query.max_price,
        }

        self.logger.debug("rainforest_search", search_term=params["search_term"])

        data = await self._get_json("/request", params)

        request_info = data.get("request_info") or {}
        if request_info.get("success") is False:
            raise ProviderError(
                self.provider_id,
                request_info.get("message") or "request_info.success is false",
            )

        items = data.get("search_results")
        if items is None:
            items = []
        if not isinstance(items, list):
            raise ProviderError(self.provider_id, "search_results is not a list")

        candidates = [
            RawCandidate(provider=self.provider_id, payload=item)
            for item in items[: query.limit]
            if isinstance(item, dict)
        ]

        self.logger.info(
            "rainforest_search_complete",
            search_term=params["search_term"],
            returned_items=len(candidates),
            credits_remaining=request_info.get("credits_remaining"),
        )

        return candidates

    def extract_fields(self, payload: Dict[str, Any]) -> Optional[CandidateFields]:
        """Map a Rainforest search result onto CandidateFields."""
        title = payload.get("title")
        if not title:
            return None

        sale = self._extract_sale_price(payload)
        original = self._extract_original_price(payload)

        images = payload.get("images") or []
        if not images and payload.get("image"):
            images = [payload["image"]]

        categories = payload.get("categories") or []
        category_hint = " ".join(
            c.get("name", "") for c in categories if isinstance(c, dict)
        ) or title

        price = payload.get("price") or {}
        bullets = payload.get("feature_bullets") or []

        return CandidateFields(
            name=title,
            brand=payload.get("brand"),
            product_url=payload.get("link"),
            sale_price=sale,
            original_price=original,
            category_hint=category_hint,
            images=[i for i in images if isinstance(i, str) and i],
            external_id=payload.get("asin"),
            currency=price.get("currency") if isinstance(price, dict) else None,
            description=" ".join(bullets) if bullets else None,
            rating=payload.get("rating"),
            review_count=payload.get("ratings_total"),
            availability=self._extract_availability(payload),
            attributes={
                a["name"]: a.get("value")
                for a in payload.get("attributes") or []
                if isinstance(a, dict) and a.get("name")
            },
        )

    @staticmethod
    def _extract_availability(payload: Dict[str, Any]) -> Optional[bool]:
        """Stock status when Rainforest reports one, else None."""
        availability = payload.get("availability")
        if isinstance(availability, bool):
            return availability
        if isinstance(availability, dict):
            raw = str(availability.get("raw") or availability.get("type") or "").lower()
            if "out of stock" in raw or "unavailable" in raw:
                return False
            if "in stock" in raw or raw == "in_stock":
                return True
        return None

    @staticmethod
    def _extract_sale_price(payload: Dict[str, Any]) -> Optional[Any]:
        price = payload.get("price")
        if isinstance(price, dict) and price.get("value"):
            return price["value"]

        for entry in payload.get("prices") or []:
            if isinstance(entry, dict) and entry.get("is_primary"):
                return entry.get("value")

        return None

    @staticmethod
    def _extract_original_price(payload: Dict[str, Any]) -> Optional[Any]:
        """Find the list ("was") price. Never estimated from the sale price."""
        upper = payload.get("price_upper")
        if isinstance(upper, dict) and upper.get("value"):
            return upper["value"]

        values = [
            entry["value"]
            for entry in payload.get("prices") or []
            if isinstance(entry, dict)
            and not entry.get("is_primary")
            and isinstance(entry.get("value"), (int, float))
        ]
        if values:
            return max(values)

        return None
