"""RapidAPI Real-Time Product Search adapter.

Queries Google Shopping offers through the Real-Time Product Search API.
Documentation: https://rapidapi.com/letscrape-6bRBa3QguO5/api/real-time-product-search
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


class RapidApiProvider(BaseAPIProvider):
    """Real-Time Product Search provider.

    Requires RAPIDAPI_KEY in environment variables.
    """

    provider_id = "rapidapi"
    provider_name = "RapidAPI Product Search"
    endpoint = "search"
    cost_per_request = 0.01

    # API Configuration
    base_url = "https://real-time-product-search.p.rapidapi.com"
    API_HOST = "real-time-product-search.p.rapidapi.com"
    api_key_setting = "RAPIDAPI_KEY"

    # Generic sort names -> RapidAPI sort_by values
    SORT_MAP = {
        "relevance": "RELEVANCE",
        "price": "LOWEST_PRICE",
        "price_desc": "HIGHEST_PRICE",
        "rating": "REVIEWS",
    }

    def __init__(
        self,
        api_key: str,
        timeout: float = 5.0,
        country: str = "us",
        language: str = "en",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize RapidAPI provider."""
        super().__init__(api_key=api_key, timeout=timeout, transport=transport)
        self.country = country
        self.language = language

    def _default_headers(self) -> Dict[str, str]:
        return {
            "X-RapidAPI-Key": self.api_key,
            "X-RapidAPI-Host": self.API_HOST,
            "Content-Type": "application/json",
        }

    async def search(self, query: ProviderQuery) -> List[RawCandidate]:
        """Search RapidAPI for discounted products.

        Args:
            query: Provider-agnostic query

        Returns:
            List of RawCandidate, one per returned product

        Raises:
            ProviderError: If the API call fails or reports an error status
        """
        params = {
            "q": query.search_terms,
            "country": self.country,
            "language": self.language,
            "limit": query.limit,
            "page": query.page,
            "sort_by": self.SORT_MAP.get(query.sort_by or "relevance", "RELEVANCE"),
            "min_price": query.min_price,
            "max_price": query.max_price,
        }

        self.logger.debug("rapidapi_search", q=params["q"], limit=query.limit)

        data = await self._get_json("/search", params)

        if data.get("status") not in (None, "OK"):
            raise ProviderError(
                self.provider_id,
                f"API returned status {data.get('status')}",
            )

        body = data.get("data") or {}
        items = body.get("products") if isinstance(body, dict) else None
        if not isinstance(items, list):
            raise ProviderError(self.provider_id, "Response is missing data.products")

        candidates = [
            RawCandidate(provider=self.provider_id, payload=item)
            for item in items
            if isinstance(item, dict)
        ]

        self.logger.info(
            "rapidapi_search_complete",
            q=params["q"],
            returned_items=len(candidates),
            request_id=data.get("request_id"),
        )

        return candidates

    def extract_fields(self, payload: Dict[str, Any]) -> Optional[CandidateFields]:
        """Map a RapidAPI product onto CandidateFields."""
        title = payload.get("product_title")
        if not title:
            return None

        photos = payload.get("product_photos") or []
        if not photos and payload.get("product_photo"):
            photos = [payload["product_photo"]]

        availability = payload.get("product_availability")

        return CandidateFields(
            name=title,
            brand=payload.get("brand"),
            product_url=payload.get("product_url"),
            sale_price=payload.get("product_price"),
            original_price=payload.get("product_original_price"),
            discount=payload.get("product_discount"),
            category_hint=payload.get("category"),
            images=[p for p in photos if isinstance(p, str) and p],
            external_id=str(payload["product_id"]) if payload.get("product_id") else None,
            currency=payload.get("currency"),
            description=payload.get("product_description"),
            rating=payload.get("product_rating"),
            review_count=payload.get("product_num_reviews"),
            availability=(availability == "InStock") if availability else None,
            attributes=payload.get("product_attributes") or {},
        )
