"""Canonical product schema shared by every provider."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProductCategory(str, Enum):
    """Fashion categories the catalog is organized by."""

    SHOES = "shoes"
    CLOTHING = "clothing"
    ACCESSORIES = "accessories"
    BAGS = "bags"
    JEWELRY = "jewelry"
    WATCHES = "watches"
    SUNGLASSES = "sunglasses"
    OTHER = "other"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Product(BaseModel):
    """Canonical, normalized deal record.

    Products are immutable: the validator scores a product by returning a
    copy with ``confidence_score`` set, and the aggregator supersedes a
    product by keeping a different instance, never by editing one.
    """

    model_config = ConfigDict(frozen=True)

    # Identity
    external_id: Optional[str] = None  # Provider-scoped ID
    product_url: str

    # Commercial
    name: str
    brand: str
    category: ProductCategory = ProductCategory.OTHER
    original_price: Decimal
    sale_price: Decimal
    discount_percentage: int
    currency: str = "USD"

    # Media
    images: List[str] = Field(default_factory=list)

    # Provenance
    source: str
    confidence_score: Optional[int] = Field(default=None, ge=70, le=99)
    fetched_at: datetime = Field(default_factory=utc_now)

    # Supplementary provider data
    description: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    availability: Optional[bool] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_price_invariant(self) -> "Product":
        """Enforce original_price > sale_price > 0."""
        if self.sale_price <= 0:
            raise ValueError("sale_price must be positive")
        if self.original_price <= self.sale_price:
            raise ValueError("original_price must be greater than sale_price")
        return self

    @property
    def image_url(self) -> Optional[str]:
        """Primary image, if any."""
        return self.images[0] if self.images else None

    @property
    def is_scored(self) -> bool:
        return self.confidence_score is not None

    @property
    def price_ratio(self) -> Decimal:
        """original_price / sale_price, used by the markup fingerprint check."""
        return self.original_price / self.sale_price
