"""Aggregation result schemas."""

from typing import List, Optional

from pydantic import BaseModel, Field

from promofinder.schemas.product import Product


# Discount bounds applied to exported/public listings
PUBLIC_MIN_DISCOUNT = 10
PUBLIC_MAX_DISCOUNT = 70


class SourceDiagnostic(BaseModel):
    """Per-provider outcome of one aggregation call."""

    provider: str
    count: int = 0
    latency_ms: int = 0
    cached: bool = False


class ProviderFailure(BaseModel):
    """A provider-level failure recorded instead of raised."""

    provider: str
    error: str
    error_type: str
    retry_after_seconds: Optional[int] = None


class AggregatedResult(BaseModel):
    """Merged, deduplicated and ranked output of an aggregation.

    ``sources`` holds one entry per provider attempted, including providers
    that failed, so diagnostics never lose a provider.
    """

    products: List[Product] = Field(default_factory=list)
    sources: List[SourceDiagnostic] = Field(default_factory=list)
    errors: List[ProviderFailure] = Field(default_factory=list)

    @property
    def total_results(self) -> int:
        return len(self.products)

    @property
    def failed_providers(self) -> List[str]:
        return [e.provider for e in self.errors]

    @property
    def succeeded_providers(self) -> List[str]:
        failed = set(self.failed_providers)
        return [s.provider for s in self.sources if s.provider not in failed]

    def public_products(self) -> List[Product]:
        """Products eligible for public listings (tighter discount bounds)."""
        return [
            p for p in self.products
            if PUBLIC_MIN_DISCOUNT <= p.discount_percentage <= PUBLIC_MAX_DISCOUNT
        ]
