"""Pydantic schemas for the aggregation engine.

All canonical records are defined here for easy import.
"""

from promofinder.schemas.product import Product, ProductCategory
from promofinder.schemas.aggregate import (
    AggregatedResult,
    ProviderFailure,
    SourceDiagnostic,
    PUBLIC_MAX_DISCOUNT,
    PUBLIC_MIN_DISCOUNT,
)

__all__ = [
    # Product
    "Product",
    "ProductCategory",
    # Aggregation
    "AggregatedResult",
    "ProviderFailure",
    "SourceDiagnostic",
    "PUBLIC_MAX_DISCOUNT",
    "PUBLIC_MIN_DISCOUNT",
]
