"""Provider layer for querying upstream deal sources.

This package provides:
- Base provider classes for building API and scraper adapters
- Query and raw-candidate data structures
- A static registry of provider instances
"""

from .base import (
    BaseProvider,
    BaseAPIProvider,
    BaseScraperProvider,
    CandidateFields,
    ProviderQuery,
    RawCandidate,
)
from .registry import ProviderRegistry

__all__ = [
    # Base classes
    "BaseProvider",
    "BaseAPIProvider",
    "BaseScraperProvider",
    # Data structures
    "CandidateFields",
    "ProviderQuery",
    "RawCandidate",
    # Registry
    "ProviderRegistry",
]
