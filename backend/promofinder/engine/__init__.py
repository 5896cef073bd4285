"""Deal aggregation engine.

Normalization, authenticity validation, quotas, caching, retry and the
Aggregator that ties them together.
"""

from .aggregator import Aggregator, EngineContext, deduplicate, sort_products
from .cache import MemoryCacheTier, ProductCache, RedisCacheTier, build_cache_key
from .normalizer import CategoryClassifier, Normalizer, PriceNormalizer
from .queries import DEAL_QUERIES, BrandQuery, CategoryQuery, DealQuery, DealType
from .rate_limiter import DailyQuotaLimiter, QuotaState, RateLimitInfo
from .retry import RetryExecutor
from .usage import ApiLogEntry, UsageLogger
from .validator import AuthenticityValidator, ValidationOutcome

__all__ = [
    # Aggregation
    "Aggregator",
    "EngineContext",
    "deduplicate",
    "sort_products",
    # Cache
    "MemoryCacheTier",
    "ProductCache",
    "RedisCacheTier",
    "build_cache_key",
    # Normalization and validation
    "CategoryClassifier",
    "Normalizer",
    "PriceNormalizer",
    "AuthenticityValidator",
    "ValidationOutcome",
    # Queries
    "DEAL_QUERIES",
    "BrandQuery",
    "CategoryQuery",
    "DealQuery",
    "DealType",
    # Quotas, retry, usage
    "DailyQuotaLimiter",
    "QuotaState",
    "RateLimitInfo",
    "RetryExecutor",
    "ApiLogEntry",
    "UsageLogger",
]
