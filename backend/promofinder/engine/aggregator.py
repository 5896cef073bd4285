"""Deal aggregation across providers.

The Aggregator fans a query out to every selected provider, pushes each
provider's answer through cache, quota, retry, normalization and
validation, and merges the survivors into one deduplicated, ranked
AggregatedResult. Provider failures are recorded in the result, never
raised, so one broken provider cannot sink an aggregation.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

import structlog

from promofinder.config import Settings
from promofinder.core.exceptions import (
    ConfigurationError,
    NoResultsError,
    ProviderError,
    RateLimitError,
)
from promofinder.engine.cache import ProductCache, RedisCacheTier
from promofinder.engine.normalizer import Normalizer, normalize_url
from promofinder.engine.queries import (
    DEAL_SEARCH_TERMS,
    BrandQuery,
    CategoryQuery,
    DealQuery,
    category_search_terms,
)
from promofinder.engine.rate_limiter import DailyQuotaLimiter
from promofinder.engine.retry import RetryExecutor
from promofinder.engine.usage import ApiLogEntry, UsageLogger
from promofinder.engine.validator import AuthenticityValidator
from promofinder.providers.base import BaseProvider, ProviderQuery, RawCandidate
from promofinder.providers.registry import ProviderRegistry
from promofinder.schemas.aggregate import AggregatedResult, ProviderFailure, SourceDiagnostic
from promofinder.schemas.product import Product

logger = structlog.get_logger(__name__)


SORT_OPTIONS = ("discount", "price", "relevance", "confidence", "rating", "newest")


@dataclass
class EngineContext:
    """Collaborators and budgets shared by every aggregation.

    Build one with from_settings() in production; tests construct it
    directly with the doubles they need.
    """

    cache: ProductCache = field(default_factory=ProductCache)
    rate_limiter: DailyQuotaLimiter = field(default_factory=DailyQuotaLimiter)
    retry: RetryExecutor = field(default_factory=RetryExecutor)
    normalizer: Normalizer = field(default_factory=Normalizer)
    validator: AuthenticityValidator = field(default_factory=AuthenticityValidator)
    usage: UsageLogger = field(default_factory=UsageLogger)
    provider_timeout: float = 20.0
    aggregation_timeout: float = 45.0
    max_concurrency: int = 4

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineContext":
        network = RedisCacheTier(settings.REDIS_URL) if settings.REDIS_ENABLED else None
        return cls(
            cache=ProductCache(network=network, ttl_seconds=settings.API_CACHE_TTL),
            rate_limiter=DailyQuotaLimiter(
                daily_limits=settings.get_daily_limits(),
                default_limit=settings.API_RATE_LIMIT,
            ),
            retry=RetryExecutor(
                max_attempts=settings.RETRY_MAX_ATTEMPTS,
                initial_delay=settings.RETRY_INITIAL_DELAY,
                max_delay=settings.RETRY_MAX_DELAY,
            ),
            provider_timeout=settings.PROVIDER_TIMEOUT,
            aggregation_timeout=settings.AGGREGATION_TIMEOUT,
            max_concurrency=settings.MAX_CONCURRENT_PROVIDERS,
        )

    async def close(self) -> None:
        await self.cache.close()


@dataclass
class _ProviderOutcome:
    provider: str
    products: List[Product] = field(default_factory=list)
    latency_ms: int = 0
    cached: bool = False
    failure: Optional[ProviderFailure] = None


def dedup_key(product: Product) -> Tuple[Hashable, ...]:
    """Identity of a product for deduplication.

    external_id is provider-scoped, so it is paired with the source. Without
    one, the normalized URL identifies the product, then name plus price.
    """
    if product.external_id:
        return ("external_id", product.source, product.external_id)
    if product.product_url:
        return ("url", normalize_url(product.product_url).lower().rstrip("/"))
    return ("name_price", product.name.strip().lower(), product.sale_price)


def _preferred(current: Product, challenger: Product) -> Product:
    """Higher confidence wins; on a tie the fresher record wins."""
    current_score = current.confidence_score or 0
    challenger_score = challenger.confidence_score or 0
    if challenger_score != current_score:
        return challenger if challenger_score > current_score else current
    return challenger if challenger.fetched_at > current.fetched_at else current


def deduplicate(products: Sequence[Product]) -> List[Product]:
    """Collapse products sharing a dedup key, keeping first-seen order."""
    kept: Dict[Tuple[Hashable, ...], Product] = {}
    for product in products:
        key = dedup_key(product)
        existing = kept.get(key)
        kept[key] = product if existing is None else _preferred(existing, product)
    return list(kept.values())


def sort_products(products: Sequence[Product], sort_by: str = "discount") -> List[Product]:
    """Rank products; the product URL breaks remaining ties."""
    if sort_by == "discount":
        key = lambda p: (-p.discount_percentage, -(p.confidence_score or 0), p.product_url)
    elif sort_by == "price":
        key = lambda p: (p.sale_price, -p.discount_percentage, p.product_url)
    elif sort_by in ("relevance", "confidence"):
        key = lambda p: (-(p.confidence_score or 0), -p.discount_percentage, p.product_url)
    elif sort_by == "rating":
        key = lambda p: (-(p.rating or 0.0), -p.discount_percentage, p.product_url)
    elif sort_by == "newest":
        key = lambda p: (-p.fetched_at.timestamp(), p.product_url)
    else:
        raise ValueError(f"Unknown sort option '{sort_by}' (expected one of {', '.join(SORT_OPTIONS)})")
    return sorted(products, key=key)


class Aggregator:
    """Queries providers concurrently and merges their deals."""

    def __init__(self, registry: ProviderRegistry, context: Optional[EngineContext] = None):
        """Initialize aggregator.

        Args:
            registry: Providers available for aggregation
            context: Shared collaborators (defaults to in-memory ones)
        """
        self.registry = registry
        self.context = context or EngineContext()
        self.logger = logger.bind(service="aggregator")

    async def aggregate(
        self,
        query: ProviderQuery,
        providers: Optional[Sequence[str]] = None,
        sort_by: str = "discount",
    ) -> AggregatedResult:
        """Run a query across providers.

        Args:
            query: Provider-agnostic query
            providers: Provider ids to use (all registered when None)
            sort_by: One of SORT_OPTIONS

        Returns:
            AggregatedResult with one source entry per provider attempted
        """
        if sort_by not in SORT_OPTIONS:
            raise ValueError(f"Unknown sort option '{sort_by}' (expected one of {', '.join(SORT_OPTIONS)})")

        provider_ids = list(providers) if providers is not None else self.registry.provider_ids()
        outcomes: Dict[str, _ProviderOutcome] = {}
        selected: List[BaseProvider] = []

        for provider_id in dict.fromkeys(provider_ids):
            try:
                selected.append(self.registry.get(provider_id))
            except ConfigurationError as e:
                outcomes[provider_id] = _ProviderOutcome(
                    provider=provider_id,
                    failure=ProviderFailure(
                        provider=provider_id, error=e.message, error_type="configuration"
                    ),
                )

        self.logger.info(
            "aggregation_started",
            query=query.search_terms,
            providers=[p.provider_id for p in selected],
        )

        outcomes.update(await self._run_all(selected, query))

        products = sort_products(
            deduplicate([p for o in outcomes.values() for p in o.products]),
            sort_by,
        )

        ordered = [outcomes[pid] for pid in dict.fromkeys(provider_ids)]
        result = AggregatedResult(
            products=products,
            sources=[
                SourceDiagnostic(
                    provider=o.provider,
                    count=len(o.products),
                    latency_ms=o.latency_ms,
                    cached=o.cached,
                )
                for o in ordered
            ],
            errors=[o.failure for o in ordered if o.failure is not None],
        )

        self.logger.info(
            "aggregation_complete",
            query=query.search_terms,
            total_results=result.total_results,
            succeeded=result.succeeded_providers,
            failed=result.failed_providers,
        )

        return result

    async def _run_all(
        self,
        providers: List[BaseProvider],
        query: ProviderQuery,
    ) -> Dict[str, _ProviderOutcome]:
        """Fan out under the concurrency bound and the overall deadline."""
        if not providers:
            return {}

        semaphore = asyncio.Semaphore(self.context.max_concurrency)
        tasks = {
            asyncio.create_task(self._run_provider(provider, query, semaphore)): provider.provider_id
            for provider in providers
        }

        try:
            done, pending = await asyncio.wait(tasks, timeout=self.context.aggregation_timeout)
        except asyncio.CancelledError:
            # Caller gave up on the aggregation; stop every provider with it
            await self._cancel_tasks(tasks)
            self.logger.warning("aggregation_cancelled", providers=list(tasks.values()))
            raise

        await self._cancel_tasks(pending)

        outcomes: Dict[str, _ProviderOutcome] = {}
        for task, provider_id in tasks.items():
            if task in pending:
                self.logger.warning(
                    "provider_cancelled_at_deadline",
                    provider=provider_id,
                    timeout=self.context.aggregation_timeout,
                )
                outcomes[provider_id] = _ProviderOutcome(
                    provider=provider_id,
                    latency_ms=int(self.context.aggregation_timeout * 1000),
                    failure=ProviderFailure(
                        provider=provider_id,
                        error=f"Aggregation deadline of {self.context.aggregation_timeout}s reached",
                        error_type="timeout",
                    ),
                )
                continue

            exc = task.exception()
            if exc is not None:
                self.logger.error(
                    "provider_task_crashed",
                    provider=provider_id,
                    error=str(exc),
                    exc_info=exc,
                )
                outcomes[provider_id] = _ProviderOutcome(
                    provider=provider_id,
                    failure=ProviderFailure(
                        provider=provider_id, error=str(exc), error_type=type(exc).__name__
                    ),
                )
                continue

            outcomes[provider_id] = task.result()

        return outcomes

    @staticmethod
    async def _cancel_tasks(tasks) -> None:
        unfinished = [task for task in tasks if not task.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)

    async def _run_provider(
        self,
        provider: BaseProvider,
        query: ProviderQuery,
        semaphore: asyncio.Semaphore,
    ) -> _ProviderOutcome:
        """One provider's pipeline; provider failures become a recorded failure."""
        provider_id = provider.provider_id
        outcome = _ProviderOutcome(provider=provider_id)

        async with semaphore:
            start = time.monotonic()
            try:
                outcome.products, outcome.cached = await asyncio.wait_for(
                    self._fetch(provider, query),
                    timeout=self.context.provider_timeout,
                )

            except asyncio.TimeoutError:
                self.logger.warning(
                    "provider_timeout",
                    provider=provider_id,
                    timeout=self.context.provider_timeout,
                )
                outcome.failure = ProviderFailure(
                    provider=provider_id,
                    error=f"Provider timed out after {self.context.provider_timeout}s",
                    error_type="timeout",
                )

            except RateLimitError as e:
                outcome.failure = ProviderFailure(
                    provider=provider_id,
                    error=e.message,
                    error_type="rate_limited",
                    retry_after_seconds=int(e.retry_after.total_seconds()),
                )

            except NoResultsError as e:
                self.logger.info("provider_no_results", provider=provider_id, candidates=e.candidates)
                outcome.failure = ProviderFailure(
                    provider=provider_id, error=e.message, error_type="no_results"
                )

            except ProviderError as e:
                self.logger.error(
                    "provider_failed",
                    provider=provider_id,
                    status_code=e.status_code,
                    error=str(e),
                )
                outcome.failure = ProviderFailure(
                    provider=provider_id, error=e.message, error_type="provider_error"
                )

            outcome.latency_ms = int((time.monotonic() - start) * 1000)

        return outcome

    async def _fetch(self, provider: BaseProvider, query: ProviderQuery) -> Tuple[List[Product], bool]:
        """Cache lookup, then quota, retried search, normalize, validate, cache write."""
        ctx = self.context
        params = query.cache_params()

        cached = await ctx.cache.get(provider.provider_id, params)
        if cached is not None:
            return cached, True

        await ctx.rate_limiter.check_and_reserve(provider.provider_id)

        candidates = await ctx.retry.execute(self._logged_search, provider, query)

        products = []
        for product in ctx.normalizer.normalize_many(candidates, provider):
            scored = ctx.validator.apply(product, max_discount=provider.max_discount)
            if scored is not None:
                products.append(scored)

        self.logger.debug(
            "provider_products_validated",
            provider=provider.provider_id,
            candidates=len(candidates),
            accepted=len(products),
        )

        if not products:
            raise NoResultsError(provider.provider_id, len(candidates))

        await ctx.cache.set(provider.provider_id, params, products)
        return products, False

    async def _logged_search(self, provider: BaseProvider, query: ProviderQuery) -> List[RawCandidate]:
        """One upstream attempt, recorded in the usage log."""
        start = time.monotonic()
        try:
            candidates = await provider.search(query)
        except ProviderError as e:
            self._record_call(provider, query, start, status=e.status_code, error=str(e))
            raise

        self._record_call(provider, query, start, status=200)
        return candidates

    def _record_call(
        self,
        provider: BaseProvider,
        query: ProviderQuery,
        start: float,
        status: Optional[int],
        error: Optional[str] = None,
    ) -> None:
        self.context.usage.record(
            ApiLogEntry(
                provider=provider.provider_id,
                endpoint=provider.endpoint,
                request_params=query.cache_params(),
                response_status=status,
                response_time_ms=int((time.monotonic() - start) * 1000),
                estimated_cost=provider.cost_per_request,
                success=error is None,
                error_message=error,
            )
        )

    # ------------------------------------------------------------------
    # Preset searches
    # ------------------------------------------------------------------

    async def search_by_brand(
        self,
        brand_query: BrandQuery,
        providers: Optional[Sequence[str]] = None,
    ) -> AggregatedResult:
        """All deals for a brand, filtered by category and minimum discount."""
        query = ProviderQuery(
            query=" ".join(brand_query.keywords),
            brand=brand_query.brand,
            max_price=brand_query.max_price,
            limit=brand_query.limit,
        )
        result = await self.aggregate(query, providers=providers)

        products = [
            p for p in result.products
            if (not brand_query.categories or p.category in brand_query.categories)
            and (brand_query.min_discount is None or p.discount_percentage >= brand_query.min_discount)
        ]
        return result.model_copy(update={"products": products})

    async def search_by_category(
        self,
        category_query: CategoryQuery,
        providers: Optional[Sequence[str]] = None,
    ) -> AggregatedResult:
        """Deals classified into one category."""
        terms = category_search_terms(category_query.category)
        if category_query.brands:
            terms = f"{terms} {' OR '.join(category_query.brands)}"

        query = ProviderQuery(
            query=terms,
            category=category_query.category,
            max_price=category_query.max_price,
            limit=category_query.limit,
        )
        result = await self.aggregate(query, providers=providers, sort_by=category_query.sort_by)

        products = [
            p for p in result.products
            if p.category == category_query.category
            and (category_query.min_discount is None or p.discount_percentage >= category_query.min_discount)
        ]
        return result.model_copy(update={"products": products})

    async def search_deals(
        self,
        deal_query: DealQuery,
        providers: Optional[Sequence[str]] = None,
    ) -> AggregatedResult:
        """Deals above a minimum discount, ranked by discount."""
        terms = DEAL_SEARCH_TERMS
        if deal_query.brands:
            terms = f"{' OR '.join(deal_query.brands)} {terms}"
        if deal_query.categories:
            terms = f"{terms} {' OR '.join(category_search_terms(c) for c in deal_query.categories)}"

        query = ProviderQuery(query=terms, max_price=deal_query.max_price, limit=deal_query.limit)
        result = await self.aggregate(query, providers=providers, sort_by="discount")

        products = [
            p for p in result.products
            if p.discount_percentage >= deal_query.min_discount
            and (not deal_query.categories or p.category in deal_query.categories)
        ]
        return result.model_copy(update={"products": products})

    async def fetch_multiple_brands(
        self,
        brands: Sequence[str],
        min_discount: Optional[int] = None,
        max_price: Optional[Decimal] = None,
        limit: Optional[int] = None,
        providers: Optional[Sequence[str]] = None,
        delay: float = 0.5,
    ) -> AggregatedResult:
        """Run search_by_brand for each brand in turn and merge the results.

        Args:
            brands: Brand names
            min_discount: Minimum discount filter per brand
            max_price: Upper price bound sent upstream
            limit: Cap on merged products
            providers: Provider ids to use
            delay: Pause between brands, in seconds
        """
        products: List[Product] = []
        sources: List[SourceDiagnostic] = []
        errors: List[ProviderFailure] = []

        for index, brand in enumerate(brands):
            if index and delay > 0:
                await asyncio.sleep(delay)

            result = await self.search_by_brand(
                BrandQuery(brand=brand, min_discount=min_discount, max_price=max_price),
                providers=providers,
            )
            products.extend(result.products)
            sources.extend(result.sources)
            errors.extend(result.errors)

        merged = sort_products(deduplicate(products), "discount")
        if limit is not None:
            merged = merged[:limit]

        self.logger.info("multiple_brands_fetched", brands=len(brands), total_results=len(merged))
        return AggregatedResult(products=merged, sources=sources, errors=errors)

    async def get_usage_stats(self, provider: Optional[str] = None, days: int = 30) -> Dict[str, Any]:
        """API usage, cache statistics and quota snapshots in one report."""
        return {
            "usage": self.context.usage.get_usage_stats(provider=provider, days=days),
            "cache": await self.context.cache.get_stats(),
            "rate_limits": [asdict(info) for info in self.context.rate_limiter.get_all_info()],
        }

    async def close(self) -> None:
        await self.registry.close()
        await self.context.close()
