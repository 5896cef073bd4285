"""Tests for the Aggregator.

Tests cover:
- End-to-end aggregation across feed providers
- Failure isolation (errors, quotas, timeouts, empty results)
- Cache and retry integration, usage logging
- Deduplication and sorting
- Preset searches (brand, category, deals, multiple brands)
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from promofinder.config import Settings
from promofinder.core.exceptions import ProviderError
from promofinder.engine.aggregator import (
    Aggregator,
    EngineContext,
    deduplicate,
    sort_products,
)
from promofinder.engine.queries import DEAL_QUERIES, BrandQuery, CategoryQuery, DealQuery, DealType
from promofinder.engine.rate_limiter import DailyQuotaLimiter
from promofinder.providers.adapters import ScraperFeedProvider
from promofinder.providers.base import ProviderQuery
from promofinder.providers.registry import ProviderRegistry
from promofinder.schemas.product import Product, ProductCategory

from doubles import feed_provider, make_record


def flaky_provider(provider_id, failures, records):
    """Feed provider failing with a 503 for the first `failures` calls."""

    async def scrape(query):
        scrape.calls += 1
        if scrape.calls <= failures:
            raise ProviderError(provider_id, "upstream unavailable", status_code=503)
        return list(records)

    scrape.calls = 0
    provider = ScraperFeedProvider(provider_id, scrape)
    provider.scrape = scrape
    return provider


def slow_provider(provider_id, delay, records):
    async def scrape(query):
        await asyncio.sleep(delay)
        return list(records)

    return ScraperFeedProvider(provider_id, scrape)


def product(url, discount=30, confidence=90, fetched_at=None, **overrides):
    original = Decimal("100")
    data = {
        "product_url": url,
        "name": "Nike Air Max 90",
        "brand": "Nike",
        "original_price": original,
        "sale_price": original - discount,
        "discount_percentage": discount,
        "source": "rapidapi",
        "confidence_score": confidence,
        "fetched_at": fetched_at or datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return Product(**data)


# ============================================================================
# END-TO-END
# ============================================================================

class TestAggregate:
    """Test full aggregation runs."""

    async def test_air_max_duplicate_keeps_higher_confidence(self, engine_context, query):
        """Test two listings of one product collapse to the better-documented one."""
        listing_a = make_record(sale=84, original=120)
        listing_b = make_record(sale=90, original=120, image=None)
        registry = ProviderRegistry([
            feed_provider("nike_scraper", records=[listing_a]),
            feed_provider("outlet_scraper", records=[listing_b]),
        ])

        result = await Aggregator(registry, engine_context).aggregate(query)

        assert result.total_results == 1
        deal = result.products[0]
        assert deal.discount_percentage == 30
        assert deal.confidence_score == 99
        assert deal.source == "nike_scraper"
        assert deal.image_url == "https://img.example.com/airmax.jpg"
        assert [(s.provider, s.count, s.cached) for s in result.sources] == [
            ("nike_scraper", 1, False),
            ("outlet_scraper", 1, False),
        ]
        assert result.errors == []

    async def test_partial_failure_is_isolated(self, engine_context, query):
        """Test a failing provider is reported while the others still contribute."""
        registry = ProviderRegistry([
            feed_provider("good", records=[make_record()]),
            feed_provider("broken", error=RuntimeError("layout changed")),
        ])

        result = await Aggregator(registry, engine_context).aggregate(query)

        assert result.total_results == 1
        assert result.succeeded_providers == ["good"]
        assert result.failed_providers == ["broken"]
        assert result.errors[0].error_type == "provider_error"
        assert "layout changed" in result.errors[0].error
        assert [s.provider for s in result.sources] == ["good", "broken"]

    async def test_provider_subset(self, engine_context, query):
        """Test only the requested providers are queried."""
        skipped = feed_provider("skipped", records=[make_record()])
        registry = ProviderRegistry([feed_provider("used", records=[make_record()]), skipped])

        result = await Aggregator(registry, engine_context).aggregate(query, providers=["used"])

        assert [s.provider for s in result.sources] == ["used"]
        assert skipped.scrape.calls == 0

    async def test_unknown_provider_is_reported(self, engine_context, query):
        """Test unknown provider ids become configuration errors."""
        registry = ProviderRegistry([feed_provider("used", records=[make_record()])])

        result = await Aggregator(registry, engine_context).aggregate(query, providers=["used", "nope"])

        assert result.total_results == 1
        assert result.errors[0].provider == "nope"
        assert result.errors[0].error_type == "configuration"
        assert [s.provider for s in result.sources] == ["used", "nope"]

    async def test_no_providers(self, engine_context, query):
        """Test an empty registry yields an empty result."""
        result = await Aggregator(ProviderRegistry(), engine_context).aggregate(query)

        assert result.products == []
        assert result.sources == []

    async def test_unknown_sort_is_rejected(self, engine_context, query):
        """Test invalid sort options raise before any provider is called."""
        provider = feed_provider("used", records=[make_record()])

        with pytest.raises(ValueError):
            await Aggregator(ProviderRegistry([provider]), engine_context).aggregate(query, sort_by="hot")

        assert provider.scrape.calls == 0

    async def test_public_view_applies_tighter_bounds(self, engine_context, query):
        """Test public listings drop discounts above 70% that the provider cap allowed."""
        records = [
            make_record(url="https://shop.example.com/a", sale=20, original=100),
            make_record(url="https://shop.example.com/b", sale=60, original=100),
        ]
        registry = ProviderRegistry([feed_provider("api_like", records=records, max_discount=90)])

        result = await Aggregator(registry, engine_context).aggregate(query)

        assert [p.discount_percentage for p in result.products] == [80, 40]
        assert [p.discount_percentage for p in result.public_products()] == [40]

    async def test_provider_cap_rejects_steep_discounts(self, engine_context, query):
        """Test scraper feeds reject discounts above their 70% cap."""
        records = [
            make_record(url="https://shop.example.com/a", sale=20, original=100),
            make_record(url="https://shop.example.com/b", sale=60, original=100),
        ]
        registry = ProviderRegistry([feed_provider("scraper", records=records)])

        result = await Aggregator(registry, engine_context).aggregate(query)

        assert [p.discount_percentage for p in result.products] == [40]


# ============================================================================
# FAILURE MODES
# ============================================================================

class TestFailureModes:
    """Test quota, timeout and empty-result handling."""

    async def test_rate_limited_provider(self, engine_context, query):
        """Test an exhausted quota is reported with retry_after."""
        engine_context.rate_limiter = DailyQuotaLimiter(default_limit=1)
        provider = feed_provider("scraper", records=[make_record()])
        aggregator = Aggregator(ProviderRegistry([provider]), engine_context)

        await aggregator.aggregate(query)
        result = await aggregator.aggregate(ProviderQuery(query="air max", brand="Nike", page=2))

        assert provider.scrape.calls == 1
        failure = result.errors[0]
        assert failure.error_type == "rate_limited"
        assert 0 < failure.retry_after_seconds <= 86400

    async def test_no_valid_products(self, engine_context, query):
        """Test a provider whose candidates are all rejected counts as failed and is not cached."""
        provider = feed_provider("scraper", records=[make_record(original=None)])
        aggregator = Aggregator(ProviderRegistry([provider]), engine_context)

        first = await aggregator.aggregate(query)
        await aggregator.aggregate(query)

        assert first.errors[0].error_type == "no_results"
        assert first.sources[0].count == 0
        assert provider.scrape.calls == 2

    async def test_provider_timeout(self, engine_context, query):
        """Test a provider exceeding its own budget is cut off."""
        engine_context.provider_timeout = 0.05
        registry = ProviderRegistry([
            slow_provider("slow", 5, [make_record()]),
            feed_provider("fast", records=[make_record(url="https://shop.example.com/fast")]),
        ])

        result = await Aggregator(registry, engine_context).aggregate(query)

        assert result.failed_providers == ["slow"]
        assert result.errors[0].error_type == "timeout"
        assert [p.product_url for p in result.products] == ["https://shop.example.com/fast"]

    async def test_aggregation_deadline_cancels_pending(self, engine_context, query):
        """Test providers still running at the overall deadline are cancelled and reported."""
        engine_context.provider_timeout = 10
        engine_context.aggregation_timeout = 0.05
        registry = ProviderRegistry([
            slow_provider("slow", 5, [make_record()]),
            feed_provider("fast", records=[make_record(url="https://shop.example.com/fast")]),
        ])

        result = await Aggregator(registry, engine_context).aggregate(query)

        assert result.failed_providers == ["slow"]
        assert result.errors[0].error_type == "timeout"
        assert "deadline" in result.errors[0].error
        assert result.total_results == 1
        assert [s.provider for s in result.sources] == ["slow", "fast"]

    async def test_malformed_record_does_not_sink_provider(self, engine_context, query):
        """Test one unmappable record is dropped while the provider's valid records survive."""
        records = [
            make_record(),
            make_record(url="https://shop.example.com/other", image=None, images=5),
        ]
        registry = ProviderRegistry([feed_provider("scraper", records=records)])

        result = await Aggregator(registry, engine_context).aggregate(query)

        assert result.errors == []
        assert [p.product_url for p in result.products] == ["https://shop.example.com/nike-air-max-90"]

    async def test_caller_timeout_cancels_providers(self, engine_context, query):
        """Test cancelling the aggregation stops in-flight providers before they finish."""
        finished = []

        async def scrape(q):
            await asyncio.sleep(0.3)
            finished.append(True)
            return [make_record()]

        aggregator = Aggregator(ProviderRegistry([ScraperFeedProvider("slow", scrape)]), engine_context)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(aggregator.aggregate(query), timeout=0.05)
        await asyncio.sleep(0.4)

        assert finished == []
        assert engine_context.cache.memory.keys() == []
        assert engine_context.usage.entries("slow") == []

    async def test_concurrency_is_bounded(self, engine_context, query):
        """Test no more than max_concurrency providers run at once."""
        engine_context.max_concurrency = 2
        running = 0
        peak = 0

        def tracked(provider_id):
            async def scrape(q):
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1
                return [make_record(url=f"https://shop.example.com/{provider_id}")]

            return ScraperFeedProvider(provider_id, scrape)

        registry = ProviderRegistry([tracked(f"p{i}") for i in range(5)])
        result = await Aggregator(registry, engine_context).aggregate(query)

        assert result.total_results == 5
        assert peak == 2


# ============================================================================
# CACHE, RETRY AND USAGE
# ============================================================================

class TestCacheAndRetry:
    """Test cache hits, retries and usage records."""

    async def test_second_run_is_served_from_cache(self, engine_context, query):
        """Test a repeated query does not call the provider again."""
        provider = feed_provider("scraper", records=[make_record()])
        aggregator = Aggregator(ProviderRegistry([provider]), engine_context)

        first = await aggregator.aggregate(query)
        second = await aggregator.aggregate(query)

        assert provider.scrape.calls == 1
        assert first.sources[0].cached is False
        assert second.sources[0].cached is True
        assert second.products[0].model_dump() == first.products[0].model_dump()
        assert engine_context.rate_limiter.get_info("scraper").requests_today == 1

    async def test_cache_expiry_refetches(self, engine_context, clock, query):
        """Test an expired entry sends the query upstream again."""
        provider = feed_provider("scraper", records=[make_record()])
        aggregator = Aggregator(ProviderRegistry([provider]), engine_context)

        await aggregator.aggregate(query)
        clock.advance(21601)
        result = await aggregator.aggregate(query)

        assert provider.scrape.calls == 2
        assert result.sources[0].cached is False

    async def test_transient_failures_are_retried(self, engine_context, query):
        """Test 503s are retried and every attempt is logged."""
        provider = flaky_provider("scraper", failures=2, records=[make_record()])
        aggregator = Aggregator(ProviderRegistry([provider]), engine_context)

        result = await aggregator.aggregate(query)

        assert result.total_results == 1
        assert provider.scrape.calls == 3
        entries = engine_context.usage.entries("scraper")
        assert [e.success for e in entries] == [False, False, True]
        assert entries[0].response_status == 503
        assert entries[-1].endpoint == "scrape"

    async def test_retries_exhausted(self, engine_context, query):
        """Test a provider failing every attempt is reported once."""
        provider = flaky_provider("scraper", failures=10, records=[make_record()])

        result = await Aggregator(ProviderRegistry([provider]), engine_context).aggregate(query)

        assert provider.scrape.calls == 3
        assert result.errors[0].error_type == "provider_error"

    async def test_usage_stats(self, engine_context, query):
        """Test the usage report combines calls, cache and quotas."""
        aggregator = Aggregator(ProviderRegistry([feed_provider("scraper", records=[make_record()])]), engine_context)
        await aggregator.aggregate(query)
        await aggregator.aggregate(query)

        stats = await aggregator.get_usage_stats()

        assert stats["usage"]["total_requests"] == 1
        assert stats["usage"]["successful_requests"] == 1
        assert stats["cache"]["hits"] == 1
        assert stats["rate_limits"][0]["provider"] == "scraper"
        assert stats["rate_limits"][0]["requests_today"] == 1


# ============================================================================
# DEDUPLICATION AND SORTING
# ============================================================================

class TestDeduplication:
    """Test merge rules."""

    def test_dedup_is_idempotent(self):
        """Test deduplicating twice equals deduplicating once."""
        products = [
            product("https://shop.example.com/a", confidence=80),
            product("https://shop.example.com/a/", confidence=95),
            product("https://SHOP.example.com/b"),
            product("https://shop.example.com/b?utm_source=x"),
        ]

        once = deduplicate(products)

        assert deduplicate(once) == once
        assert len(once) == 2
        assert once[0].confidence_score == 95

    def test_tie_keeps_newer_record(self):
        """Test equal confidence falls back to the fresher fetch."""
        old = product("https://shop.example.com/a", fetched_at=datetime(2026, 3, 1, tzinfo=timezone.utc))
        new = product("https://shop.example.com/a", fetched_at=datetime(2026, 3, 2, tzinfo=timezone.utc), discount=25)

        assert deduplicate([old, new]) == [new]
        assert deduplicate([new, old]) == [new]

    def test_external_id_is_scoped_to_source(self):
        """Test equal external ids from different providers are distinct products."""
        a = product("https://shop.example.com/a", external_id="42", source="rapidapi")
        b = product("https://shop.example.com/b", external_id="42", source="rainforest")
        c = product("https://shop.example.com/c", external_id="42", source="rapidapi", confidence=95)

        assert deduplicate([a, b, c]) == [c, b]


class TestSorting:
    """Test ranking options."""

    def setup_method(self):
        self.products = [
            product("https://shop.example.com/a", discount=30, confidence=80, rating=4.9),
            product("https://shop.example.com/b", discount=50, confidence=90),
            product("https://shop.example.com/c", discount=20, confidence=99, rating=3.5),
        ]

    def test_discount_descending(self):
        """Test the default order is highest discount first."""
        assert [p.discount_percentage for p in sort_products(self.products)] == [50, 30, 20]

    def test_price_ascending(self):
        """Test price order is cheapest first."""
        assert [p.sale_price for p in sort_products(self.products, "price")] == [
            Decimal("50"), Decimal("70"), Decimal("80")
        ]

    def test_relevance_and_rating(self):
        """Test confidence and rating orders."""
        assert [p.confidence_score for p in sort_products(self.products, "relevance")] == [99, 90, 80]
        assert [p.rating for p in sort_products(self.products, "rating")] == [4.9, 3.5, None]

    def test_newest(self):
        """Test newest order uses fetched_at."""
        newest = product("https://shop.example.com/z", fetched_at=datetime(2026, 4, 1, tzinfo=timezone.utc))
        assert sort_products(self.products + [newest], "newest")[0] is newest

    def test_unknown_option(self):
        """Test unknown sort options are refused."""
        with pytest.raises(ValueError):
            sort_products(self.products, "popularity")


# ============================================================================
# PRESET SEARCHES
# ============================================================================

class TestPresetSearches:
    """Test brand, category and deal searches."""

    def setup_method(self):
        self.records = [
            make_record(url="https://shop.example.com/sneaker", sale=50, original=100, category="Sneakers"),
            make_record(url="https://shop.example.com/hoodie", name="Nike Club Hoodie", sale=70, original=100),
            make_record(url="https://shop.example.com/tote", name="Nike Canvas Tote Bag", sale=85, original=100),
        ]

    async def test_search_by_brand_filters(self, engine_context):
        """Test brand searches apply category and minimum discount filters."""
        aggregator = Aggregator(ProviderRegistry([feed_provider("scraper", records=self.records)]), engine_context)

        result = await aggregator.search_by_brand(
            BrandQuery(brand="Nike", categories=[ProductCategory.SHOES, ProductCategory.CLOTHING], min_discount=40)
        )

        assert [p.product_url for p in result.products] == ["https://shop.example.com/sneaker"]

    async def test_search_by_category(self, engine_context):
        """Test category searches keep only that category."""
        aggregator = Aggregator(ProviderRegistry([feed_provider("scraper", records=self.records)]), engine_context)

        result = await aggregator.search_by_category(CategoryQuery(category=ProductCategory.CLOTHING))

        assert [p.product_url for p in result.products] == ["https://shop.example.com/hoodie"]

    async def test_search_deals(self, engine_context):
        """Test deal searches keep discounts at or above the minimum."""
        aggregator = Aggregator(ProviderRegistry([feed_provider("scraper", records=self.records)]), engine_context)

        result = await aggregator.search_deals(DealQuery(min_discount=30))

        assert [p.discount_percentage for p in result.products] == [50, 30]

    async def test_flash_sale_preset(self, engine_context):
        """Test the flash sale preset keeps 50%+ deals in its categories."""
        aggregator = Aggregator(ProviderRegistry([feed_provider("scraper", records=self.records)]), engine_context)

        result = await aggregator.search_deals(DEAL_QUERIES[DealType.FLASH_SALE])

        assert [p.product_url for p in result.products] == ["https://shop.example.com/sneaker"]

    async def test_fetch_multiple_brands(self, engine_context):
        """Test per-brand results are merged, deduplicated and limited."""
        provider = feed_provider("scraper", records=self.records)
        aggregator = Aggregator(ProviderRegistry([provider]), engine_context)

        result = await aggregator.fetch_multiple_brands(["Nike", "Adidas"], limit=2, delay=0)

        assert provider.scrape.calls == 2
        assert len(result.sources) == 2
        assert [p.discount_percentage for p in result.products] == [50, 30]


# ============================================================================
# CONTEXT
# ============================================================================

class TestEngineContext:
    """Test production wiring."""

    def test_from_settings(self):
        """Test settings flow into the collaborators."""
        settings = Settings(
            _env_file=None,
            REDIS_ENABLED=False,
            API_CACHE_TTL=600,
            API_RATE_LIMIT=50,
            RAPIDAPI_DAILY_LIMIT=10,
            RETRY_MAX_ATTEMPTS=5,
            PROVIDER_TIMEOUT=3.0,
            MAX_CONCURRENT_PROVIDERS=2,
        )

        context = EngineContext.from_settings(settings)

        assert context.cache.network is None
        assert context.cache.ttl_seconds == 600
        assert context.rate_limiter.get_info("rapidapi").daily_limit == 10
        assert context.rate_limiter.get_info("other").daily_limit == 50
        assert context.retry.max_attempts == 5
        assert context.provider_timeout == 3.0
        assert context.max_concurrency == 2

    def test_from_settings_with_redis(self):
        """Test the Redis tier is attached when enabled."""
        context = EngineContext.from_settings(Settings(_env_file=None, REDIS_ENABLED=True))

        assert context.cache.network is not None
        assert context.cache.network.redis_url == "redis://localhost:6379/0"

    async def test_close_releases_providers_and_cache(self, engine_context):
        """Test closing the aggregator closes providers and the cache."""
        provider = feed_provider("scraper", records=[make_record()])
        provider.close = AsyncMock()
        engine_context.cache.close = AsyncMock()

        await Aggregator(ProviderRegistry([provider]), engine_context).close()

        provider.close.assert_awaited_once()
        engine_context.cache.close.assert_awaited_once()
