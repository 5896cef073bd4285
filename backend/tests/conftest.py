"""Pytest configuration and shared fixtures."""

from datetime import datetime, timezone

import pytest

from promofinder.engine.aggregator import EngineContext
from promofinder.engine.cache import MemoryCacheTier, ProductCache
from promofinder.engine.rate_limiter import DailyQuotaLimiter
from promofinder.engine.retry import RetryExecutor
from promofinder.providers.base import ProviderQuery

from doubles import FakeClock, FakeDateTimeClock, FakeRedis, no_sleep


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def quota_clock() -> FakeDateTimeClock:
    """Clock set to 22:30 UTC, ninety minutes before the quota window rolls."""
    return FakeDateTimeClock(datetime(2026, 3, 14, 22, 30, tzinfo=timezone.utc))


@pytest.fixture
def engine_context(clock: FakeClock) -> EngineContext:
    """Memory-only context with instant retries."""
    return EngineContext(
        cache=ProductCache(memory=MemoryCacheTier(), clock=clock),
        rate_limiter=DailyQuotaLimiter(default_limit=100),
        retry=RetryExecutor(max_attempts=3, initial_delay=1.0, max_delay=10.0, sleep=no_sleep),
        provider_timeout=2.0,
        aggregation_timeout=5.0,
    )


@pytest.fixture
def query() -> ProviderQuery:
    return ProviderQuery(query="air max", brand="Nike", limit=20)
