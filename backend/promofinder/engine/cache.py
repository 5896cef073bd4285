"""Two-tier product cache.

Lookups go to the in-process memory tier first and then to Redis. A Redis
hit back-fills the memory tier. Writes go to both tiers. Redis failures are
logged and the cache keeps working from memory alone.
"""

import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import TypeAdapter, ValidationError
from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from promofinder.schemas.product import Product

logger = structlog.get_logger(__name__)


KEY_PREFIX = "api"
DEFAULT_TTL_SECONDS = 21600  # 6 hours

_products_adapter = TypeAdapter(List[Product])


def build_cache_key(provider: str, params: Dict[str, Any]) -> str:
    """Build "api:{provider}:{md5}" from canonical JSON of the parameters.

    None values are dropped and keys are sorted, so parameter order and
    omitted-vs-None never change the key.
    """
    clean = {k: v for k, v in params.items() if v is not None}
    canonical = json.dumps(clean, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.md5(canonical.encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}:{provider}:{digest}"


@dataclass
class CacheEntry:
    key: str
    payload: str  # JSON-serialized product list
    stored_at: float
    ttl_seconds: int

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl_seconds

    def to_json(self) -> str:
        return json.dumps({
            "payload": self.payload,
            "stored_at": self.stored_at,
            "ttl_seconds": self.ttl_seconds,
        })

    @classmethod
    def from_json(cls, key: str, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        return cls(
            key=key,
            payload=data["payload"],
            stored_at=float(data["stored_at"]),
            ttl_seconds=int(data["ttl_seconds"]),
        )


class MemoryCacheTier:
    """In-process cache tier backed by a dict."""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def set(self, entry: CacheEntry, now: float) -> None:
        self._entries[entry.key] = entry
        if len(self._entries) > self.max_entries:
            self.cleanup(now)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def cleanup(self, now: float) -> None:
        """Drop expired entries, then the oldest ones if still over capacity."""
        for key in [k for k, e in self._entries.items() if e.is_expired(now)]:
            del self._entries[key]

        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.values(), key=lambda e: e.stored_at)[:overflow]
            for entry in oldest:
                del self._entries[entry.key]

    def keys(self) -> List[str]:
        return list(self._entries.keys())


class RedisCacheTier:
    """Network cache tier on redis.asyncio.

    Every operation catches RedisError, logs it and reports a miss or
    failure, so an unreachable Redis never fails an aggregation.
    """

    def __init__(self, redis_url: str = "", client: Optional[Redis] = None):
        """Initialize Redis tier.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            client: Pre-built client (used by tests)
        """
        self.redis_url = redis_url
        self._redis = client
        self.logger = logger.bind(component="redis_cache_tier")

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            self.logger.info("redis_connection_created", url=self.redis_url)
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._get_redis().get(key)
        except RedisError as e:
            self.logger.error("cache_get_failed", key=key, error=str(e), exc_info=True)
            return None

    async def set(self, key: str, value: str, ttl: int) -> bool:
        try:
            await self._get_redis().set(key, value, ex=ttl)
            return True
        except RedisError as e:
            self.logger.error("cache_set_failed", key=key, error=str(e), exc_info=True)
            return False

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._get_redis().delete(key))
        except RedisError as e:
            self.logger.error("cache_delete_failed", key=key, error=str(e), exc_info=True)
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a pattern, e.g. "api:rapidapi:*"."""
        try:
            redis = self._get_redis()
            keys = [key async for key in redis.scan_iter(match=pattern, count=100)]
            deleted = await redis.delete(*keys) if keys else 0
            self.logger.info("cache_pattern_delete", pattern=pattern, keys_deleted=deleted)
            return deleted
        except RedisError as e:
            self.logger.error(
                "cache_pattern_delete_failed", pattern=pattern, error=str(e), exc_info=True
            )
            return 0

    async def count_keys(self, pattern: str) -> int:
        try:
            return len([key async for key in self._get_redis().scan_iter(match=pattern, count=100)])
        except RedisError as e:
            self.logger.error("cache_count_failed", pattern=pattern, error=str(e), exc_info=True)
            return 0

    async def health_check(self) -> bool:
        try:
            await self._get_redis().ping()
            return True
        except RedisError as e:
            self.logger.error("redis_health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("redis_connection_closed")


class ProductCache:
    """Provider-result cache keyed by provider id and query parameters."""

    def __init__(
        self,
        memory: Optional[MemoryCacheTier] = None,
        network: Optional[RedisCacheTier] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize cache.

        Args:
            memory: In-process tier (created if omitted)
            network: Optional Redis tier
            ttl_seconds: Default entry lifetime
            clock: Returns the current time in epoch seconds
        """
        self.memory = memory or MemoryCacheTier()
        self.network = network
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.hits = 0
        self.misses = 0
        self.logger = logger.bind(component="product_cache")

    async def get(self, provider: str, params: Dict[str, Any]) -> Optional[List[Product]]:
        """Look up cached products for a provider query.

        Returns:
            Cached products, or None on a miss or expired entry
        """
        key = build_cache_key(provider, params)
        now = self._clock()

        entry = self.memory.get(key)
        if entry is not None and entry.is_expired(now):
            self.memory.delete(key)
            entry = None

        if entry is None and self.network is not None:
            entry = await self._get_from_network(key, now)
            if entry is not None:
                self.memory.set(entry, now)

        products = None
        if entry is not None:
            try:
                products = _products_adapter.validate_json(entry.payload)
            except (ValidationError, ValueError) as e:
                self.logger.warning("cache_payload_unreadable", key=key, error=str(e))
                await self.delete(key)

        if products is None:
            self.misses += 1
            self.logger.debug("cache_miss", provider=provider, key=key)
            return None

        self.hits += 1
        self.logger.debug("cache_hit", provider=provider, key=key)
        return products

    async def delete(self, key: str) -> None:
        """Remove one key from both tiers."""
        self.memory.delete(key)
        if self.network is not None:
            await self.network.delete(key)

    async def _get_from_network(self, key: str, now: float) -> Optional[CacheEntry]:
        raw = await self.network.get(key)
        if raw is None:
            return None

        try:
            entry = CacheEntry.from_json(key, raw)
        except (ValueError, KeyError) as e:
            self.logger.warning("cache_entry_corrupt", key=key, error=str(e))
            await self.network.delete(key)
            return None

        if entry.is_expired(now):
            return None
        return entry

    async def set(
        self,
        provider: str,
        params: Dict[str, Any],
        products: List[Product],
        ttl: Optional[int] = None,
    ) -> None:
        """Store products for a provider query in both tiers.

        Raises:
            ValueError: If ttl is not positive
        """
        ttl_seconds = ttl if ttl is not None else self.ttl_seconds
        if ttl_seconds <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl_seconds}")

        key = build_cache_key(provider, params)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=_products_adapter.dump_json(products).decode("utf-8"),
            stored_at=now,
            ttl_seconds=ttl_seconds,
        )

        self.memory.set(entry, now)
        if self.network is not None:
            await self.network.set(key, entry.to_json(), entry.ttl_seconds)

        self.logger.debug("cache_set", provider=provider, key=key, count=len(products))

    async def clear_provider(self, provider: str) -> int:
        """Drop every cached entry for one provider."""
        prefix = f"{KEY_PREFIX}:{provider}:"
        removed = self.memory.delete_prefix(prefix)
        if self.network is not None:
            removed = max(removed, await self.network.delete_pattern(f"{prefix}*"))
        self.logger.info("cache_provider_cleared", provider=provider, removed=removed)
        return removed

    async def clear_all(self) -> None:
        self.memory.delete_prefix(f"{KEY_PREFIX}:")
        if self.network is not None:
            await self.network.delete_pattern(f"{KEY_PREFIX}:*")
        self.hits = 0
        self.misses = 0
        self.logger.info("cache_cleared")

    async def get_stats(self) -> Dict[str, Any]:
        """Hit/miss counters and key count."""
        total = self.hits + self.misses
        if self.network is not None:
            keys = await self.network.count_keys(f"{KEY_PREFIX}:*")
        else:
            keys = len(self.memory.keys())
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
            "keys": max(keys, len(self.memory.keys())),
        }

    async def close(self) -> None:
        if self.network is not None:
            await self.network.close()
