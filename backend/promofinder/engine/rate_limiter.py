"""Per-provider daily request quotas.

Each provider has a counter scoped to the current UTC date. The first
reservation on a new date resets the counter, so a LIMITED provider returns
to OK at midnight without any background job.
"""

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog

from promofinder.core.exceptions import RateLimitError

logger = structlog.get_logger(__name__)


DEFAULT_DAILY_LIMIT = 100


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaState(str, Enum):
    OK = "ok"
    LIMITED = "limited"


@dataclass
class RateLimitRecord:
    """Request count for one provider within one daily window."""

    provider: str
    window_start: date
    request_count: int
    daily_limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.daily_limit - self.request_count)

    @property
    def state(self) -> QuotaState:
        return QuotaState.LIMITED if self.request_count >= self.daily_limit else QuotaState.OK


@dataclass
class RateLimitInfo:
    """Snapshot of a provider's quota."""

    provider: str
    requests_today: int
    requests_remaining: int
    daily_limit: int
    resets_at: datetime
    state: QuotaState

    @property
    def is_limited(self) -> bool:
        return self.state == QuotaState.LIMITED


class DailyQuotaLimiter:
    """Daily request quota per provider.

    Reservation is atomic per provider: the check and the increment run
    under that provider's asyncio.Lock.
    """

    def __init__(
        self,
        daily_limits: Optional[Dict[str, int]] = None,
        default_limit: int = DEFAULT_DAILY_LIMIT,
        now: Callable[[], datetime] = utc_now,
    ):
        """Initialize limiter.

        Args:
            daily_limits: Per-provider limits; others use default_limit
            default_limit: Limit for providers not listed in daily_limits
            now: Clock returning an aware UTC datetime (injectable for tests)
        """
        if default_limit < 1:
            raise ValueError("default_limit must be at least 1")

        self.default_limit = default_limit
        self._limits: Dict[str, int] = {}
        self._records: Dict[str, RateLimitRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._now = now
        self.logger = logger.bind(component="rate_limiter")

        for provider, limit in (daily_limits or {}).items():
            self.configure(provider, limit)

    def configure(self, provider: str, daily_limit: int) -> None:
        """Set a provider's daily limit; takes effect on the next reservation."""
        if daily_limit < 1:
            raise ValueError(f"daily_limit for {provider} must be at least 1")

        self._limits[provider] = daily_limit
        record = self._records.get(provider)
        if record is not None:
            record.daily_limit = daily_limit

    def _today(self) -> date:
        return self._now().astimezone(timezone.utc).date()

    def _lock_for(self, provider: str) -> asyncio.Lock:
        lock = self._locks.get(provider)
        if lock is None:
            lock = self._locks[provider] = asyncio.Lock()
        return lock

    def _current_record(self, provider: str) -> RateLimitRecord:
        """Return the provider's record, rolling it over if the date changed."""
        today = self._today()
        record = self._records.get(provider)

        if record is None or record.window_start != today:
            if record is not None:
                self.logger.info(
                    "rate_limit_window_reset",
                    provider=provider,
                    previous_count=record.request_count,
                )
            record = RateLimitRecord(
                provider=provider,
                window_start=today,
                request_count=0,
                daily_limit=self._limits.get(provider, self.default_limit),
            )
            self._records[provider] = record

        return record

    def _to_info(self, record: RateLimitRecord) -> RateLimitInfo:
        return RateLimitInfo(
            provider=record.provider,
            requests_today=record.request_count,
            requests_remaining=record.remaining,
            daily_limit=record.daily_limit,
            resets_at=self.next_reset(),
            state=record.state,
        )

    async def check_and_reserve(self, provider: str) -> RateLimitInfo:
        """Reserve one request against the provider's daily quota.

        Args:
            provider: Provider id

        Returns:
            Quota snapshot after the reservation

        Raises:
            RateLimitError: If the quota for today is exhausted
        """
        async with self._lock_for(provider):
            record = self._current_record(provider)

            if record.request_count >= record.daily_limit:
                retry_after = self.time_until_reset()
                self.logger.warning(
                    "rate_limit_exceeded",
                    provider=provider,
                    daily_limit=record.daily_limit,
                    retry_after_seconds=int(retry_after.total_seconds()),
                )
                raise RateLimitError(provider, retry_after)

            record.request_count += 1
            return self._to_info(record)

    def get_info(self, provider: str) -> RateLimitInfo:
        return self._to_info(self._current_record(provider))

    def get_all_info(self) -> List[RateLimitInfo]:
        """Quota snapshots for every provider seen or configured."""
        providers = sorted(set(self._limits) | set(self._records))
        return [self.get_info(p) for p in providers]

    def reset(self, provider: str) -> None:
        """Forget today's count for one provider."""
        self._records.pop(provider, None)
        self.logger.info("rate_limit_reset", provider=provider)

    def reset_all(self) -> None:
        self._records.clear()
        self.logger.info("rate_limit_reset_all")

    def next_reset(self) -> datetime:
        """Next UTC midnight."""
        tomorrow = self._today() + timedelta(days=1)
        return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)

    def time_until_reset(self) -> timedelta:
        return self.next_reset() - self._now().astimezone(timezone.utc)

    def format_time_until_reset(self) -> str:
        """Human-readable countdown, e.g. "5h 12m"."""
        total_minutes = int(self.time_until_reset().total_seconds()) // 60
        hours, minutes = divmod(total_minutes, 60)
        return f"{hours}h {minutes}m"
