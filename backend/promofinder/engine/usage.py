"""Upstream API usage logging.

Every upstream call is recorded as an ApiLogEntry: it is emitted as a
structured ``api_call_logged`` event and kept in a bounded in-memory history
for usage summaries. Durable storage of these events is left to the log
pipeline.
"""

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


COST_PER_CREDIT = 0.01


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ApiLogEntry:
    """One upstream API call."""

    provider: str
    endpoint: str
    request_params: Dict[str, Any] = field(default_factory=dict)
    response_status: Optional[int] = None
    response_time_ms: int = 0
    credits_used: int = 1
    estimated_cost: Optional[float] = None
    success: bool = True
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.estimated_cost is None:
            self.estimated_cost = round(self.credits_used * COST_PER_CREDIT, 4)


class UsageLogger:
    """Records API calls and summarizes recent usage."""

    def __init__(self, max_entries: int = 10000, now: Callable[[], datetime] = utc_now):
        self._entries: Deque[ApiLogEntry] = deque(maxlen=max_entries)
        self._now = now
        self.logger = logger.bind(component="usage_logger")

    def record(self, entry: ApiLogEntry) -> None:
        self._entries.append(entry)

        event = asdict(entry)
        # "timestamp" is owned by the log processor chain
        event["called_at"] = event.pop("timestamp").isoformat()
        if entry.success:
            self.logger.info("api_call_logged", **event)
        else:
            self.logger.warning("api_call_logged", **event)

    def entries(self, provider: Optional[str] = None) -> List[ApiLogEntry]:
        return [e for e in self._entries if provider is None or e.provider == provider]

    def get_usage_stats(self, provider: Optional[str] = None, days: int = 30) -> Dict[str, Any]:
        """Summarize calls from the last `days` days.

        Args:
            provider: Restrict to one provider (all providers when None)
            days: Look-back window

        Returns:
            Dict with total/successful/failed requests, average latency,
            total cost and a per-provider breakdown
        """
        since = self._now() - timedelta(days=days)
        recent = [e for e in self.entries(provider) if e.timestamp >= since]

        by_provider: Dict[str, Dict[str, Any]] = {}
        for entry in recent:
            bucket = by_provider.setdefault(entry.provider, {"requests": 0, "cost": 0.0})
            bucket["requests"] += 1
            bucket["cost"] = round(bucket["cost"] + entry.estimated_cost, 4)

        successful = sum(1 for e in recent if e.success)
        return {
            "total_requests": len(recent),
            "successful_requests": successful,
            "failed_requests": len(recent) - successful,
            "average_response_time_ms": (
                round(sum(e.response_time_ms for e in recent) / len(recent)) if recent else 0
            ),
            "total_cost": round(sum(e.estimated_cost for e in recent), 4),
            "by_provider": by_provider,
        }
