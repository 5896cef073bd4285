"""Retry with exponential backoff for transient provider failures."""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from promofinder.core.exceptions import ProviderError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """Only ProviderErrors on the transient allow-list are retried."""
    return isinstance(exc, ProviderError) and exc.retryable


class RetryExecutor:
    """Runs an async callable, retrying transient ProviderErrors.

    The wait before retry k is min(initial_delay * 2**(k-1), max_delay).
    After the last attempt the final ProviderError is re-raised unchanged.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` (1-based)."""
        return min(self.initial_delay * 2 ** (attempt - 1), self.max_delay)

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.backoff(retry_state.attempt_number)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        logger.warning(
            "retrying_provider_call",
            provider=getattr(exc, "provider", None),
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            status_code=getattr(exc, "status_code", None),
            wait_seconds=retry_state.next_action.sleep,
            error=str(exc),
        )

    async def execute(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Call fn(*args, **kwargs) under the retry policy.

        Raises:
            ProviderError: The last error once attempts are exhausted, or the
                first non-transient one
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(is_transient),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(fn, *args, **kwargs)
