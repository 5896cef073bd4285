"""Custom exception classes for the aggregation engine."""

from datetime import timedelta
from typing import Any, Optional


# HTTP-like status codes treated as transient by the retry policy
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class PromoFinderException(Exception):
    """Base exception for all PromoFinder errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(PromoFinderException):
    """Raised when required configuration (e.g. an API key) is missing."""

    def __init__(self, setting: str, message: Optional[str] = None):
        self.setting = setting
        super().__init__(message or f"Required setting '{setting}' is not configured")


class ProviderError(PromoFinderException):
    """Raised when an upstream provider call fails.

    Attributes:
        provider: Provider identifier (e.g. "rapidapi")
        status_code: Optional HTTP-like status code used for retry classification
        retryable: Explicit transient flag; defaults to status code classification
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        self.provider = provider
        self.status_code = status_code
        self._retryable = retryable
        super().__init__(f"Provider error for {provider}: {message}")

    @property
    def retryable(self) -> bool:
        """Whether this failure belongs to the transient allow-list."""
        if self._retryable is not None:
            return self._retryable
        return self.status_code in RETRYABLE_STATUS_CODES


class RateLimitError(ProviderError):
    """Raised when a provider's daily quota is exhausted.

    retry_after is the time remaining until the quota window rolls over.
    """

    def __init__(self, provider: str, retry_after: timedelta):
        self.retry_after = retry_after
        super().__init__(
            provider,
            f"Rate limit exceeded, retry after {int(retry_after.total_seconds())}s",
            status_code=429,
            retryable=False,
        )


class ValidationError(PromoFinderException):
    """Raised when a candidate fails normalization or authenticity rules."""

    def __init__(self, message: str, field: str, value: Any = None):
        self.field = field
        self.value = value
        super().__init__(message)


class NoResultsError(ProviderError):
    """Raised when a provider answered but no candidate survived validation."""

    def __init__(self, provider: str, candidates: int):
        self.candidates = candidates
        super().__init__(
            provider,
            f"No valid products among {candidates} candidates",
            retryable=False,
        )
