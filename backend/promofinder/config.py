"""Application configuration via Pydantic Settings."""

from typing import Dict, List
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Redis (network cache tier)
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_ENABLED: bool = True

    # Cache
    API_CACHE_TTL: int = 21600  # 6 hours

    # Default daily quota applied to providers without an explicit limit
    API_RATE_LIMIT: int = 100

    # HTTP timeout for a single upstream request (seconds)
    API_TIMEOUT: float = 5.0

    # RapidAPI (Real-Time Product Search)
    RAPIDAPI_KEY: str = ""
    RAPIDAPI_DAILY_LIMIT: int = 0  # 0 = use API_RATE_LIMIT

    # Rainforest API (Amazon)
    RAINFOREST_API_KEY: str = ""
    RAINFOREST_DAILY_LIMIT: int = 0  # 0 = use API_RATE_LIMIT

    # Retry policy
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 10.0

    # Aggregation budgets (seconds)
    PROVIDER_TIMEOUT: float = 20.0
    AGGREGATION_TIMEOUT: float = 45.0
    MAX_CONCURRENT_PROVIDERS: int = 4

    # Comma-separated list of provider ids to register at startup
    ENABLED_PROVIDERS: str = "rapidapi,rainforest"

    @model_validator(mode="after")
    def check_budgets(self) -> "Settings":
        """Reject budgets that would make every aggregation fail."""
        if self.RETRY_MAX_ATTEMPTS < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be at least 1")
        if self.MAX_CONCURRENT_PROVIDERS < 1:
            raise ValueError("MAX_CONCURRENT_PROVIDERS must be at least 1")
        if self.API_CACHE_TTL <= 0:
            raise ValueError("API_CACHE_TTL must be positive")
        return self

    def get_enabled_providers(self) -> List[str]:
        """Parse ENABLED_PROVIDERS into a list of provider ids.

        Returns:
            List of provider id strings, empty if ENABLED_PROVIDERS is not set
        """
        if not self.ENABLED_PROVIDERS:
            return []
        return [p.strip().lower() for p in self.ENABLED_PROVIDERS.split(",") if p.strip()]

    def get_daily_limits(self) -> Dict[str, int]:
        """Resolve the daily request quota for each known provider.

        Returns:
            Mapping of provider id to daily limit
        """
        return {
            "rapidapi": self.RAPIDAPI_DAILY_LIMIT or self.API_RATE_LIMIT,
            "rainforest": self.RAINFOREST_DAILY_LIMIT or self.API_RATE_LIMIT,
        }


settings = Settings()
