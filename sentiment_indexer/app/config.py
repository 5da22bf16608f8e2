"""
Sentiment Indexer Configuration

Pydantic Settings for the Sentiment Indexer service.
Loads from environment variables with sensible defaults.
"""

from typing import Literal
from pydantic_settings import BaseSettings
from pydantic import Field

from ..core.types import ComponentName, SourceId


class Settings(BaseSettings):
    """Sentiment Indexer service configuration."""

    # Service identity
    service_name: str = Field(default="sentiment-indexer", description="Service name for logging/metrics")
    environment: Literal["local", "staging", "production"] = Field(default="local")
    service_version: str = Field(default="0.1.0")
    log_level: str = Field(default="INFO")

    # Database (empty = in-memory repository)
    database_url: str = Field(default="", description="PostgreSQL connection string")
    db_min_pool_size: int = Field(default=2)
    db_max_pool_size: int = Field(default=10)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Admin authentication (required for mutation endpoints)
    admin_api_key: str = Field(
        default="",
        description="API key for admin/mutation endpoints (jobs, index calculation). Required in production."
    )

    # Job queue
    worker_count: int = Field(default=2, ge=1, description="Worker tasks (global concurrency cap)")
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    job_retry_base_delay_seconds: float = Field(default=300.0, ge=0)
    job_retry_max_delay_seconds: float = Field(default=3600.0, ge=0)
    source_concurrency: str = Field(
        default="krx:1,bok:1,dart:1",
        description="Comma-separated source:limit pairs for concurrently running jobs",
    )
    max_backfill_days: int = Field(default=730, ge=1)

    # Source endpoints and credentials
    krx_base_url: str = Field(default="http://data.krx.co.kr/comm/bldAttendant/getJsonData.cmd")
    bok_base_url: str = Field(default="https://ecos.bok.or.kr/api")
    bok_api_key: str = Field(default="", description="BOK ECOS API key")
    dart_base_url: str = Field(default="https://opendart.fss.or.kr/api")
    dart_api_key: str = Field(default="", description="DART OpenAPI key")

    # Source retry policy (TRANSIENT failures)
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)

    # Token buckets per source (quota 0 = no daily quota)
    krx_bucket_capacity: int = Field(default=5, ge=1)
    krx_refill_per_second: float = Field(default=1.0, gt=0)
    krx_daily_quota: int = Field(default=0, ge=0)
    bok_bucket_capacity: int = Field(default=5, ge=1)
    bok_refill_per_second: float = Field(default=2.0, gt=0)
    bok_daily_quota: int = Field(default=0, ge=0)
    dart_bucket_capacity: int = Field(default=5, ge=1)
    dart_refill_per_second: float = Field(default=1.0, gt=0)
    dart_daily_quota: int = Field(default=10_000, ge=0)
    rate_limit_mode: Literal["wait", "reject"] = Field(default="wait")
    rate_limit_max_wait_seconds: float = Field(default=60.0, ge=0)

    # Circuit breaker
    circuit_failure_ratio: float = Field(default=0.5, gt=0, le=1)
    circuit_window_seconds: float = Field(default=60.0, gt=0)
    circuit_min_calls: int = Field(default=5, ge=1)
    circuit_cooldown_seconds: float = Field(default=30.0, ge=0)

    # Composite weights (must sum to 100)
    weight_price_momentum: float = Field(default=25.0)
    weight_investor_sentiment: float = Field(default=25.0)
    weight_option_skew: float = Field(default=20.0)
    weight_volatility: float = Field(default=15.0)
    weight_safe_haven_demand: float = Field(default=15.0)

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        extra = "ignore"

    @property
    def weight_map(self) -> dict[ComponentName, float]:
        """Component weights keyed by component name (validated by the engine)."""
        return {name: getattr(self, f"weight_{name.value}") for name in ComponentName}

    @property
    def source_concurrency_map(self) -> dict[SourceId, int]:
        """Parse source_concurrency string to per-source limits."""
        limits = {source: 1 for source in SourceId}
        for pair in self.source_concurrency.split(","):
            if not pair.strip():
                continue
            name, _, limit = pair.partition(":")
            limits[SourceId(name.strip().lower())] = int(limit.strip() or 1)
        return limits

    def bucket_settings(self, source: SourceId) -> tuple[int, float, int]:
        """(capacity, refill per second, daily quota) for a source."""
        prefix = source.value
        return (
            getattr(self, f"{prefix}_bucket_capacity"),
            getattr(self, f"{prefix}_refill_per_second"),
            getattr(self, f"{prefix}_daily_quota"),
        )


# Global settings instance
settings = Settings()
