"""
Service Context

Everything the process runs, built once from Settings by the application
lifespan and stored on app.state.context. Routes reach the queue, engine,
clients and repository only through this object.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..aggregator import AggregationEngine
from ..connectors import (
    BaseSourceClient,
    BokClient,
    CircuitBreakerConfig,
    DartClient,
    KrxClient,
    RateLimitConfig,
    RateLimitMode,
    RetryPolicy,
    SourceClientConfig,
)
from ..core.types import SourceId, SourceTelemetry
from ..jobs import JobQueue, QueueConfig, build_handlers
from ..persistence import DatabasePool, Repository
from .config import Settings

logger = logging.getLogger(__name__)

CLIENT_CLASSES: dict[SourceId, type[BaseSourceClient]] = {
    SourceId.KRX: KrxClient,
    SourceId.BOK: BokClient,
    SourceId.DART: DartClient,
}


@dataclass
class ServiceContext:
    """Owned service components."""

    settings: Settings
    repository: Repository
    clients: dict[SourceId, BaseSourceClient]
    engine: AggregationEngine
    queue: JobQueue
    db_pool: Optional[DatabasePool] = None
    started: bool = field(default=False)

    def source_telemetry(self) -> list[SourceTelemetry]:
        return [client.get_telemetry() for client in self.clients.values()]

    async def start(self) -> None:
        recovered = await self.queue.recover()
        if recovered:
            logger.info(f"Recovered {recovered} unfinished job(s)")
        await self.queue.start()
        self.started = True

    async def close(self) -> None:
        """Stop workers, then release HTTP clients and the database pool."""
        await self.queue.stop()
        for client in self.clients.values():
            await client.close()
        if self.db_pool:
            await self.db_pool.close()
        self.started = False


def client_config(settings: Settings, source: SourceId) -> SourceClientConfig:
    """Build the SourceClientConfig for one source from settings."""
    capacity, refill, quota = settings.bucket_settings(source)
    return SourceClientConfig(
        base_url=getattr(settings, f"{source.value}_base_url"),
        api_key=getattr(settings, f"{source.value}_api_key", ""),
        timeout_seconds=settings.request_timeout_seconds,
        retry=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        ),
        rate_limit=RateLimitConfig(
            capacity=capacity,
            refill_per_second=refill,
            daily_quota=quota or None,
            mode=RateLimitMode(settings.rate_limit_mode),
            max_wait_seconds=settings.rate_limit_max_wait_seconds,
        ),
        circuit=CircuitBreakerConfig(
            failure_ratio=settings.circuit_failure_ratio,
            window_seconds=settings.circuit_window_seconds,
            min_calls=settings.circuit_min_calls,
            cooldown_seconds=settings.circuit_cooldown_seconds,
        ),
    )


def build_context(
    settings: Settings,
    repository: Repository,
    db_pool: Optional[DatabasePool] = None,
) -> ServiceContext:
    """
    Wire clients, engine, handlers and queue.

    Raises:
        ValidationError: If the configured weights do not sum to 100
    """
    clients = {
        source: cls(client_config(settings, source), repository)
        for source, cls in CLIENT_CLASSES.items()
    }
    engine = AggregationEngine(repository, weights=settings.weight_map)
    handlers = build_handlers(clients, engine, repository)
    queue = JobQueue(
        repository,
        handlers,
        QueueConfig(
            worker_count=settings.worker_count,
            source_concurrency=settings.source_concurrency_map,
            retry_base_delay_seconds=settings.job_retry_base_delay_seconds,
            retry_max_delay_seconds=settings.job_retry_max_delay_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_backfill_days=settings.max_backfill_days,
        ),
    )
    return ServiceContext(
        settings=settings,
        repository=repository,
        clients=clients,
        engine=engine,
        queue=queue,
        db_pool=db_pool,
    )
