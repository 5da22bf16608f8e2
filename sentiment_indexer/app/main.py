"""
Sentiment Indexer Service

Batch collection service that produces the daily composite fear/greed
index for the Korean market from KRX, BOK and DART data.

API Endpoints:
- GET /health - Service health check
- POST /v0/jobs - Enqueue a batch job (collection, backfill, recompute)
- GET /v0/jobs/{id} - Job status, progress and result
- GET /v0/jobs/{id}/stream - SSE job progress
- GET /v0/index/latest - Latest composite index
- GET /v0/sources - Per-source client telemetry
- GET /metrics - Prometheus metrics endpoint
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .context import ServiceContext, build_context
from .routes import health, index, jobs, metrics
from ..core.metrics import set_service_info
from ..persistence import DatabasePool, InMemoryRepository, PostgresRepository, Repository

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def _open_repository() -> tuple[Repository, Optional[DatabasePool]]:
    """PostgreSQL repository when DATABASE_URL is set, in-memory otherwise."""
    if not settings.database_url:
        logger.warning("No DATABASE_URL configured - using in-memory repository")
        return InMemoryRepository(), None

    db_pool = DatabasePool()
    await db_pool.connect(
        settings.database_url,
        min_size=settings.db_min_pool_size,
        max_size=settings.db_max_pool_size,
    )
    logger.info("Database connection established")

    schema_ok = await db_pool.initialize_schema()
    if schema_ok:
        logger.info("Database schema verified")
    else:
        logger.warning("Schema initialization returned False - tables may not exist")

    return PostgresRepository(db_pool), db_pool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of:
    - Database connection pool
    - Source clients
    - Job queue workers (with recovery of unfinished jobs)
    """
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Workers: {settings.worker_count}, source concurrency: {settings.source_concurrency}")

    repository, db_pool = await _open_repository()
    context: ServiceContext = build_context(settings, repository, db_pool)
    await context.start()
    set_service_info(settings.service_version, settings.environment)

    app.state.context = context
    logger.info("Service startup complete")

    yield

    logger.info("Shutting down service...")
    await context.close()
    app.state.context = None
    logger.info("Service shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Sentiment Indexer",
    description="Daily composite fear/greed index for the Korean market",
    version=settings.service_version,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "local" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(jobs.router, tags=["jobs"])
app.include_router(index.router, tags=["index"])
app.include_router(metrics.router, tags=["metrics"])


@app.get("/")
async def root() -> dict:
    """Root endpoint - service info."""
    return {
        "service": settings.service_name,
        "version": settings.service_version,
        "environment": settings.environment,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "sentiment_indexer.app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "local",
    )
