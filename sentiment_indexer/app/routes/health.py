"""
Health Check Endpoint

Provides service health status for container health checks and monitoring.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ...core.types import CircuitState
from ..config import settings


logger = logging.getLogger(__name__)
router = APIRouter()


class ComponentHealth(BaseModel):
    """Health status of a component."""
    status: str  # "healthy", "degraded", "unhealthy"
    message: Optional[str] = None
    last_check: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str  # "healthy", "degraded", "unhealthy"
    service: str
    version: str
    environment: str
    timestamp: str
    components: dict[str, ComponentHealth]


async def _repository_health(context) -> ComponentHealth:
    try:
        ok = await context.repository.check_health()
    except Exception as e:
        return ComponentHealth(status="unhealthy", message=str(e))
    return ComponentHealth(status="healthy" if ok else "unhealthy", message=None if ok else "Repository unreachable")


def _queue_health(context) -> ComponentHealth:
    metrics = context.queue.get_metrics()
    if not context.queue.is_running:
        return ComponentHealth(status="unhealthy", message="Workers not running")
    return ComponentHealth(
        status="healthy",
        message=f"{metrics['running']}/{metrics['worker_count']} workers busy",
    )


def _source_health(telemetry) -> ComponentHealth:
    if telemetry.circuit_state == CircuitState.OPEN:
        return ComponentHealth(status="degraded", message=f"Circuit open: {telemetry.last_error}")
    if telemetry.circuit_state == CircuitState.HALF_OPEN:
        return ComponentHealth(status="degraded", message="Circuit half-open (probing)")
    return ComponentHealth(status="healthy")


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Service health check endpoint.

    Returns overall health status and per-component breakdown:
    repository, queue workers and one entry per source client.
    An open circuit degrades the service; an unreachable repository or
    stopped workers make it unhealthy.
    """
    now = datetime.now(timezone.utc).isoformat()
    components: dict[str, ComponentHealth] = {}
    context = getattr(request.app.state, "context", None)

    if context is None:
        components["context"] = ComponentHealth(status="unhealthy", message="Service context not initialized")
    else:
        components["repository"] = await _repository_health(context)
        components["queue"] = _queue_health(context)
        for telemetry in context.source_telemetry():
            components[f"source_{telemetry.source.value}"] = _source_health(telemetry)

    overall_status = "healthy"
    for component in components.values():
        component.last_check = now
        if component.status == "unhealthy":
            overall_status = "unhealthy"
        elif component.status == "degraded" and overall_status == "healthy":
            overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        environment=settings.environment,
        timestamp=now,
        components=components,
    )


@router.get("/health/live")
async def liveness_check() -> dict:
    """
    Liveness probe.

    Simple check that the service is running.
    """
    return {"status": "ok"}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """
    Readiness probe.

    Ready once the service context is built and the repository is reachable.
    """
    context = getattr(request.app.state, "context", None)
    if context is None:
        return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "context not initialized"})
    if not (await _repository_health(context)).status == "healthy":
        return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "repository unreachable"})
    return {"status": "ready"}
