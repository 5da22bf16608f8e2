"""
Prometheus Metrics Endpoint

Exposes /metrics endpoint in Prometheus text format.
"""

import logging
from fastapi import APIRouter, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from ...core.metrics import (
    REGISTRY,
    set_circuit_state,
    set_service_info,
)
from ..config import settings


logger = logging.getLogger(__name__)
router = APIRouter()


def _update_live_metrics(request: Request) -> None:
    """
    Update metrics with current live values from the source clients.

    Called on each /metrics scrape so circuit state gauges are current
    even when no request has gone out since the last transition.
    """
    context = getattr(request.app.state, "context", None)
    if not context:
        return

    for telemetry in context.source_telemetry():
        set_circuit_state(telemetry.source.value, telemetry.circuit_state.value)


@router.get("/metrics")
async def prometheus_metrics(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text exposition format.

    Metrics exposed:
    - sentiment_jobs_enqueued_total{job_type, priority}
    - sentiment_jobs_finished_total{job_type, state}
    - sentiment_job_retries_total{job_type}
    - sentiment_job_duration_seconds{job_type}
    - sentiment_queue_jobs{state}
    - sentiment_source_requests_total{source, outcome}
    - sentiment_source_rate_limited_total{source}
    - sentiment_source_circuit_state{source}
    - sentiment_index_calculations_total{level}
    - sentiment_index_value / sentiment_index_confidence
    - sentiment_db_writes_total{table, status}
    - sentiment_db_write_latency_seconds{table}
    - sentiment_service_info{version, environment}
    """
    set_service_info(settings.service_version, settings.environment)

    _update_live_metrics(request)

    metrics_output = generate_latest(REGISTRY)

    return Response(
        content=metrics_output,
        media_type=CONTENT_TYPE_LATEST,
    )
