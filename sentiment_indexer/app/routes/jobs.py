"""
Job Queue API Endpoints

Endpoints:
- POST /v0/jobs - Enqueue a job
- GET /v0/jobs - List jobs (filter by state / type)
- GET /v0/jobs/metrics - Queue summary
- GET /v0/jobs/{id} - Job status
- GET /v0/jobs/{id}/logs - Job log entries
- GET /v0/jobs/{id}/stream - SSE progress stream
- POST /v0/jobs/{id}/pause | /resume | /cancel - Control operations
"""

import asyncio
import json
import logging
from typing import Annotated, Any, AsyncGenerator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ...core.errors import SentimentIndexerError
from ...core.types import Job, JobFilter, JobPriority, JobState, JobType
from ..context import ServiceContext
from .dependencies import get_context, http_error, verify_admin_key


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v0/jobs", tags=["jobs"])

STREAM_INTERVAL_SECONDS = 1.0


# =============================================================================
# Request / Response Models
# =============================================================================

class CreateJobRequest(BaseModel):
    """Request body for POST /v0/jobs."""

    type: JobType = Field(..., description="Job type")
    priority: JobPriority = Field(default=JobPriority.NORMAL)
    parameters: dict[str, Any] = Field(default_factory=dict, description="Type-specific parameters")
    max_attempts: Optional[int] = Field(None, ge=1, description="Override the per-type default")


class JobListResponse(BaseModel):
    jobs: list[dict[str, Any]]
    count: int
    limit: int
    offset: int


def _dump(job: Job) -> dict[str, Any]:
    return job.model_dump(mode="json", by_alias=True)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", status_code=201)
async def create_job(
    body: CreateJobRequest,
    context: Annotated[ServiceContext, Depends(get_context)],
    _admin_verified: Annotated[bool, Depends(verify_admin_key)] = True,
) -> dict[str, Any]:
    """
    Enqueue a batch job.

    Authentication: Requires X-Admin-Key header when configured.
    """
    try:
        job_id = await context.queue.enqueue(body.type, body.parameters, body.priority, body.max_attempts)
        job = await context.queue.get_status(job_id)
    except SentimentIndexerError as e:
        raise http_error(e)
    return _dump(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    context: Annotated[ServiceContext, Depends(get_context)],
    state: Annotated[Optional[list[JobState]], Query(description="Filter by state")] = None,
    type: Annotated[Optional[list[JobType]], Query(description="Filter by job type")] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> JobListResponse:
    """List jobs, newest first."""
    job_filter = JobFilter(states=state, types=type, limit=limit, offset=offset)
    try:
        jobs = await context.queue.list_jobs(job_filter)
    except SentimentIndexerError as e:
        raise http_error(e)
    return JobListResponse(jobs=[_dump(j) for j in jobs], count=len(jobs), limit=limit, offset=offset)


@router.get("/metrics")
async def queue_metrics(context: Annotated[ServiceContext, Depends(get_context)]) -> dict[str, Any]:
    """Queue summary: non-terminal counts per state, running jobs, finished since start."""
    return context.queue.get_metrics()


@router.get("/{job_id}")
async def get_job(job_id: str, context: Annotated[ServiceContext, Depends(get_context)]) -> dict[str, Any]:
    try:
        job = await context.queue.get_status(job_id)
    except SentimentIndexerError as e:
        raise http_error(e)
    return _dump(job)


@router.get("/{job_id}/logs")
async def get_job_logs(
    job_id: str,
    context: Annotated[ServiceContext, Depends(get_context)],
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> dict[str, Any]:
    try:
        entries = await context.queue.get_logs(job_id, limit)
    except SentimentIndexerError as e:
        raise http_error(e)
    return {
        "job_id": job_id,
        "logs": [e.model_dump(mode="json", by_alias=True) for e in entries],
        "count": len(entries),
    }


@router.post("/{job_id}/pause")
async def pause_job(
    job_id: str,
    context: Annotated[ServiceContext, Depends(get_context)],
    _admin_verified: Annotated[bool, Depends(verify_admin_key)] = True,
) -> dict[str, Any]:
    try:
        return _dump(await context.queue.pause(job_id))
    except SentimentIndexerError as e:
        raise http_error(e)


@router.post("/{job_id}/resume")
async def resume_job(
    job_id: str,
    context: Annotated[ServiceContext, Depends(get_context)],
    _admin_verified: Annotated[bool, Depends(verify_admin_key)] = True,
) -> dict[str, Any]:
    try:
        return _dump(await context.queue.resume(job_id))
    except SentimentIndexerError as e:
        raise http_error(e)


@router.post("/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    context: Annotated[ServiceContext, Depends(get_context)],
    _admin_verified: Annotated[bool, Depends(verify_admin_key)] = True,
) -> dict[str, Any]:
    try:
        return _dump(await context.queue.cancel(job_id))
    except SentimentIndexerError as e:
        raise http_error(e)


# =============================================================================
# GET /v0/jobs/{id}/stream (SSE)
# =============================================================================

@router.get("/{job_id}/stream")
async def stream_job(
    request: Request,
    job_id: str,
    interval: Annotated[float, Query(gt=0, le=60, description="Poll interval (seconds)")] = STREAM_INTERVAL_SECONDS,
):
    """
    Server-Sent Events stream of job progress.

    Events:
    - progress: Progress snapshot, sent whenever it changes
    - state: Final job snapshot once the job is terminal (stream ends)
    """
    context = get_context(request)
    try:
        await context.queue.get_status(job_id)
    except SentimentIndexerError as e:
        raise http_error(e)

    async def event_generator() -> AsyncGenerator[str, None]:
        """Generate SSE events."""
        sequence = 0
        last_snapshot: Optional[dict[str, Any]] = None

        try:
            while True:
                job = await context.queue.get_status(job_id)
                snapshot = {
                    "state": job.state.value,
                    "progress": job.progress.model_dump(mode="json", by_alias=True),
                }

                if snapshot != last_snapshot:
                    last_snapshot = snapshot
                    sequence += 1
                    event = {"type": "progress", "sequence": sequence, "job_id": job_id, "data": snapshot}
                    yield f"event: progress\ndata: {json.dumps(event)}\n\n"

                if job.state.is_terminal:
                    sequence += 1
                    event = {"type": "state", "sequence": sequence, "job_id": job_id, "data": _dump(job)}
                    yield f"event: state\ndata: {json.dumps(event)}\n\n"
                    return

                await asyncio.sleep(interval)

        except asyncio.CancelledError:
            logger.info(f"SSE stream for job {job_id} cancelled")
            raise

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
