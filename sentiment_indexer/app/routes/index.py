"""
Composite Index API Endpoints

Endpoints:
- GET /v0/index/latest - Most recent composite index
- GET /v0/index/history - Last N indexes, newest first
- GET /v0/index/{date} - Index for one date
- POST /v0/index/calculate - Calculate (and upsert) one date
- POST /v0/index/calculate-range - Calculate every date in a range
- GET /v0/sources - Source client telemetry
"""

import logging
from datetime import date
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ...aggregator.composite_aggregator import ensure_confidence
from ...core.dates import parse_date
from ...core.errors import SentimentIndexerError
from ...core.types import CompositeIndex
from ..context import ServiceContext
from .dependencies import get_context, http_error, verify_admin_key


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v0", tags=["index"])


# =============================================================================
# Request Models
# =============================================================================

class CalculateRequest(BaseModel):
    """Request body for /v0/index/calculate."""

    date: date
    weights: Optional[dict[str, float]] = Field(None, description="Override weights (must sum to 100)")
    min_confidence: Optional[float] = Field(None, ge=0, le=100, description="Reject (422) below this confidence")


class CalculateRangeRequest(BaseModel):
    """Request body for /v0/index/calculate-range."""

    start_date: date
    end_date: date
    weights: Optional[dict[str, float]] = None
    skip_weekends: bool = Field(default=False)


def _dump(index: CompositeIndex) -> dict[str, Any]:
    return index.model_dump(mode="json", by_alias=True)


# =============================================================================
# Read Endpoints
# =============================================================================

@router.get("/index/latest")
async def get_latest_index(context: Annotated[ServiceContext, Depends(get_context)]) -> dict[str, Any]:
    """Most recent composite index."""
    try:
        index = await context.engine.get_latest_index()
    except SentimentIndexerError as e:
        raise http_error(e)
    if index is None:
        raise HTTPException(status_code=404, detail="No index calculated yet")
    return _dump(index)


@router.get("/index/history")
async def get_index_history(
    context: Annotated[ServiceContext, Depends(get_context)],
    n: Annotated[int, Query(ge=1, le=3650, description="Number of dates")] = 30,
) -> dict[str, Any]:
    """Last n indexes, newest first."""
    try:
        history = await context.engine.get_index_history(n)
    except SentimentIndexerError as e:
        raise http_error(e)
    return {"indexes": [_dump(i) for i in history], "count": len(history)}


@router.get("/index/{day}")
async def get_index(day: str, context: Annotated[ServiceContext, Depends(get_context)]) -> dict[str, Any]:
    """Index for one date (YYYY-MM-DD)."""
    try:
        index = await context.repository.get_index(parse_date(day))
    except SentimentIndexerError as e:
        raise http_error(e)
    if index is None:
        raise HTTPException(status_code=404, detail=f"No index for {day}")
    return _dump(index)


# =============================================================================
# Calculation Endpoints
# =============================================================================

@router.post("/index/calculate")
async def calculate_index(
    body: CalculateRequest,
    context: Annotated[ServiceContext, Depends(get_context)],
    _admin_verified: Annotated[bool, Depends(verify_admin_key)] = True,
) -> dict[str, Any]:
    """
    Calculate and upsert the index for one date from stored records.

    Authentication: Requires X-Admin-Key header when configured.
    """
    try:
        index = await context.engine.calculate(body.date, body.weights)
        if body.min_confidence is not None:
            ensure_confidence(index, body.min_confidence)
    except SentimentIndexerError as e:
        raise http_error(e)
    return _dump(index)


@router.post("/index/calculate-range")
async def calculate_index_range(
    body: CalculateRangeRequest,
    context: Annotated[ServiceContext, Depends(get_context)],
    _admin_verified: Annotated[bool, Depends(verify_admin_key)] = True,
) -> dict[str, Any]:
    """
    Calculate every date in [start_date, end_date].

    A failing date is reported in its outcome and does not stop the rest.
    For long ranges, prefer a RECOMPUTE job.
    """
    max_days = context.settings.max_backfill_days
    if (body.end_date - body.start_date).days + 1 > max_days:
        raise HTTPException(status_code=400, detail=f"Date range exceeds {max_days} days")

    try:
        outcomes = await context.engine.calculate_range(
            body.start_date, body.end_date, body.weights, skip_weekends=body.skip_weekends
        )
    except SentimentIndexerError as e:
        raise http_error(e)

    return {
        "start_date": body.start_date.isoformat(),
        "end_date": body.end_date.isoformat(),
        "calculated": sum(1 for o in outcomes if o.ok),
        "failed": sum(1 for o in outcomes if not o.ok),
        "outcomes": [
            {
                "date": o.date.isoformat(),
                "index": _dump(o.index) if o.index else None,
                "error": o.error,
                "error_type": o.error_type,
            }
            for o in outcomes
        ],
    }


# =============================================================================
# GET /v0/sources (Telemetry)
# =============================================================================

@router.get("/sources")
async def get_sources(context: Annotated[ServiceContext, Depends(get_context)]) -> dict[str, Any]:
    """Per-source client telemetry: circuit state, tokens, quota, counters."""
    telemetry = context.source_telemetry()
    return {
        "sources": [t.model_dump(mode="json", by_alias=True) for t in telemetry],
        "count": len(telemetry),
    }
