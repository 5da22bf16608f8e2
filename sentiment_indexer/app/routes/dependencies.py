"""
Shared route dependencies: service context lookup, admin key check and
error-to-status mapping.
"""

import logging
from typing import Annotated, Optional

from fastapi import Header, HTTPException, Request

from ...core.errors import (
    AggregationDegraded,
    JobNotFound,
    JobStateConflict,
    PersistenceError,
    SentimentIndexerError,
    ValidationError,
)
from ..config import settings
from ..context import ServiceContext


logger = logging.getLogger(__name__)

# Error class -> HTTP status
_STATUS_BY_ERROR: tuple[tuple[type[SentimentIndexerError], int], ...] = (
    (ValidationError, 400),
    (JobNotFound, 404),
    (JobStateConflict, 409),
    (AggregationDegraded, 422),
    (PersistenceError, 503),
)


def get_context(request: Request) -> ServiceContext:
    """Get service context from app state."""
    context = getattr(request.app.state, "context", None)
    if not context:
        raise HTTPException(status_code=503, detail="Service context not initialized")
    return context


def http_error(error: SentimentIndexerError) -> HTTPException:
    """Map an indexer error onto an HTTPException."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            if status >= 500:
                logger.error(f"Request failed: {error}")
            return HTTPException(status_code=status, detail=error.message)
    logger.error(f"Unhandled indexer error: {error}")
    return HTTPException(status_code=500, detail=error.message)


def verify_admin_key(
    x_admin_key: Annotated[Optional[str], Header(alias="X-Admin-Key")] = None,
) -> bool:
    """
    Verify admin API key for mutation endpoints.

    Requires X-Admin-Key header matching ADMIN_API_KEY environment variable.
    In non-production environments with no key configured, allows access.

    Raises:
        HTTPException 401 if key is required but missing
        HTTPException 403 if key is invalid
        HTTPException 503 if production has no key configured
    """
    configured_key = settings.admin_api_key

    if settings.environment == "production" and not configured_key:
        logger.error("ADMIN_API_KEY not configured in production - rejecting request")
        raise HTTPException(
            status_code=503,
            detail="Admin API key not configured. Contact administrator."
        )

    if configured_key:
        if not x_admin_key:
            raise HTTPException(
                status_code=401,
                detail="X-Admin-Key header required for mutation endpoints"
            )
        if x_admin_key != configured_key:
            logger.warning("Invalid admin key attempt")
            raise HTTPException(status_code=403, detail="Invalid admin key")
        return True

    # Non-production with no key configured: allow (for local dev)
    logger.debug("Admin key check bypassed (non-production, no key configured)")
    return True
