"""
Sentiment Indexer Exceptions

Exception hierarchy shared by the queue, the source clients, the aggregation
engine and the repositories.

Source clients do not raise for source failures: they return a FetchResult
tagged with an ErrorKind. FetchResult.raise_for_error() maps a failed result
onto the SourceError subclasses below.
"""

from datetime import datetime
from typing import Any, Optional

from .types import ErrorKind, utc_now


class SentimentIndexerError(Exception):
    """Base exception for all indexer errors."""

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error
        self.timestamp: datetime = utc_now()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "original_error": str(self.original_error) if self.original_error else None,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message} (caused by: {self.original_error})"
        return self.message


class ValidationError(SentimentIndexerError):
    """Bad job parameters or a weight set that does not sum to 100."""


# =============================================================================
# Source Errors
# =============================================================================

class SourceError(SentimentIndexerError):
    """Failed fetch against an external source."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, context, original_error)
        self.source = source

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"source": self.source, "kind": self.kind.value})
        return data


class SourceUnavailable(SourceError):
    """Source client exhausted its retries on transient failures."""
    kind = ErrorKind.TRANSIENT


class RateLimited(SourceError):
    """Token bucket or daily quota exhausted, or provider returned 429."""
    kind = ErrorKind.RATE_LIMITED


class CircuitOpen(SourceError):
    """Circuit breaker is open; call failed fast."""
    kind = ErrorKind.TRANSIENT


class SourceAuthError(SourceError):
    """Credentials rejected by the source."""
    kind = ErrorKind.AUTH


class MalformedPayload(SourceError):
    """Response body did not match the expected shape."""
    kind = ErrorKind.MALFORMED


class SourceFatalError(SourceError):
    """Non-retryable failure that aborts the calling job."""
    kind = ErrorKind.FATAL


# =============================================================================
# Persistence / Queue / Aggregation Errors
# =============================================================================

class PersistenceError(SentimentIndexerError):
    """Repository call failed. Always fatal to the current operation."""


class JobNotFound(SentimentIndexerError):
    """No job with the given id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", {"job_id": job_id})
        self.job_id = job_id


class JobStateConflict(SentimentIndexerError):
    """Control operation is not valid in the job's current state."""

    def __init__(self, job_id: str, state: str, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} job {job_id} in state {state}",
            {"job_id": job_id, "state": state, "operation": operation},
        )
        self.job_id = job_id
        self.state = state
        self.operation = operation


class AggregationDegraded(SentimentIndexerError):
    """Index confidence is below a caller-chosen minimum. Informational."""

    def __init__(self, date_str: str, confidence: float, minimum: float) -> None:
        super().__init__(
            f"Index for {date_str} degraded: confidence {confidence} < {minimum}",
            {"date": date_str, "confidence": confidence, "minimum": minimum},
        )
        self.confidence = confidence
        self.minimum = minimum


# =============================================================================
# Handler Control Flow
# =============================================================================

class JobCancelled(SentimentIndexerError):
    """Raised at a handler checkpoint once cancellation was requested."""


class JobFatalError(SentimentIndexerError):
    """Handler-level failure that sends the job down the retry/DEAD path."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.FATAL,
        context: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, context, original_error)
        self.kind = kind


SOURCE_ERRORS_BY_KIND: dict[ErrorKind, type[SourceError]] = {
    ErrorKind.TRANSIENT: SourceUnavailable,
    ErrorKind.RATE_LIMITED: RateLimited,
    ErrorKind.AUTH: SourceAuthError,
    ErrorKind.MALFORMED: MalformedPayload,
    ErrorKind.FATAL: SourceFatalError,
}
