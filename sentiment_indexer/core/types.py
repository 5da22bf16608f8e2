"""
Sentiment Indexer Core Types

Canonical type definitions shared by the job queue, the source clients and
the aggregation engine. These types also define the HTTP API contract.

SERIALIZATION CONTRACT:
    Internal Python code uses snake_case (Pythonic convention).
    API responses use camelCase to match the dashboard contract.
    This is achieved via Pydantic's `alias_generator` and `populate_by_name`.

    Example:
        Internal: job.next_eligible_at
        API JSON: {"nextEligibleAt": "2024-01-15T09:05:00Z"}
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def to_camel(string: str) -> str:
    """Convert snake_case to camelCase for API serialization."""
    components = string.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Core Enums
# =============================================================================

class SourceId(str, Enum):
    """External data sources."""
    KRX = "krx"    # Korea Exchange market data
    BOK = "bok"    # Bank of Korea ECOS statistics
    DART = "dart"  # FSS electronic disclosure system


class ErrorKind(str, Enum):
    """
    Classification of a failed source fetch.

    Only TRANSIENT is retried by the source client. AUTH and MALFORMED are
    surfaced immediately, FATAL aborts the calling job.
    """
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    MALFORMED = "malformed"
    FATAL = "fatal"


class CircuitState(str, Enum):
    """Circuit breaker state."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class JobType(str, Enum):
    """Background job types, one handler each."""
    DAILY_COLLECTION = "daily_collection"
    FINANCIAL_BATCH = "financial_batch"
    RECOMPUTE = "recompute"
    BACKFILL = "backfill"


class JobPriority(str, Enum):
    """Job priority. Higher rank is dequeued first."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    JobPriority.LOW: 0,
    JobPriority.NORMAL: 1,
    JobPriority.HIGH: 2,
}


class JobState(str, Enum):
    """
    Job lifecycle state.

    PENDING -> RUNNING -> {COMPLETED, CANCELLED, FAILED}
    FAILED -> PENDING (attempts remain) | DEAD (attempts exhausted)
    RUNNING <-> PAUSED
    """
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    DEAD = "dead"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES


TERMINAL_JOB_STATES = frozenset({JobState.COMPLETED, JobState.CANCELLED, JobState.DEAD})


class SentimentLevel(str, Enum):
    """Five ordered buckets for the composite value."""
    EXTREME_FEAR = "extreme_fear"
    FEAR = "fear"
    NEUTRAL = "neutral"
    GREED = "greed"
    EXTREME_GREED = "extreme_greed"


class ComponentName(str, Enum):
    """Fixed set of index components."""
    PRICE_MOMENTUM = "price_momentum"
    INVESTOR_SENTIMENT = "investor_sentiment"
    OPTION_SKEW = "option_skew"
    VOLATILITY = "volatility"
    SAFE_HAVEN_DEMAND = "safe_haven_demand"


class LogLevel(str, Enum):
    """Job log entry level."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


# =============================================================================
# Source Types
# =============================================================================

class SourceRequest(BaseModel):
    """One logical fetch against one source."""

    model_config = ConfigDict(frozen=True)

    source: SourceId
    dataset: str = Field(..., description="Source dataset name (e.g. KOSPI, BOND_YIELD_3Y)")
    date: date
    entity_id: Optional[str] = Field(None, description="Entity key, e.g. DART corporation code")
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def record_entity_id(self) -> str:
        """Entity part of the SourceRecord key."""
        return self.entity_id or self.dataset

    def describe(self) -> str:
        suffix = f"/{self.entity_id}" if self.entity_id else ""
        return f"{self.source.value}:{self.dataset}{suffix}@{self.date.isoformat()}"


class SourceRecord(BaseModel):
    """One fetched datum keyed by (source, date, entity_id)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    source: SourceId
    date: date
    entity_id: str
    dataset: str
    payload: dict[str, Any] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple[SourceId, date, str]:
        return (self.source, self.date, self.entity_id)


class SourceTelemetry(BaseModel):
    """Per-source client state snapshot."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    source: SourceId
    circuit_state: CircuitState
    tokens_available: float
    bucket_capacity: int
    daily_quota_remaining: Optional[int] = None
    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    rate_limited_count: int = 0
    records_written: int = 0
    last_error: Optional[str] = None
    last_error_kind: Optional[ErrorKind] = None
    last_success_at: Optional[datetime] = None


# =============================================================================
# Index Types
# =============================================================================

class ComponentScore(BaseModel):
    """Score of one component, or explicitly unavailable."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    name: ComponentName
    score: Optional[float] = Field(None, ge=0, le=100)
    available: bool = False

    @classmethod
    def scored(cls, name: ComponentName, score: float) -> "ComponentScore":
        return cls(name=name, score=score, available=True)

    @classmethod
    def unavailable(cls, name: ComponentName) -> "ComponentScore":
        return cls(name=name, score=None, available=False)


class CompositeIndex(BaseModel):
    """
    Daily composite sentiment index.

    Contains no computation timestamps, so recomputing a date with identical
    records and weights produces an equal record.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    date: date
    value: float = Field(..., ge=0, le=100)
    level: SentimentLevel
    confidence: float = Field(..., ge=0, le=100, description="Share of components scored, 0-100")
    components: list[ComponentScore]
    weights: dict[str, float] = Field(..., description="Weight snapshot keyed by component name")
    degraded: bool = Field(default=False, description="True if any component was unavailable")

    def component(self, name: ComponentName) -> Optional[ComponentScore]:
        for c in self.components:
            if c.name == name:
                return c
        return None


# =============================================================================
# Job Types
# =============================================================================

class JobParameters(BaseModel):
    """Immutable job parameters. Validated per job type at enqueue."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    target_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    sources: Optional[tuple[SourceId, ...]] = Field(None, description="Source filter (default: all for the type)")
    entity_ids: tuple[str, ...] = Field(default=(), description="DART corporation codes")
    business_year: Optional[int] = None
    overwrite_existing: bool = False
    skip_weekends: bool = True
    weights: Optional[dict[str, float]] = None
    min_confidence: Optional[float] = Field(None, ge=0, le=100)
    reason: Optional[str] = None


class JobProgress(BaseModel):
    """Progress snapshot persisted by the queue."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    processed: int = 0
    failed: int = 0
    total: int = 0
    percentage: float = 0.0
    items_per_second: float = 0.0
    eta_seconds: Optional[float] = None
    current_item: Optional[str] = None


class JobError(BaseModel):
    """One recorded job error."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    timestamp: datetime = Field(default_factory=utc_now)
    message: str
    classification: ErrorKind
    attempt: int = 0
    item: Optional[str] = None


class JobLogEntry(BaseModel):
    """Append-only job log line."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel = LogLevel.INFO
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    """
    A unit of background work.

    The queue owns the authoritative record. Handlers never see this object,
    only a copy of its parameters and a progress callback.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    type: JobType
    priority: JobPriority = JobPriority.NORMAL
    parameters: JobParameters = Field(default_factory=JobParameters)
    state: JobState = JobState.PENDING
    attempts: int = 0
    max_attempts: int = 3
    next_eligible_at: Optional[datetime] = None
    sequence: int = Field(default=0, description="Enqueue order, FIFO tie-break")
    progress: JobProgress = Field(default_factory=JobProgress)
    result: Optional[dict[str, Any]] = None
    errors: list[JobError] = Field(default_factory=list)
    cancel_requested: bool = False
    pause_requested: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobFilter(BaseModel):
    """Filter for list_jobs."""

    states: Optional[list[JobState]] = None
    types: Optional[list[JobType]] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    def matches(self, job: Job) -> bool:
        if self.states and job.state not in self.states:
            return False
        if self.types and job.type not in self.types:
            return False
        return True
