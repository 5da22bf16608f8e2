"""
Prometheus Metrics for Sentiment Indexer

Exposes operational metrics for monitoring and alerting.

Metrics:
- Job counters (enqueued, finished, retries) and queue depth gauges
- Source request counters, rate-limit rejections, circuit state
- Index calculation counters and latest value/confidence gauges
- Database write counters and latency histograms
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry

# Create a custom registry to avoid conflicts with default registry
REGISTRY = CollectorRegistry()


# =============================================================================
# Job Queue Metrics
# =============================================================================

JOBS_ENQUEUED_TOTAL = Counter(
    "sentiment_jobs_enqueued_total",
    "Total jobs enqueued",
    ["job_type", "priority"],
    registry=REGISTRY,
)

# Final state is one of: completed, cancelled, dead
JOBS_FINISHED_TOTAL = Counter(
    "sentiment_jobs_finished_total",
    "Total jobs reaching a terminal state",
    ["job_type", "state"],
    registry=REGISTRY,
)

JOB_RETRIES_TOTAL = Counter(
    "sentiment_job_retries_total",
    "Total job attempts that failed and were rescheduled",
    ["job_type"],
    registry=REGISTRY,
)

JOB_DURATION = Histogram(
    "sentiment_job_duration_seconds",
    "Duration of a single job attempt",
    ["job_type"],
    buckets=[1, 5, 15, 30, 60, 300, 900, 1800, 3600],
    registry=REGISTRY,
)

QUEUE_DEPTH = Gauge(
    "sentiment_queue_jobs",
    "Number of jobs per state",
    ["state"],
    registry=REGISTRY,
)


# =============================================================================
# Source Client Metrics
# =============================================================================

# outcome: success, transient, rate_limited, auth, malformed, fatal
SOURCE_REQUESTS_TOTAL = Counter(
    "sentiment_source_requests_total",
    "Total source fetch outcomes",
    ["source", "outcome"],
    registry=REGISTRY,
)

SOURCE_RATE_LIMITED_TOTAL = Counter(
    "sentiment_source_rate_limited_total",
    "Calls rejected locally by token bucket or daily quota",
    ["source"],
    registry=REGISTRY,
)

# 0=closed, 1=half_open, 2=open
SOURCE_CIRCUIT_STATE = Gauge(
    "sentiment_source_circuit_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["source"],
    registry=REGISTRY,
)


# =============================================================================
# Index Metrics
# =============================================================================

INDEX_CALCULATIONS_TOTAL = Counter(
    "sentiment_index_calculations_total",
    "Total composite index calculations",
    ["level"],
    registry=REGISTRY,
)

INDEX_LATEST_VALUE = Gauge(
    "sentiment_index_value",
    "Most recently calculated composite value",
    registry=REGISTRY,
)

INDEX_LATEST_CONFIDENCE = Gauge(
    "sentiment_index_confidence",
    "Confidence of the most recently calculated index",
    registry=REGISTRY,
)


# =============================================================================
# Database Metrics
# =============================================================================

DB_WRITES_TOTAL = Counter(
    "sentiment_db_writes_total",
    "Total database write operations",
    ["table", "status"],  # status: success, error
    registry=REGISTRY,
)

DB_WRITE_LATENCY = Histogram(
    "sentiment_db_write_latency_seconds",
    "Database write latency in seconds",
    ["table"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
    registry=REGISTRY,
)


# =============================================================================
# Service Info Metrics
# =============================================================================

SERVICE_INFO = Gauge(
    "sentiment_service_info",
    "Service information",
    ["version", "environment"],
    registry=REGISTRY,
)


# =============================================================================
# Helper Functions
# =============================================================================

_CIRCUIT_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def record_job_enqueued(job_type: str, priority: str) -> None:
    JOBS_ENQUEUED_TOTAL.labels(job_type=job_type, priority=priority).inc()


def record_job_finished(job_type: str, state: str) -> None:
    JOBS_FINISHED_TOTAL.labels(job_type=job_type, state=state).inc()


def record_job_retry(job_type: str) -> None:
    JOB_RETRIES_TOTAL.labels(job_type=job_type).inc()


def record_job_duration(job_type: str, seconds: float) -> None:
    JOB_DURATION.labels(job_type=job_type).observe(seconds)


def set_queue_depth(counts: dict[str, int]) -> None:
    """Update queue depth gauges from a state -> count mapping."""
    for state, count in counts.items():
        QUEUE_DEPTH.labels(state=state).set(count)


def record_source_outcome(source: str, outcome: str) -> None:
    SOURCE_REQUESTS_TOTAL.labels(source=source, outcome=outcome).inc()


def record_rate_limited(source: str) -> None:
    SOURCE_RATE_LIMITED_TOTAL.labels(source=source).inc()


def set_circuit_state(source: str, state: str) -> None:
    SOURCE_CIRCUIT_STATE.labels(source=source).set(_CIRCUIT_VALUES.get(state, 0))


def record_index_calculation(level: str, value: float, confidence: float) -> None:
    """Record metrics for a calculated composite index."""
    INDEX_CALCULATIONS_TOTAL.labels(level=level).inc()
    INDEX_LATEST_VALUE.set(value)
    INDEX_LATEST_CONFIDENCE.set(confidence)


def record_db_write(table: str, success: bool, latency_seconds: float) -> None:
    """Record a database write operation."""
    status = "success" if success else "error"
    DB_WRITES_TOTAL.labels(table=table, status=status).inc()
    DB_WRITE_LATENCY.labels(table=table).observe(latency_seconds)


def set_service_info(version: str, environment: str) -> None:
    """Set service info gauge."""
    SERVICE_INFO.labels(version=version, environment=environment).set(1)
