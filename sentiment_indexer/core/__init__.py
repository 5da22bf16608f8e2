# Sentiment Indexer Core Modules
# Types, constants and errors shared by every layer
"""
Core definitions for the sentiment indexer.

Modules:
- types: Canonical type definitions (Pydantic models)
- constants: Weights, thresholds and dataset names
- errors: Error taxonomy
- dates: Date parsing and ranges
- metrics: Prometheus metrics
"""

from .types import (
    CircuitState,
    ComponentName,
    ComponentScore,
    CompositeIndex,
    ErrorKind,
    Job,
    JobError,
    JobFilter,
    JobLogEntry,
    JobParameters,
    JobPriority,
    JobProgress,
    JobState,
    JobType,
    LogLevel,
    SentimentLevel,
    SourceId,
    SourceRecord,
    SourceRequest,
    SourceTelemetry,
)

from .constants import (
    COMPONENT_ORDER,
    DAILY_DATASETS,
    DEFAULT_WEIGHTS,
    LEGACY_WEIGHTS,
    NEUTRAL_MIDPOINT,
    level_for,
)

from .errors import (
    AggregationDegraded,
    JobNotFound,
    JobStateConflict,
    PersistenceError,
    SentimentIndexerError,
    SourceError,
    ValidationError,
)

from .dates import date_range, parse_date

__all__ = [
    # Types
    "CircuitState",
    "ComponentName",
    "ComponentScore",
    "CompositeIndex",
    "ErrorKind",
    "Job",
    "JobError",
    "JobFilter",
    "JobLogEntry",
    "JobParameters",
    "JobPriority",
    "JobProgress",
    "JobState",
    "JobType",
    "LogLevel",
    "SentimentLevel",
    "SourceId",
    "SourceRecord",
    "SourceRequest",
    "SourceTelemetry",
    # Constants
    "COMPONENT_ORDER",
    "DAILY_DATASETS",
    "DEFAULT_WEIGHTS",
    "LEGACY_WEIGHTS",
    "NEUTRAL_MIDPOINT",
    "level_for",
    # Errors
    "AggregationDegraded",
    "JobNotFound",
    "JobStateConflict",
    "PersistenceError",
    "SentimentIndexerError",
    "SourceError",
    "ValidationError",
    # Dates
    "date_range",
    "parse_date",
]
