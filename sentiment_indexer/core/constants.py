"""
Sentiment Indexer Constants

Central definitions for index weights, level thresholds, job retry policy and
per-source datasets.

Weights here are only the defaults. The active weight set is configuration
(see app.config.Settings) and is validated before use.
"""

from .types import ComponentName, JobType, SentimentLevel, SourceId


# =============================================================================
# Composite Index
# =============================================================================

# Default weight set (percent). Must sum to 100.
DEFAULT_WEIGHTS: dict[ComponentName, float] = {
    ComponentName.PRICE_MOMENTUM: 25.0,
    ComponentName.INVESTOR_SENTIMENT: 25.0,
    ComponentName.OPTION_SKEW: 20.0,
    ComponentName.VOLATILITY: 15.0,
    ComponentName.SAFE_HAVEN_DEMAND: 15.0,
}

# Alternative weight set found in the legacy calculator. Kept selectable
# through configuration, never applied implicitly.
LEGACY_WEIGHTS: dict[ComponentName, float] = {
    ComponentName.PRICE_MOMENTUM: 25.0,
    ComponentName.INVESTOR_SENTIMENT: 25.0,
    ComponentName.OPTION_SKEW: 15.0,
    ComponentName.VOLATILITY: 20.0,
    ComponentName.SAFE_HAVEN_DEMAND: 15.0,
}

# Component order used when building and serializing an index
COMPONENT_ORDER: tuple[ComponentName, ...] = tuple(ComponentName)

WEIGHT_TOTAL: float = 100.0
WEIGHT_TOLERANCE: float = 0.01

# Substituted for unavailable components (no renormalization)
NEUTRAL_MIDPOINT: float = 50.0

# Upper bound (inclusive) of each level, checked in order
LEVEL_THRESHOLDS: tuple[tuple[float, SentimentLevel], ...] = (
    (20.0, SentimentLevel.EXTREME_FEAR),
    (40.0, SentimentLevel.FEAR),
    (60.0, SentimentLevel.NEUTRAL),
    (80.0, SentimentLevel.GREED),
)

VALUE_PRECISION: int = 2


def level_for(value: float) -> SentimentLevel:
    """Bucket a composite value into its sentiment level."""
    for upper, level in LEVEL_THRESHOLDS:
        if value <= upper:
            return level
    return SentimentLevel.EXTREME_GREED


# =============================================================================
# Job Retry Policy
# =============================================================================

# Default max attempts per job type (callers may override at enqueue)
DEFAULT_MAX_ATTEMPTS: dict[JobType, int] = {
    JobType.DAILY_COLLECTION: 3,
    JobType.FINANCIAL_BATCH: 2,
    JobType.RECOMPUTE: 3,
    JobType.BACKFILL: 3,
}

JOB_RETRY_BASE_DELAY_SECONDS: float = 300.0   # 5 minutes
JOB_RETRY_MAX_DELAY_SECONDS: float = 3600.0   # 1 hour

# Most recent errors kept on a job record
MAX_JOB_ERRORS: int = 200

# Progress log granularity (percent)
PROGRESS_LOG_STEP: int = 10


# =============================================================================
# Source Datasets
# =============================================================================

KRX_KOSPI = "KOSPI"
KRX_INVESTOR_TRADING = "INVESTOR_TRADING"
KRX_PUT_CALL = "PUT_CALL"
KRX_VKOSPI = "VKOSPI"
BOK_BOND_YIELD_3Y = "BOND_YIELD_3Y"
BOK_BOND_YIELD_10Y = "BOND_YIELD_10Y"
DART_DISCLOSURES = "DISCLOSURES"
DART_FINANCIALS = "FINANCIALS"

# Datasets fetched once per trading day by daily collection and backfill
DAILY_DATASETS: dict[SourceId, tuple[str, ...]] = {
    SourceId.KRX: (KRX_KOSPI, KRX_INVESTOR_TRADING, KRX_PUT_CALL, KRX_VKOSPI),
    SourceId.BOK: (BOK_BOND_YIELD_3Y, BOK_BOND_YIELD_10Y),
    SourceId.DART: (DART_DISCLOSURES,),
}

# Sources each job type touches (used for per-source concurrency caps)
JOB_TYPE_SOURCES: dict[JobType, tuple[SourceId, ...]] = {
    JobType.DAILY_COLLECTION: (SourceId.KRX, SourceId.BOK, SourceId.DART),
    JobType.FINANCIAL_BATCH: (SourceId.DART,),
    JobType.RECOMPUTE: (),
    JobType.BACKFILL: (SourceId.KRX, SourceId.BOK, SourceId.DART),
}

# DART annual report code
DART_ANNUAL_REPORT_CODE = "11011"

# DART OpenAPI daily request quota per key
DART_DAILY_QUOTA: int = 10_000


# =============================================================================
# Validation Limits
# =============================================================================

MAX_BACKFILL_DAYS: int = 730
MIN_BUSINESS_YEAR: int = 2015
