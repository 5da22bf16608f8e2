"""
Job Parameter Validation

Per-type checks applied by JobQueue.enqueue() before a job is accepted.
"""

from typing import Optional

from ..aggregator.composite_aggregator import validate_weights
from ..core.constants import JOB_TYPE_SOURCES, MAX_BACKFILL_DAYS, MIN_BUSINESS_YEAR
from ..core.dates import date_range
from ..core.errors import ValidationError
from ..core.types import JobParameters, JobType, utc_now


def _require_range(params: JobParameters, max_days: Optional[int] = None) -> None:
    if params.start_date is None or params.end_date is None:
        raise ValidationError("start_date and end_date are required")
    if params.start_date > params.end_date:
        raise ValidationError(
            "start_date must not be after end_date",
            {"start_date": str(params.start_date), "end_date": str(params.end_date)},
        )
    if max_days is not None and (params.end_date - params.start_date).days + 1 > max_days:
        raise ValidationError(f"Date range exceeds {max_days} days")
    if params.skip_weekends and not date_range(params.start_date, params.end_date, skip_weekends=True):
        raise ValidationError(
            "Date range contains no weekdays",
            {"start_date": str(params.start_date), "end_date": str(params.end_date)},
        )


def _require_date_or_range(params: JobParameters, max_days: Optional[int] = None) -> None:
    if params.target_date is not None:
        if params.start_date is not None or params.end_date is not None:
            raise ValidationError("Use either target_date or start_date/end_date, not both")
        return
    _require_range(params, max_days)


def validate_job_parameters(
    job_type: JobType,
    params: JobParameters,
    max_backfill_days: int = MAX_BACKFILL_DAYS,
) -> None:
    """
    Validate parameters for a job type.

    Raises:
        ValidationError: If the parameters are not acceptable for the type
    """
    if params.sources is not None:
        allowed = set(JOB_TYPE_SOURCES[job_type])
        if not params.sources:
            raise ValidationError("sources filter must not be empty")
        unsupported = [s.value for s in params.sources if s not in allowed]
        if unsupported:
            raise ValidationError(
                f"Sources not supported by {job_type.value}: {', '.join(unsupported)}",
                {"sources": unsupported},
            )

    if params.weights is not None:
        if job_type != JobType.RECOMPUTE:
            raise ValidationError("weights are only accepted for recompute jobs")
        validate_weights(params.weights)

    if job_type == JobType.DAILY_COLLECTION:
        if params.target_date is None:
            raise ValidationError("target_date is required")

    elif job_type == JobType.FINANCIAL_BATCH:
        if not params.entity_ids:
            raise ValidationError("entity_ids must not be empty")
        if len(set(params.entity_ids)) != len(params.entity_ids):
            raise ValidationError("entity_ids must be unique")
        year = params.business_year
        if year is None:
            raise ValidationError("business_year is required")
        if not MIN_BUSINESS_YEAR <= year <= utc_now().year:
            raise ValidationError(f"business_year must be between {MIN_BUSINESS_YEAR} and the current year")

    elif job_type == JobType.RECOMPUTE:
        _require_date_or_range(params, max_backfill_days)

    elif job_type == JobType.BACKFILL:
        _require_range(params, max_backfill_days)
