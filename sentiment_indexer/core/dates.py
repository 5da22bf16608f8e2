"""
Calendar helpers for trading-day ranges and provider date formats.
"""

from datetime import date, timedelta

from .errors import ValidationError


def parse_date(value: str) -> date:
    """Parse an ISO date (YYYY-MM-DD)."""
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid date: {value!r}", {"value": value}, e)


def to_compact(d: date) -> str:
    """YYYYMMDD, as used by KRX, ECOS and DART."""
    return d.strftime("%Y%m%d")


def date_range(start: date, end: date, skip_weekends: bool = False) -> list[date]:
    """Inclusive list of dates from start to end."""
    if start > end:
        return []
    days = []
    current = start
    while current <= end:
        if not (skip_weekends and current.weekday() >= 5):
            days.append(current)
        current += timedelta(days=1)
    return days


def is_weekend(d: date) -> bool:
    return d.weekday() >= 5
