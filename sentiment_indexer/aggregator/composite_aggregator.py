"""
Composite Aggregation Engine

Computes the daily CompositeIndex from whatever SourceRecords exist for a
date.

Algorithm:
- Run every component scorer; each yields a score in [0, 100] or unavailable
- Confidence = scored components / total components * 100
- Value = sum(score * weight) / 100 over the full weight set, with the
  neutral midpoint (50) substituted for unavailable components. Remaining
  weights are NOT renormalized.
- Level from fixed thresholds (<=20 extreme fear ... >80 extreme greed)
- Upsert by date

Zero scored components still yields an index (value 50, confidence 0).
Callers needing a stricter contract use ensure_confidence().

Calculations for the same date are serialized by a per-date lock so
concurrent read-then-write cycles never interleave.
"""

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, timedelta
from typing import AsyncIterator, Mapping, Optional, Union

from ..core.constants import (
    COMPONENT_ORDER,
    DEFAULT_WEIGHTS,
    NEUTRAL_MIDPOINT,
    VALUE_PRECISION,
    WEIGHT_TOLERANCE,
    WEIGHT_TOTAL,
    level_for,
)
from ..core.dates import date_range
from ..core.errors import AggregationDegraded, ValidationError
from ..core.metrics import record_index_calculation
from ..core.types import ComponentName, ComponentScore, CompositeIndex, SourceRecord
from ..persistence.base import Repository
from .scorers import ComponentScorer, RecordsByEntity, default_scorers

logger = logging.getLogger(__name__)

WeightInput = Mapping[Union[ComponentName, str], float]


# =============================================================================
# Weights
# =============================================================================

def validate_weights(weights: WeightInput) -> dict[ComponentName, float]:
    """
    Validate and normalize a weight set.

    Keys must cover exactly the fixed component set, every weight must be
    finite and non-negative and the total must be 100 within +/-0.01.

    Raises:
        ValidationError: If any of the above does not hold
    """
    normalized: dict[ComponentName, float] = {}
    for key, value in weights.items():
        try:
            name = ComponentName(key)
        except ValueError:
            raise ValidationError(f"Unknown component in weights: {key!r}", {"component": str(key)})
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ValidationError(f"Weight for {name.value} must be a finite number, got {value!r}", {"component": name.value})
        if value < 0:
            raise ValidationError(f"Negative weight for {name.value}: {value}", {"component": name.value})
        normalized[name] = float(value)

    missing = [c.value for c in COMPONENT_ORDER if c not in normalized]
    if missing:
        raise ValidationError(f"Weights missing components: {', '.join(missing)}", {"missing": missing})

    total = sum(normalized.values())
    if abs(total - WEIGHT_TOTAL) > WEIGHT_TOLERANCE:
        raise ValidationError(
            f"Weights must sum to {WEIGHT_TOTAL:g} (+/-{WEIGHT_TOLERANCE}), got {total:g}",
            {"total": total},
        )
    return {c: normalized[c] for c in COMPONENT_ORDER}


def ensure_confidence(index: CompositeIndex, minimum: float) -> CompositeIndex:
    """Raise AggregationDegraded if the index confidence is below minimum."""
    if index.confidence < minimum:
        raise AggregationDegraded(index.date.isoformat(), index.confidence, minimum)
    return index


def compose_index(
    day: date,
    scores: list[ComponentScore],
    weights: Mapping[ComponentName, float],
) -> CompositeIndex:
    """Pure composition of component scores into an index."""
    by_name = {s.name: s for s in scores}
    components = [by_name.get(name) or ComponentScore.unavailable(name) for name in COMPONENT_ORDER]

    total = 0.0
    for component in components:
        score = component.score if component.available and component.score is not None else NEUTRAL_MIDPOINT
        total += score * weights[component.name]
    value = round(max(0.0, min(100.0, total / WEIGHT_TOTAL)), VALUE_PRECISION)

    available = sum(1 for c in components if c.available)
    confidence = round(available / len(components) * 100, VALUE_PRECISION)

    return CompositeIndex(
        date=day,
        value=value,
        level=level_for(value),
        confidence=confidence,
        components=components,
        weights={name.value: weights[name] for name in COMPONENT_ORDER},
        degraded=available < len(components),
    )


# =============================================================================
# Engine
# =============================================================================

@dataclass
class DateOutcome:
    """Per-date result of calculate_range: an index or a recorded failure."""

    date: date
    index: Optional[CompositeIndex] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.index is not None


class AggregationEngine:
    """
    Calculates and persists composite indexes.

    Usage:
        engine = AggregationEngine(repository, weights=settings.weight_map)
        index = await engine.calculate(date(2024, 1, 15))
        outcomes = await engine.calculate_range(start, end)
    """

    def __init__(
        self,
        repository: Repository,
        weights: Optional[WeightInput] = None,
        scorers: Optional[list[ComponentScorer]] = None,
    ):
        self.repository = repository
        self.weights = validate_weights(weights or DEFAULT_WEIGHTS)
        self.scorers = scorers if scorers is not None else default_scorers()
        self._date_locks: dict[date, asyncio.Lock] = {}
        self._date_waiters: dict[date, int] = {}

    @asynccontextmanager
    async def _date_lock(self, day: date) -> AsyncIterator[None]:
        """Hold the lock for one date; the lock is dropped once unused."""
        lock = self._date_locks.setdefault(day, asyncio.Lock())
        self._date_waiters[day] = self._date_waiters.get(day, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._date_waiters[day] -= 1
            if self._date_waiters[day] == 0:
                del self._date_waiters[day]
                del self._date_locks[day]

    async def _load_records(self, scorer: ComponentScorer, day: date) -> RecordsByEntity:
        start = day - timedelta(days=scorer.lookback_days)
        grouped: RecordsByEntity = {}
        for entity_id in scorer.entity_ids:
            records: list[SourceRecord] = await self.repository.get_source_records_between(
                scorer.source, start, day, entity_id=entity_id
            )
            grouped[entity_id] = records
        return grouped

    async def score_components(self, day: date) -> list[ComponentScore]:
        """Run every scorer for a date."""
        scores = []
        for scorer in self.scorers:
            records = await self._load_records(scorer, day)
            value = scorer.score(day, records)
            if value is None:
                logger.info(f"[aggregator] {day} {scorer.name.value}: unavailable")
                scores.append(ComponentScore.unavailable(scorer.name))
            else:
                scores.append(ComponentScore.scored(scorer.name, round(value, VALUE_PRECISION)))
        return scores

    async def calculate(self, day: date, weights: Optional[WeightInput] = None) -> CompositeIndex:
        """
        Compute and upsert the index for one date.

        Args:
            day: Calendar date
            weights: Optional override, validated like the configured set

        Returns:
            The persisted CompositeIndex

        Raises:
            ValidationError: Invalid weight override
            PersistenceError: Repository failure (propagated unmodified)
        """
        active = validate_weights(weights) if weights is not None else self.weights

        async with self._date_lock(day):
            scores = await self.score_components(day)
            index = compose_index(day, scores, active)
            await self.repository.save_index(index)

        record_index_calculation(index.level.value, index.value, index.confidence)
        logger.info(
            f"[aggregator] {day} index={index.value} ({index.level.value}) confidence={index.confidence}"
        )
        return index

    async def calculate_range(
        self,
        start: date,
        end: date,
        weights: Optional[WeightInput] = None,
        skip_weekends: bool = False,
    ) -> list[DateOutcome]:
        """
        Calculate every date in [start, end] independently.

        A failure on one date is recorded in its outcome and never stops the
        remaining dates.
        """
        if start > end:
            raise ValidationError("start must not be after end", {"start": str(start), "end": str(end)})
        if weights is not None:
            validate_weights(weights)

        outcomes = []
        for day in date_range(start, end, skip_weekends=skip_weekends):
            try:
                index = await self.calculate(day, weights)
                outcomes.append(DateOutcome(date=day, index=index))
            except Exception as e:
                logger.error(f"[aggregator] {day} calculation failed: {e}")
                outcomes.append(DateOutcome(date=day, error=str(e), error_type=type(e).__name__))
        return outcomes

    async def get_latest_index(self) -> Optional[CompositeIndex]:
        return await self.repository.get_latest_index()

    async def get_index_history(self, n: int) -> list[CompositeIndex]:
        if n < 1:
            raise ValidationError("n must be >= 1", {"n": n})
        return await self.repository.get_index_history(n)
