"""
Unit tests for the composite aggregation engine.

Tests:
- Component scorer mappings and clamping
- Weight validation
- Composition (neutral substitution, confidence, level)
- Engine calculation against an in-memory repository
- Range calculation continuing past failures
"""

import asyncio
import pytest
from datetime import date, timedelta

from sentiment_indexer.aggregator.composite_aggregator import (
    AggregationEngine,
    compose_index,
    ensure_confidence,
    validate_weights,
)
from sentiment_indexer.aggregator.scorers import (
    ComponentScorer,
    clamp,
    score_investor_sentiment,
    score_option_skew,
    score_price_momentum,
    score_safe_haven_demand,
    score_volatility,
)
from sentiment_indexer.core.constants import DEFAULT_WEIGHTS, LEGACY_WEIGHTS
from sentiment_indexer.core.errors import AggregationDegraded, ValidationError
from sentiment_indexer.core.types import (
    ComponentName,
    ComponentScore,
    SentimentLevel,
    SourceId,
    SourceRecord,
)
from sentiment_indexer.persistence.memory import InMemoryRepository


DAY = date(2024, 1, 15)


def record(source: SourceId, entity_id: str, payload: dict, day: date = DAY) -> SourceRecord:
    return SourceRecord(source=source, date=day, entity_id=entity_id, dataset=entity_id, payload=payload)


def kospi_history(closes: list[float], end: date = DAY) -> list[SourceRecord]:
    start = end - timedelta(days=len(closes) - 1)
    return [
        record(SourceId.KRX, "KOSPI", {"close": close}, start + timedelta(days=i))
        for i, close in enumerate(closes)
    ]


# =============================================================================
# Scorers
# =============================================================================


class TestScorers:
    """Tests for the per-component score mappings."""

    def test_price_momentum_flat_market(self):
        """MA20 == MA120 gives (1.0 - 0.9) * 500 = 50."""
        records = {"KOSPI": kospi_history([2500.0] * 120)}
        assert score_price_momentum(DAY, records) == pytest.approx(50.0)

    def test_price_momentum_needs_twenty_closes(self):
        records = {"KOSPI": kospi_history([2500.0] * 19)}
        assert score_price_momentum(DAY, records) is None

    def test_price_momentum_needs_target_date(self):
        records = {"KOSPI": kospi_history([2500.0] * 120, end=DAY - timedelta(days=1))}
        assert score_price_momentum(DAY, records) is None

    def test_investor_sentiment(self):
        """+5 trillion net buying over five days maps to 75."""
        history = [
            record(
                SourceId.KRX,
                "INVESTOR_TRADING",
                {"foreign_net": 600_000_000_000, "institutional_net": 400_000_000_000},
                DAY - timedelta(days=4 - i),
            )
            for i in range(5)
        ]
        assert score_investor_sentiment(DAY, {"INVESTOR_TRADING": history}) == pytest.approx(75.0)

    def test_option_skew(self):
        records = {"PUT_CALL": [record(SourceId.KRX, "PUT_CALL", {"put_call_ratio": 0.5})]}
        assert score_option_skew(DAY, records) == pytest.approx(100.0)

    def test_volatility(self):
        records = {"VKOSPI": [record(SourceId.KRX, "VKOSPI", {"value": 20.0})]}
        assert score_volatility(DAY, records) == pytest.approx(66.7)

    def test_safe_haven_demand(self):
        records = {
            "BOND_YIELD_3Y": [record(SourceId.BOK, "BOND_YIELD_3Y", {"yield": 3.0})],
            "BOND_YIELD_10Y": [record(SourceId.BOK, "BOND_YIELD_10Y", {"yield": 3.5})],
        }
        assert score_safe_haven_demand(DAY, records) == pytest.approx(40.0)

    def test_safe_haven_needs_both_tenors(self):
        records = {"BOND_YIELD_3Y": [record(SourceId.BOK, "BOND_YIELD_3Y", {"yield": 3.0})]}
        assert score_safe_haven_demand(DAY, records) is None

    def test_missing_records_are_unavailable(self):
        assert score_option_skew(DAY, {}) is None
        assert score_volatility(DAY, {"VKOSPI": []}) is None

    def test_scorer_clamps(self):
        """Raw scores outside [0, 100] are clamped."""
        scorer = ComponentScorer(
            name=ComponentName.VOLATILITY,
            source=SourceId.KRX,
            entity_ids=("VKOSPI",),
            lookback_days=0,
            fn=score_volatility,
        )
        calm = {"VKOSPI": [record(SourceId.KRX, "VKOSPI", {"value": 5.0})]}
        panic = {"VKOSPI": [record(SourceId.KRX, "VKOSPI", {"value": 60.0})]}

        assert scorer.score(DAY, calm) == 100.0
        assert scorer.score(DAY, panic) == 0.0

    def test_clamp(self):
        assert clamp(-3) == 0.0
        assert clamp(130) == 100.0
        assert clamp(42.5) == 42.5


# =============================================================================
# Weights
# =============================================================================


class TestValidateWeights:
    """Tests for weight validation."""

    def test_default_weights_valid(self):
        assert validate_weights(DEFAULT_WEIGHTS) == DEFAULT_WEIGHTS

    def test_string_keys_accepted(self):
        weights = {name.value: weight for name, weight in LEGACY_WEIGHTS.items()}
        assert validate_weights(weights) == LEGACY_WEIGHTS

    @pytest.mark.parametrize("delta", [-1, 1])
    def test_sum_off_by_one_rejected(self, delta):
        """Sets summing to 99 or 101 are rejected."""
        weights = dict(DEFAULT_WEIGHTS)
        weights[ComponentName.PRICE_MOMENTUM] += delta
        with pytest.raises(ValidationError):
            validate_weights(weights)

    def test_sum_within_tolerance_accepted(self):
        weights = dict(DEFAULT_WEIGHTS)
        weights[ComponentName.PRICE_MOMENTUM] += 0.005
        validate_weights(weights)

    def test_unknown_component_rejected(self):
        weights = {name.value: w for name, w in DEFAULT_WEIGHTS.items()}
        weights["moon_phase"] = 0
        with pytest.raises(ValidationError, match="Unknown component"):
            validate_weights(weights)

    def test_missing_component_rejected(self):
        weights = dict(DEFAULT_WEIGHTS)
        del weights[ComponentName.VOLATILITY]
        with pytest.raises(ValidationError, match="missing"):
            validate_weights(weights)

    def test_negative_weight_rejected(self):
        weights = dict(DEFAULT_WEIGHTS)
        weights[ComponentName.VOLATILITY] = -15
        weights[ComponentName.PRICE_MOMENTUM] = 55
        with pytest.raises(ValidationError, match="Negative"):
            validate_weights(weights)

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_weight_rejected(self, bad):
        weights = dict(DEFAULT_WEIGHTS)
        weights[ComponentName.PRICE_MOMENTUM] = bad
        with pytest.raises(ValidationError, match="finite"):
            validate_weights(weights)


# =============================================================================
# Composition
# =============================================================================


def scores(*values) -> list[ComponentScore]:
    """Scores in component order; None means unavailable."""
    order = list(DEFAULT_WEIGHTS)
    return [
        ComponentScore.unavailable(name) if value is None else ComponentScore.scored(name, value)
        for name, value in zip(order, values)
    ]


class TestComposeIndex:
    """Tests for the pure composition step."""

    def test_partial_components_scenario(self):
        """80, 70, -, 60, - with 25/25/20/15/15 gives 64, greed, 60% confidence."""
        index = compose_index(DAY, scores(80, 70, None, 60, None), DEFAULT_WEIGHTS)

        assert index.value == 64.0
        assert index.level == SentimentLevel.GREED
        assert index.confidence == 60.0
        assert index.degraded

    def test_all_unavailable_is_neutral(self):
        index = compose_index(DAY, scores(None, None, None, None, None), DEFAULT_WEIGHTS)

        assert index.value == 50.0
        assert index.level == SentimentLevel.NEUTRAL
        assert index.confidence == 0.0
        assert all(not c.available for c in index.components)

    def test_all_available_not_degraded(self):
        index = compose_index(DAY, scores(10, 10, 10, 10, 10), DEFAULT_WEIGHTS)

        assert index.value == 10.0
        assert index.level == SentimentLevel.EXTREME_FEAR
        assert index.confidence == 100.0
        assert not index.degraded

    def test_confidence_monotone_in_available_components(self):
        """Each additional scored component raises confidence."""
        previous = -1.0
        for available in range(6):
            values = [70] * available + [None] * (5 - available)
            index = compose_index(DAY, scores(*values), DEFAULT_WEIGHTS)
            assert index.confidence > previous
            previous = index.confidence

    def test_value_within_bounds(self):
        for values in ((0, 0, 0, 0, 0), (100, 100, 100, 100, 100), (0, 100, None, 0, 100)):
            index = compose_index(DAY, scores(*values), DEFAULT_WEIGHTS)
            assert 0.0 <= index.value <= 100.0

    def test_missing_scores_filled_as_unavailable(self):
        index = compose_index(DAY, [], DEFAULT_WEIGHTS)
        assert len(index.components) == 5
        assert index.value == 50.0

    def test_weights_snapshot(self):
        index = compose_index(DAY, scores(50, 50, 50, 50, 50), LEGACY_WEIGHTS)
        assert index.weights["volatility"] == 20
        assert index.weights["option_skew"] == 15

    def test_ensure_confidence(self):
        index = compose_index(DAY, scores(80, 70, None, 60, None), DEFAULT_WEIGHTS)

        assert ensure_confidence(index, 60.0) is index
        with pytest.raises(AggregationDegraded):
            ensure_confidence(index, 80.0)


# =============================================================================
# Engine
# =============================================================================


async def seed(repository: InMemoryRepository, day: date = DAY) -> None:
    """Option skew, volatility and safe haven records for one date."""
    for r in (
        record(SourceId.KRX, "PUT_CALL", {"put_call_ratio": 0.5}, day),
        record(SourceId.KRX, "VKOSPI", {"value": 20.0}, day),
        record(SourceId.BOK, "BOND_YIELD_3Y", {"yield": 3.0}, day),
        record(SourceId.BOK, "BOND_YIELD_10Y", {"yield": 3.5}, day),
    ):
        await repository.save_source_record(r)


class TestAggregationEngine:
    """Tests for AggregationEngine against InMemoryRepository."""

    @pytest.mark.asyncio
    async def test_calculate_from_records(self):
        repository = InMemoryRepository()
        await seed(repository)
        engine = AggregationEngine(repository)

        index = await engine.calculate(DAY)

        assert index.confidence == 60.0
        assert index.component(ComponentName.OPTION_SKEW).score == 100.0
        assert index.component(ComponentName.VOLATILITY).score == 66.7
        assert index.component(ComponentName.SAFE_HAVEN_DEMAND).score == 40.0
        assert not index.component(ComponentName.PRICE_MOMENTUM).available
        assert index.value == pytest.approx(61.0, abs=0.02)
        assert await repository.get_index(DAY) == index

    @pytest.mark.asyncio
    async def test_calculate_is_idempotent(self):
        repository = InMemoryRepository()
        await seed(repository)
        engine = AggregationEngine(repository)

        first = await engine.calculate(DAY)
        second = await engine.calculate(DAY)

        assert first == second
        assert len(await repository.get_index_history(10)) == 1

    @pytest.mark.asyncio
    async def test_no_records_yields_neutral_index(self):
        engine = AggregationEngine(InMemoryRepository())

        index = await engine.calculate(DAY)

        assert index.value == 50.0
        assert index.level == SentimentLevel.NEUTRAL
        assert index.confidence == 0.0

    @pytest.mark.asyncio
    async def test_weight_override_validated(self):
        engine = AggregationEngine(InMemoryRepository())
        with pytest.raises(ValidationError):
            await engine.calculate(DAY, {"volatility": 100})

    def test_invalid_configured_weights_rejected(self):
        with pytest.raises(ValidationError):
            AggregationEngine(InMemoryRepository(), weights={"volatility": 100})

    @pytest.mark.asyncio
    async def test_calculate_range_continues_after_failure(self):
        """A scorer raising on one date does not stop the other dates."""
        bad_day = DAY + timedelta(days=1)

        def flaky(day, records):
            if day == bad_day:
                raise RuntimeError("boom")
            return 70.0

        scorer = ComponentScorer(
            name=ComponentName.VOLATILITY,
            source=SourceId.KRX,
            entity_ids=("VKOSPI",),
            lookback_days=0,
            fn=flaky,
        )
        repository = InMemoryRepository()
        engine = AggregationEngine(repository, scorers=[scorer])

        outcomes = await engine.calculate_range(DAY, DAY + timedelta(days=2))

        assert [o.ok for o in outcomes] == [True, False, True]
        assert outcomes[1].error_type == "RuntimeError"
        assert await repository.get_index(bad_day) is None
        assert outcomes[2].index.component(ComponentName.VOLATILITY).score == 70.0

    @pytest.mark.asyncio
    async def test_calculate_range_skip_weekends(self):
        engine = AggregationEngine(InMemoryRepository())

        # 2024-01-19 Friday .. 2024-01-22 Monday
        outcomes = await engine.calculate_range(date(2024, 1, 19), date(2024, 1, 22), skip_weekends=True)

        assert [o.date for o in outcomes] == [date(2024, 1, 19), date(2024, 1, 22)]

    @pytest.mark.asyncio
    async def test_calculate_range_rejects_reversed(self):
        engine = AggregationEngine(InMemoryRepository())
        with pytest.raises(ValidationError):
            await engine.calculate_range(DAY, DAY - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_history_newest_first(self):
        repository = InMemoryRepository()
        engine = AggregationEngine(repository)
        for offset in range(3):
            await engine.calculate(DAY + timedelta(days=offset))

        history = await engine.get_index_history(2)
        latest = await engine.get_latest_index()

        assert [i.date for i in history] == [DAY + timedelta(days=2), DAY + timedelta(days=1)]
        assert latest.date == DAY + timedelta(days=2)

    @pytest.mark.asyncio
    async def test_history_rejects_non_positive(self):
        engine = AggregationEngine(InMemoryRepository())
        with pytest.raises(ValidationError):
            await engine.get_index_history(0)

    @pytest.mark.asyncio
    async def test_nan_weight_override_rejected(self):
        repository = InMemoryRepository()
        engine = AggregationEngine(repository)
        weights = {**DEFAULT_WEIGHTS, ComponentName.PRICE_MOMENTUM: float("nan")}

        with pytest.raises(ValidationError):
            await engine.calculate(DAY, weights)
        assert await repository.get_index(DAY) is None

    @pytest.mark.asyncio
    async def test_same_date_calculations_do_not_interleave(self):
        """Two concurrent calculations of one date run read-score-write one after the other."""
        repository = TracingRepository()
        engine = AggregationEngine(repository)
        reads_per_calculation = sum(len(s.entity_ids) for s in engine.scorers)

        await asyncio.gather(engine.calculate(DAY), engine.calculate(DAY))

        one_pass = ["read"] * reads_per_calculation + ["save-start", "save-end"]
        assert repository.events == one_pass * 2
        assert engine._date_locks == {}


class TracingRepository(InMemoryRepository):
    """Records reads and index saves, yielding to the loop inside each."""

    def __init__(self):
        super().__init__()
        self.events: list[str] = []

    async def get_source_records_between(self, *args, **kwargs):
        self.events.append("read")
        await asyncio.sleep(0)
        return await super().get_source_records_between(*args, **kwargs)

    async def save_index(self, index):
        self.events.append("save-start")
        await asyncio.sleep(0)
        await super().save_index(index)
        self.events.append("save-end")
