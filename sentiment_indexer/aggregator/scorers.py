"""
Component Scorers

Each scorer maps the SourceRecords available for a date onto a score in
[0, 100], or None when its required records are missing. Scorers are pure:
the engine loads the records and hands them over grouped by entity id.

Score mappings:
- price_momentum: MA20/MA120 of KOSPI close, (ratio - 0.9) * 500
- investor_sentiment: 5-day foreign + institutional net buying, +/-10 trillion KRW -> 0..100
- option_skew: 100 - (put/call ratio - 0.5) * 66.67
- volatility: 100 - (VKOSPI - 10) * 3.33
- safe_haven_demand: (10Y - 3Y yield spread + 0.5) * 40
"""

from dataclasses import dataclass
from datetime import date
from statistics import fmean
from typing import Any, Callable, Optional

from ..core.constants import (
    BOK_BOND_YIELD_10Y,
    BOK_BOND_YIELD_3Y,
    KRX_INVESTOR_TRADING,
    KRX_KOSPI,
    KRX_PUT_CALL,
    KRX_VKOSPI,
)
from ..core.types import ComponentName, SourceId, SourceRecord

RecordsByEntity = dict[str, list[SourceRecord]]

MOMENTUM_SHORT_WINDOW = 20
MOMENTUM_LONG_WINDOW = 120
INVESTOR_WINDOW = 5
NET_BUYING_RANGE_KRW = 10_000_000_000_000  # 10 trillion


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _number(record: SourceRecord, key: str) -> Optional[float]:
    value: Any = record.payload.get(key)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _on(day: date, records: list[SourceRecord]) -> Optional[SourceRecord]:
    """Record for exactly this date, if any."""
    for record in records:
        if record.date == day:
            return record
    return None


@dataclass(frozen=True)
class ComponentScorer:
    """
    Named scorer bound to the records it reads.

    Attributes:
        name: Component name
        source: Source the records come from
        entity_ids: Record entity ids to load
        lookback_days: Calendar days before the target date to load (0 = target date only)
        fn: (date, records by entity id) -> score or None
    """

    name: ComponentName
    source: SourceId
    entity_ids: tuple[str, ...]
    lookback_days: int
    fn: Callable[[date, RecordsByEntity], Optional[float]]

    def score(self, day: date, records: RecordsByEntity) -> Optional[float]:
        raw = self.fn(day, records)
        return None if raw is None else clamp(raw)


# =============================================================================
# Scoring functions
# =============================================================================

def score_price_momentum(day: date, records: RecordsByEntity) -> Optional[float]:
    history = sorted(records.get(KRX_KOSPI, []), key=lambda r: r.date)
    if not history or history[-1].date != day:
        return None
    closes = [c for c in (_number(r, "close") for r in history[-MOMENTUM_LONG_WINDOW:]) if c is not None]
    if len(closes) < MOMENTUM_SHORT_WINDOW:
        return None
    ma_short = fmean(closes[-MOMENTUM_SHORT_WINDOW:])
    ma_long = fmean(closes)
    if ma_long <= 0:
        return None
    return (ma_short / ma_long - 0.9) * 500


def score_investor_sentiment(day: date, records: RecordsByEntity) -> Optional[float]:
    history = sorted(records.get(KRX_INVESTOR_TRADING, []), key=lambda r: r.date)
    if not history or history[-1].date != day:
        return None
    total = 0.0
    for record in history[-INVESTOR_WINDOW:]:
        foreign = _number(record, "foreign_net")
        institutional = _number(record, "institutional_net")
        if foreign is None and institutional is None:
            return None
        total += (foreign or 0.0) + (institutional or 0.0)
    return (total + NET_BUYING_RANGE_KRW) * 100 / (NET_BUYING_RANGE_KRW * 2)


def score_option_skew(day: date, records: RecordsByEntity) -> Optional[float]:
    record = _on(day, records.get(KRX_PUT_CALL, []))
    ratio = _number(record, "put_call_ratio") if record else None
    if ratio is None:
        return None
    return 100 - (ratio - 0.5) * 66.67


def score_volatility(day: date, records: RecordsByEntity) -> Optional[float]:
    record = _on(day, records.get(KRX_VKOSPI, []))
    vkospi = _number(record, "value") if record else None
    if vkospi is None:
        return None
    return 100 - (vkospi - 10) * 3.33


def score_safe_haven_demand(day: date, records: RecordsByEntity) -> Optional[float]:
    short = _on(day, records.get(BOK_BOND_YIELD_3Y, []))
    long = _on(day, records.get(BOK_BOND_YIELD_10Y, []))
    if short is None or long is None:
        return None
    y3 = _number(short, "yield")
    y10 = _number(long, "yield")
    if y3 is None or y10 is None:
        return None
    return (y10 - y3 + 0.5) * 40


def default_scorers() -> list[ComponentScorer]:
    """The fixed component set, in index order."""
    return [
        ComponentScorer(
            name=ComponentName.PRICE_MOMENTUM,
            source=SourceId.KRX,
            entity_ids=(KRX_KOSPI,),
            lookback_days=200,  # covers 120 trading days
            fn=score_price_momentum,
        ),
        ComponentScorer(
            name=ComponentName.INVESTOR_SENTIMENT,
            source=SourceId.KRX,
            entity_ids=(KRX_INVESTOR_TRADING,),
            lookback_days=14,
            fn=score_investor_sentiment,
        ),
        ComponentScorer(
            name=ComponentName.OPTION_SKEW,
            source=SourceId.KRX,
            entity_ids=(KRX_PUT_CALL,),
            lookback_days=0,
            fn=score_option_skew,
        ),
        ComponentScorer(
            name=ComponentName.VOLATILITY,
            source=SourceId.KRX,
            entity_ids=(KRX_VKOSPI,),
            lookback_days=0,
            fn=score_volatility,
        ),
        ComponentScorer(
            name=ComponentName.SAFE_HAVEN_DEMAND,
            source=SourceId.BOK,
            entity_ids=(BOK_BOND_YIELD_3Y, BOK_BOND_YIELD_10Y),
            lookback_days=0,
            fn=score_safe_haven_demand,
        ),
    ]
