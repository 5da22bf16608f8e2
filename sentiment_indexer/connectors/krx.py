"""
KRX (Korea Exchange) Source Client

Fetches daily market statistics from the KRX data portal.

Datasets:
- KOSPI: index close, change, volume (MDCSTAT01501)
- INVESTOR_TRADING: trading value by investor type (MDCSTAT02203)
- PUT_CALL: KOSPI200 option volume, put/call ratio (MDCSTAT30801)
- VKOSPI: KOSPI200 volatility index close (MDCSTAT00101, derivative indices)

All datasets share one endpoint; the `bld` form field selects the report.
Responses carry rows under `OutBlock_1` with numbers formatted as strings
("2,456.12").
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.constants import KRX_INVESTOR_TRADING, KRX_KOSPI, KRX_PUT_CALL, KRX_VKOSPI
from ..core.dates import to_compact
from ..core.errors import MalformedPayload, SourceFatalError
from ..core.types import SourceId, SourceRecord, SourceRequest
from .base import BaseSourceClient, HttpCall

logger = logging.getLogger(__name__)

KRX_DEFAULT_URL = "http://data.krx.co.kr/comm/bldAttendant/getJsonData.cmd"

_BLD = {
    KRX_KOSPI: "dbms/MDC/STAT/standard/MDCSTAT01501",
    KRX_INVESTOR_TRADING: "dbms/MDC/STAT/standard/MDCSTAT02203",
    KRX_PUT_CALL: "dbms/MDC/STAT/standard/MDCSTAT30801",
    KRX_VKOSPI: "dbms/MDC/STAT/standard/MDCSTAT00101",
}

_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Referer": "http://data.krx.co.kr/contents/MDC/MDI/mdiLoader/index.cmd",
}


def parse_number(value: Optional[str]) -> Optional[float]:
    """Parse KRX formatted numbers ("1,234.5", "-", "")."""
    if value is None:
        return None
    cleaned = str(value).replace(",", "").strip()
    if cleaned in ("", "-"):
        return None
    try:
        return float(cleaned)
    except ValueError:
        raise MalformedPayload(f"Not a number: {value!r}", source=SourceId.KRX.value)


# =============================================================================
# Payload Models
# =============================================================================

class KrxRow(BaseModel):
    """Union of the row fields used across KRX reports."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    IDX_NM: Optional[str] = None
    CLSPRC_IDX: Optional[str] = None
    CMPPREVDD_IDX: Optional[str] = None
    FLUC_RT: Optional[str] = None
    PRD_DE_RATE: Optional[str] = None
    ACC_TRDVOL: Optional[str] = None
    ACC_TRDVAL: Optional[str] = None
    INVST_TP_NM: Optional[str] = None
    ASK_TRDVAL: Optional[str] = None
    BID_TRDVAL: Optional[str] = None
    ISU_ABBRV: Optional[str] = None


class KrxResponse(BaseModel):
    rows: list[KrxRow] = Field(default_factory=list, alias="OutBlock_1")


# =============================================================================
# Client
# =============================================================================

class KrxClient(BaseSourceClient):
    """KRX data portal client."""

    source = SourceId.KRX

    def datasets(self) -> tuple[str, ...]:
        return tuple(_BLD)

    def build_request(self, request: SourceRequest) -> HttpCall:
        bld = _BLD.get(request.dataset)
        if bld is None:
            raise SourceFatalError(f"Unknown KRX dataset: {request.dataset}", source=self.source.value)

        form = {
            "bld": bld,
            "locale": "ko_KR",
            "trdDd": to_compact(request.date),
            "share": "1",
            "money": "1",
            "csvxls_isNo": "false",
        }
        if request.dataset == KRX_VKOSPI:
            form["idxIndMidclssCd"] = "04"  # derivative indices
        else:
            form["mktId"] = "STK"
        form.update(request.params)

        return HttpCall(
            method="POST",
            url=self.config.base_url or KRX_DEFAULT_URL,
            data=form,
            headers=dict(_HEADERS),
        )

    def parse_payload(self, request: SourceRequest, body: Any) -> list[SourceRecord]:
        if not isinstance(body, dict):
            raise MalformedPayload("Expected JSON object", source=self.source.value)
        rows = KrxResponse.model_validate(body).rows
        if not rows:
            return []

        parser = {
            KRX_KOSPI: self._parse_kospi,
            KRX_INVESTOR_TRADING: self._parse_investor_trading,
            KRX_PUT_CALL: self._parse_put_call,
            KRX_VKOSPI: self._parse_vkospi,
        }[request.dataset]
        payload = parser(rows)
        if payload is None:
            logger.info(f"{self._log_prefix} No {request.dataset} data for {request.date}")
            return []

        return [
            SourceRecord(
                source=self.source,
                date=request.date,
                entity_id=request.record_entity_id,
                dataset=request.dataset,
                payload=payload,
            )
        ]

    def _parse_kospi(self, rows: list[KrxRow]) -> Optional[dict[str, Any]]:
        row = next((r for r in rows if r.IDX_NM and r.IDX_NM.strip() in ("코스피", "KOSPI")), None)
        if row is None:
            row = next((r for r in rows if r.IDX_NM and "KOSPI" in r.IDX_NM.upper()), None)
        if row is None:
            return None
        close = parse_number(row.CLSPRC_IDX)
        if close is None:
            return None
        return {
            "close": close,
            "change": parse_number(row.CMPPREVDD_IDX),
            "change_percent": parse_number(row.FLUC_RT or row.PRD_DE_RATE),
            "volume": parse_number(row.ACC_TRDVOL),
            "trade_value": parse_number(row.ACC_TRDVAL),
        }

    def _parse_investor_trading(self, rows: list[KrxRow]) -> Optional[dict[str, Any]]:
        def find(keyword: str) -> Optional[KrxRow]:
            return next((r for r in rows if r.INVST_TP_NM and keyword in r.INVST_TP_NM), None)

        foreign = find("외국인")
        institutional = find("기관")
        individual = find("개인")
        if foreign is None and institutional is None:
            return None

        payload: dict[str, Any] = {}
        for name, row in (("foreign", foreign), ("institutional", institutional), ("individual", individual)):
            # KRX reports ASK_TRDVAL as the buy side for investor summaries
            buying = parse_number(row.ASK_TRDVAL) if row else None
            selling = parse_number(row.BID_TRDVAL) if row else None
            payload[f"{name}_buying"] = buying or 0.0
            payload[f"{name}_selling"] = selling or 0.0
            payload[f"{name}_net"] = (buying or 0.0) - (selling or 0.0)
        return payload

    def _parse_put_call(self, rows: list[KrxRow]) -> Optional[dict[str, Any]]:
        put_volume = 0.0
        call_volume = 0.0
        for row in rows:
            if not row.ISU_ABBRV:
                continue
            tokens = row.ISU_ABBRV.split()
            volume = parse_number(row.ACC_TRDVOL) or 0.0
            if "P" in tokens:
                put_volume += volume
            elif "C" in tokens:
                call_volume += volume
        if call_volume <= 0:
            return None
        return {
            "put_volume": put_volume,
            "call_volume": call_volume,
            "put_call_ratio": put_volume / call_volume,
        }

    def _parse_vkospi(self, rows: list[KrxRow]) -> Optional[dict[str, Any]]:
        row = next(
            (r for r in rows if r.IDX_NM and ("변동성" in r.IDX_NM or "VKOSPI" in r.IDX_NM.upper())),
            None,
        )
        if row is None:
            return None
        value = parse_number(row.CLSPRC_IDX)
        if value is None:
            return None
        return {"value": value}
