"""
BOK (Bank of Korea) ECOS Source Client

Fetches daily treasury bond yields from the ECOS open API (statistic
817Y002, daily market interest rates).

Datasets:
- BOND_YIELD_3Y: 3-year Korea Treasury Bond yield (item 010200000)
- BOND_YIELD_10Y: 10-year Korea Treasury Bond yield (item 010210000)

ECOS answers HTTP 200 for provider errors and reports them in a RESULT
block; those codes are mapped onto ErrorKinds here.
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.constants import BOK_BOND_YIELD_10Y, BOK_BOND_YIELD_3Y
from ..core.dates import to_compact
from ..core.errors import MalformedPayload, SourceError, SourceFatalError
from ..core.types import ErrorKind, SourceId, SourceRecord, SourceRequest
from .base import BaseSourceClient, HttpCall

logger = logging.getLogger(__name__)

BOK_DEFAULT_URL = "https://ecos.bok.or.kr/api"

STAT_CODE = "817Y002"

_ITEMS = {
    BOK_BOND_YIELD_3Y: ("010200000", "3Y"),
    BOK_BOND_YIELD_10Y: ("010210000", "10Y"),
}

NO_DATA_CODE = "INFO-200"

_RESULT_CODES = {
    "INFO-100": ErrorKind.AUTH,          # invalid authentication key
    "ERROR-602": ErrorKind.RATE_LIMITED,  # too many requests
    "ERROR-500": ErrorKind.TRANSIENT,    # server error
    "ERROR-600": ErrorKind.TRANSIENT,    # database connection error
    "ERROR-601": ErrorKind.TRANSIENT,    # SQL error
}


# =============================================================================
# Payload Models
# =============================================================================

class EcosRow(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    TIME: str
    DATA_VALUE: str
    ITEM_CODE1: Optional[str] = None
    UNIT_NAME: Optional[str] = None


class EcosSearch(BaseModel):
    list_total_count: int = 0
    row: list[EcosRow] = Field(default_factory=list)


class EcosResult(BaseModel):
    CODE: str
    MESSAGE: str = ""


class EcosResponse(BaseModel):
    StatisticSearch: Optional[EcosSearch] = None
    RESULT: Optional[EcosResult] = None


# =============================================================================
# Client
# =============================================================================

class BokClient(BaseSourceClient):
    """ECOS statistic search client for treasury yields."""

    source = SourceId.BOK

    def datasets(self) -> tuple[str, ...]:
        return tuple(_ITEMS)

    def build_request(self, request: SourceRequest) -> HttpCall:
        item = _ITEMS.get(request.dataset)
        if item is None:
            raise SourceFatalError(f"Unknown BOK dataset: {request.dataset}", source=self.source.value)
        if not self.config.api_key:
            raise self._error(ErrorKind.AUTH, "BOK API key not configured")

        day = to_compact(request.date)
        base_url = (self.config.base_url or BOK_DEFAULT_URL).rstrip("/")
        url = f"{base_url}/StatisticSearch/{self.config.api_key}/json/kr/1/10/{STAT_CODE}/D/{day}/{day}/{item[0]}"
        return HttpCall(method="GET", url=url)

    def _result_error(self, result: EcosResult) -> SourceError:
        kind = _RESULT_CODES.get(result.CODE, ErrorKind.FATAL)
        return self._error(kind, f"ECOS {result.CODE}: {result.MESSAGE}", context={"code": result.CODE})

    def parse_payload(self, request: SourceRequest, body: Any) -> list[SourceRecord]:
        if not isinstance(body, dict):
            raise MalformedPayload("Expected JSON object", source=self.source.value)
        response = EcosResponse.model_validate(body)

        if response.StatisticSearch is None:
            if response.RESULT is None:
                raise MalformedPayload("Neither StatisticSearch nor RESULT in body", source=self.source.value)
            if response.RESULT.CODE == NO_DATA_CODE:
                logger.info(f"{self._log_prefix} No {request.dataset} data for {request.date}")
                return []
            raise self._result_error(response.RESULT)

        target = to_compact(request.date)
        row = next((r for r in response.StatisticSearch.row if r.TIME == target), None)
        if row is None:
            return []

        try:
            value = float(row.DATA_VALUE)
        except ValueError:
            raise MalformedPayload(f"Yield is not a number: {row.DATA_VALUE!r}", source=self.source.value)

        return [
            SourceRecord(
                source=self.source,
                date=request.date,
                entity_id=request.record_entity_id,
                dataset=request.dataset,
                payload={"yield": value, "tenor": _ITEMS[request.dataset][1]},
            )
        ]
