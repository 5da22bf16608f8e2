"""
DART (FSS Open DART) Source Client

Datasets:
- DISCLOSURES: all disclosures filed on a date (list.json)
- FINANCIALS: full annual financial statements of one corporation for one
  business year (fnlttSinglAcntAll.json); entity_id is the corp_code

Open DART answers HTTP 200 with a `status` field. "000" is success and "013"
means no data; the rest are mapped onto ErrorKinds below. The API key has a
daily quota of 10,000 calls, enforced by the client's rate limiter.
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.constants import DART_ANNUAL_REPORT_CODE, DART_DISCLOSURES, DART_FINANCIALS
from ..core.dates import to_compact
from ..core.errors import MalformedPayload, SourceFatalError
from ..core.types import ErrorKind, SourceId, SourceRecord, SourceRequest
from .base import BaseSourceClient, HttpCall

logger = logging.getLogger(__name__)

DART_DEFAULT_URL = "https://opendart.fss.or.kr/api"

_ENDPOINTS = {
    DART_DISCLOSURES: "list",
    DART_FINANCIALS: "fnlttSinglAcntAll",
}

STATUS_OK = "000"
STATUS_NO_DATA = "013"

_STATUS_KINDS = {
    "010": ErrorKind.AUTH,          # unregistered key
    "011": ErrorKind.AUTH,          # key not usable
    "012": ErrorKind.AUTH,          # IP not allowed
    "901": ErrorKind.AUTH,          # key expired
    "020": ErrorKind.RATE_LIMITED,  # request limit exceeded
    "800": ErrorKind.TRANSIENT,     # system maintenance
}

DISCLOSURE_PAGE_SIZE = 100


# =============================================================================
# Payload Models
# =============================================================================

class DartDisclosure(BaseModel):
    model_config = ConfigDict(extra="ignore")

    corp_code: str
    corp_name: str
    report_nm: str
    rcept_no: str
    rcept_dt: str
    corp_cls: Optional[str] = None
    flr_nm: Optional[str] = None


class DartAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_nm: str
    sj_div: Optional[str] = None
    account_id: Optional[str] = None
    thstrm_amount: Optional[str] = None
    frmtrm_amount: Optional[str] = None
    currency: Optional[str] = None


class DartResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: str
    message: str = ""
    total_count: Optional[int] = None
    items: list[dict[str, Any]] = Field(default_factory=list, alias="list")


# =============================================================================
# Client
# =============================================================================

class DartClient(BaseSourceClient):
    """Open DART client for disclosures and financial statements."""

    source = SourceId.DART

    def datasets(self) -> tuple[str, ...]:
        return tuple(_ENDPOINTS)

    def build_request(self, request: SourceRequest) -> HttpCall:
        endpoint = _ENDPOINTS.get(request.dataset)
        if endpoint is None:
            raise SourceFatalError(f"Unknown DART dataset: {request.dataset}", source=self.source.value)
        if not self.config.api_key:
            raise self._error(ErrorKind.AUTH, "DART API key not configured")

        params: dict[str, Any] = {"crtfc_key": self.config.api_key}
        if request.dataset == DART_DISCLOSURES:
            day = to_compact(request.date)
            params.update({
                "bgn_de": day,
                "end_de": day,
                "page_no": 1,
                "page_count": DISCLOSURE_PAGE_SIZE,
            })
        else:
            if not request.entity_id:
                raise SourceFatalError("FINANCIALS requires a corp_code entity_id", source=self.source.value)
            params.update({
                "corp_code": request.entity_id,
                "bsns_year": str(request.params.get("business_year", request.date.year)),
                "reprt_code": request.params.get("reprt_code", DART_ANNUAL_REPORT_CODE),
                "fs_div": request.params.get("fs_div", "CFS"),
            })

        base_url = (self.config.base_url or DART_DEFAULT_URL).rstrip("/")
        return HttpCall(
            method="GET",
            url=f"{base_url}/{endpoint}.json",
            params=params,
            headers={"Accept": "application/json", "User-Agent": "sentiment-indexer/1.0"},
        )

    def parse_payload(self, request: SourceRequest, body: Any) -> list[SourceRecord]:
        if not isinstance(body, dict):
            raise MalformedPayload("Expected JSON object", source=self.source.value)
        response = DartResponse.model_validate(body)

        if response.status == STATUS_NO_DATA:
            logger.info(f"{self._log_prefix} No {request.dataset} data for {request.describe()}")
            return []
        if response.status != STATUS_OK:
            kind = _STATUS_KINDS.get(response.status, ErrorKind.FATAL)
            raise self._error(
                kind,
                f"DART status {response.status}: {response.message}",
                context={"status": response.status},
            )

        if request.dataset == DART_DISCLOSURES:
            disclosures = [DartDisclosure.model_validate(item) for item in response.items]
            payload = {
                "total_count": response.total_count if response.total_count is not None else len(disclosures),
                "items": [d.model_dump() for d in disclosures],
            }
        else:
            accounts = [DartAccount.model_validate(item) for item in response.items]
            payload = {
                "business_year": int(request.params.get("business_year", request.date.year)),
                "items": [a.model_dump() for a in accounts],
            }

        return [
            SourceRecord(
                source=self.source,
                date=request.date,
                entity_id=request.record_entity_id,
                dataset=request.dataset,
                payload=payload,
            )
        ]
