"""
Base Source Client

Abstract base class for all rate-limited external source clients.
Defines the interface and common functionality for:
- Token bucket throttling and rolling daily quota
- Circuit breaker (fail fast while the source is unhealthy)
- Typed retry policy (only TRANSIENT failures are retried)
- Typed parse-and-validate of payloads at the client boundary
- Telemetry tracking
- Persisting fetched SourceRecords
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import (
    SOURCE_ERRORS_BY_KIND,
    CircuitOpen,
    MalformedPayload,
    RateLimited,
    SourceError,
    SourceUnavailable,
)
from ..core.metrics import record_rate_limited, record_source_outcome, set_circuit_state
from ..core.types import (
    CircuitState,
    ErrorKind,
    SourceId,
    SourceRecord,
    SourceRequest,
    SourceTelemetry,
    utc_now,
)
from ..persistence.base import Repository
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .rate_limit import RateLimitConfig, TokenBucket

logger = logging.getLogger(__name__)

# Outcomes that count against the circuit breaker. AUTH and MALFORMED say
# nothing about source availability.
CIRCUIT_COUNTED_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.FATAL})


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter for TRANSIENT failures."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_ratio: float = 0.25

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay before retrying after the given (0-based) failed attempt."""
        delay = min(self.base_delay_seconds * (2 ** attempt), self.max_delay_seconds)
        return delay + delay * self.jitter_ratio * rng()


@dataclass
class SourceClientConfig:
    """Configuration for one source client."""

    base_url: str
    api_key: str = ""
    timeout_seconds: float = 10.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    circuit: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)


@dataclass
class HttpCall:
    """Outbound HTTP call built by a concrete client."""

    method: str
    url: str
    params: dict[str, Any] = field(default_factory=dict)
    data: Optional[dict[str, Any]] = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class FetchResult:
    """Tagged result of one logical fetch: records on success, a SourceError otherwise."""

    request: SourceRequest
    records: list[SourceRecord] = field(default_factory=list)
    error: Optional[SourceError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


@dataclass
class ClientStats:
    """Internal counters for a client."""

    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    rate_limited_count: int = 0
    records_written: int = 0
    last_error: Optional[str] = None
    last_error_kind: Optional[ErrorKind] = None
    last_success_at: Optional[datetime] = None


class BaseSourceClient(ABC):
    """
    Abstract base class for source clients.

    Subclasses must implement:
    - build_request(): Build the provider HTTP call for a SourceRequest
    - parse_payload(): Validate the decoded body and turn it into SourceRecords

    fetch() never raises for source failures; it returns a FetchResult. A
    PersistenceError while saving records propagates unmodified.
    """

    source: SourceId

    def __init__(
        self,
        config: SourceClientConfig,
        repository: Repository,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.repository = repository
        self._sleep = sleep
        self._rng = rng
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()
        self._bucket = TokenBucket(config.rate_limit, clock=clock, sleep=sleep)
        self._breaker = CircuitBreaker(config.circuit, clock=clock, name=self.source.value)
        self._stats = ClientStats()

    # =========================================================================
    # Abstract Methods (subclasses must implement)
    # =========================================================================

    @abstractmethod
    def build_request(self, request: SourceRequest) -> HttpCall:
        """Build the provider HTTP call for this request."""
        pass

    @abstractmethod
    def parse_payload(self, request: SourceRequest, body: Any) -> list[SourceRecord]:
        """
        Parse a decoded response body into SourceRecords.

        Args:
            request: The originating request
            body: Decoded JSON body

        Returns:
            Records to persist. An empty list is a valid "no data" result.

        Raises:
            MalformedPayload / pydantic ValidationError on shape errors,
            or another SourceError for provider-level status codes.
        """
        pass

    def datasets(self) -> tuple[str, ...]:
        """Datasets this client knows how to fetch."""
        return ()

    # =========================================================================
    # HTTP
    # =========================================================================

    @property
    def _log_prefix(self) -> str:
        return f"[{self.source.value}]"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def classify_status(self, status_code: int) -> ErrorKind:
        """Map an HTTP error status onto an ErrorKind."""
        if status_code == 429:
            return ErrorKind.RATE_LIMITED
        if status_code in (401, 403):
            return ErrorKind.AUTH
        if status_code >= 500 or status_code == 408:
            return ErrorKind.TRANSIENT
        return ErrorKind.FATAL

    def _error(self, kind: ErrorKind, message: str, **kwargs: Any) -> SourceError:
        return SOURCE_ERRORS_BY_KIND[kind](message, source=self.source.value, **kwargs)

    async def _attempt(self, request: SourceRequest) -> list[SourceRecord]:
        """One HTTP round trip, classified. Raises SourceError on failure."""
        call = self.build_request(request)
        client = await self._get_client()
        try:
            response = await asyncio.wait_for(
                client.request(
                    call.method,
                    call.url,
                    params=call.params or None,
                    data=call.data,
                    headers=call.headers or None,
                ),
                timeout=self.config.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise SourceUnavailable(
                f"Timeout after {self.config.timeout_seconds}s",
                source=self.source.value,
                original_error=e,
            )
        except httpx.TransportError as e:
            raise SourceUnavailable(
                f"Transport error: {e}",
                source=self.source.value,
                original_error=e,
            )
        except httpx.HTTPError as e:
            raise SourceUnavailable(
                f"HTTP client error: {type(e).__name__}: {e}",
                source=self.source.value,
                original_error=e,
            )

        if response.status_code >= 400:
            kind = self.classify_status(response.status_code)
            raise self._error(
                kind,
                f"HTTP {response.status_code}",
                context={"status_code": response.status_code, "url": call.url},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedPayload("Response body is not JSON", source=self.source.value, original_error=e)

        try:
            return self.parse_payload(request, body)
        except PydanticValidationError as e:
            raise MalformedPayload(
                f"Unexpected payload shape: {e.error_count()} error(s)",
                source=self.source.value,
                original_error=e,
            )

    # =========================================================================
    # Fetch
    # =========================================================================

    async def fetch(self, request: SourceRequest) -> FetchResult:
        """
        Perform one logical fetch.

        Checks the circuit, takes a token, calls the source and retries
        TRANSIENT failures with backoff. On success every returned record is
        saved through the repository.
        """
        self._stats.request_count += 1
        retry = self.config.retry
        last_error: Optional[SourceError] = None

        for attempt in range(retry.max_attempts):
            async with self._lock:
                allowed = self._breaker.allow_request()
                set_circuit_state(self.source.value, self._breaker.state.value)
            if not allowed:
                error = CircuitOpen(
                    f"Circuit open for {self.source.value}",
                    source=self.source.value,
                    context={"request": request.describe()},
                )
                return self._fail(request, error, attempt)

            if not await self._bucket.acquire():
                async with self._lock:
                    self._breaker.release_probe()
                self._stats.rate_limited_count += 1
                record_rate_limited(self.source.value)
                error = RateLimited(
                    f"Rate limit exhausted for {self.source.value}",
                    source=self.source.value,
                    context={"quota_remaining": self._bucket.daily_quota_remaining},
                )
                return self._fail(request, error, attempt)

            try:
                records = await self._attempt(request)
            except SourceError as e:
                async with self._lock:
                    if e.kind in CIRCUIT_COUNTED_KINDS:
                        self._breaker.record_failure()
                    else:
                        self._breaker.release_probe()
                    set_circuit_state(self.source.value, self._breaker.state.value)
                last_error = e

                if e.kind != ErrorKind.TRANSIENT:
                    return self._fail(request, e, attempt + 1)

                if attempt + 1 < retry.max_attempts:
                    delay = retry.delay_for(attempt, self._rng)
                    logger.warning(
                        f"{self._log_prefix} {request.describe()} attempt {attempt + 1}/{retry.max_attempts} "
                        f"failed: {e.message}; retrying in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                continue
            except BaseException:
                # Uncounted outcome; frees the half-open probe slot
                self._breaker.release_probe()
                raise

            async with self._lock:
                self._breaker.record_success()
                set_circuit_state(self.source.value, self._breaker.state.value)

            for record in records:
                await self.repository.save_source_record(record)
            self._stats.records_written += len(records)
            self._stats.success_count += 1
            self._stats.last_success_at = utc_now()
            record_source_outcome(self.source.value, "success")
            logger.debug(f"{self._log_prefix} {request.describe()} -> {len(records)} record(s)")
            return FetchResult(request=request, records=records, attempts=attempt + 1)

        error = SourceUnavailable(
            f"Exhausted {retry.max_attempts} attempts: {last_error.message if last_error else 'unknown'}",
            source=self.source.value,
            context={"request": request.describe()},
            original_error=last_error,
        )
        return self._fail(request, error, retry.max_attempts)

    def _fail(self, request: SourceRequest, error: SourceError, attempts: int) -> FetchResult:
        self._stats.failure_count += 1
        self._stats.last_error = error.message
        self._stats.last_error_kind = error.kind
        record_source_outcome(self.source.value, error.kind.value)
        logger.warning(f"{self._log_prefix} {request.describe()} failed ({error.kind.value}): {error.message}")
        return FetchResult(request=request, error=error, attempts=attempts)

    # =========================================================================
    # Telemetry
    # =========================================================================

    @property
    def circuit_state(self) -> CircuitState:
        return self._breaker.state

    def get_telemetry(self) -> SourceTelemetry:
        """Get current telemetry for this client."""
        return SourceTelemetry(
            source=self.source,
            circuit_state=self._breaker.state,
            tokens_available=round(self._bucket.tokens_available, 3),
            bucket_capacity=self.config.rate_limit.capacity,
            daily_quota_remaining=self._bucket.daily_quota_remaining,
            request_count=self._stats.request_count,
            success_count=self._stats.success_count,
            failure_count=self._stats.failure_count,
            rate_limited_count=self._stats.rate_limited_count,
            records_written=self._stats.records_written,
            last_error=self._stats.last_error,
            last_error_kind=self._stats.last_error_kind,
            last_success_at=self._stats.last_success_at,
        )
