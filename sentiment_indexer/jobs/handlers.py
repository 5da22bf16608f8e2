"""
Job Handlers

One handler per job type:
- DailyCollectionHandler: fetch every daily dataset of the selected sources for one date
- FinancialBatchHandler: fetch DART annual financial statements per corporation
- RecomputeHandler: recalculate the composite index for a date or range
- BackfillHandler: collect and calculate a historical date range

Failure policy:
- Per-item fetch failures are recorded and counted, the job continues
- Every item failing raises JobFatalError (queue retry/DEAD path)
- A FATAL fetch result aborts the job immediately
- PersistenceError propagates unmodified
"""

import logging
import statistics
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Mapping, Sequence

from ..aggregator.composite_aggregator import AggregationEngine, ensure_confidence
from ..connectors.base import BaseSourceClient, FetchResult
from ..core.constants import DAILY_DATASETS, DART_FINANCIALS, JOB_TYPE_SOURCES
from ..core.dates import date_range
from ..core.errors import AggregationDegraded, JobFatalError, PersistenceError, SentimentIndexerError
from ..core.types import ErrorKind, JobParameters, JobType, LogLevel, SourceId, SourceRequest
from ..persistence.base import Repository
from .context import HandlerResult, JobContext

logger = logging.getLogger(__name__)


class ItemFailed(Exception):
    """One work item failed; the job continues."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.TRANSIENT):
        super().__init__(message)
        self.message = message
        self.kind = kind


class JobHandler(ABC):
    """
    Base class for job handlers.

    Subclasses must implement:
    - items(): The ordered work items for a parameter set
    - process_item(): Do the work for one item
    - summarize(): Build the type-specific result summary
    """

    job_type: JobType

    def sources_for(self, params: JobParameters) -> tuple[SourceId, ...]:
        """Sources this job will call (per-source concurrency caps)."""
        allowed = JOB_TYPE_SOURCES[self.job_type]
        if params.sources is None:
            return allowed
        return tuple(s for s in allowed if s in params.sources)

    @abstractmethod
    def items(self, params: JobParameters) -> Sequence[Any]:
        pass

    @abstractmethod
    async def process_item(self, ctx: JobContext, item: Any, state: dict[str, Any]) -> None:
        """Raise ItemFailed for a recoverable item failure."""
        pass

    @abstractmethod
    def summarize(self, params: JobParameters, state: dict[str, Any]) -> dict[str, Any]:
        pass

    def describe_item(self, item: Any) -> str:
        return item.isoformat() if isinstance(item, date) else str(item)

    def initial_state(self) -> dict[str, Any]:
        return {"records_written": 0, "failed_items": []}

    async def run(self, ctx: JobContext) -> HandlerResult:
        """Run every item with a checkpoint before each and progress after each."""
        items = list(self.items(ctx.params))
        total = len(items)
        state = self.initial_state()
        processed = 0
        failed = 0

        await ctx.log(f"{self.job_type.value} started", total_items=total)
        await ctx.report_progress(0, total)

        for item in items:
            await ctx.checkpoint()
            label = self.describe_item(item)
            try:
                await self.process_item(ctx, item, state)
                processed += 1
            except ItemFailed as e:
                failed += 1
                state["failed_items"].append(label)
                await ctx.record_error(e.message, e.kind, item=label)
                await ctx.log(f"Item {label} failed: {e.message}", level=LogLevel.WARN, kind=e.kind.value)
            await ctx.report_progress(processed, total, failed, current_item=label)

        if total > 0 and processed == 0:
            raise JobFatalError(f"All {total} items failed", context={"failed": failed})

        return HandlerResult(
            processed=processed,
            failed=failed,
            total=total,
            summary=self.summarize(ctx.params, state),
        )


# =============================================================================
# Source-collecting handlers
# =============================================================================

class _CollectingHandler(JobHandler):
    """Shared fetch handling for handlers that call source clients."""

    def __init__(self, clients: Mapping[SourceId, BaseSourceClient]):
        self.clients = clients

    def _client(self, source: SourceId) -> BaseSourceClient:
        client = self.clients.get(source)
        if client is None:
            raise JobFatalError(f"No client configured for source {source.value}")
        return client

    async def _fetch(self, request: SourceRequest) -> FetchResult:
        result = await self._client(request.source).fetch(request)
        if not result.ok and result.error_kind == ErrorKind.FATAL:
            raise JobFatalError(
                f"Fatal error from {request.describe()}: {result.error.message}",
                kind=ErrorKind.FATAL,
                original_error=result.error,
            )
        return result

    def _daily_requests(self, params: JobParameters, day: date) -> list[SourceRequest]:
        return [
            SourceRequest(source=source, dataset=dataset, date=day)
            for source in self.sources_for(params)
            for dataset in DAILY_DATASETS[source]
        ]


class DailyCollectionHandler(_CollectingHandler):
    """Collect every daily dataset of the selected sources for one date. One item per dataset."""

    job_type = JobType.DAILY_COLLECTION

    def items(self, params: JobParameters) -> Sequence[SourceRequest]:
        return self._daily_requests(params, params.target_date)

    def describe_item(self, item: SourceRequest) -> str:
        return item.describe()

    async def process_item(self, ctx: JobContext, item: SourceRequest, state: dict[str, Any]) -> None:
        result = await self._fetch(item)
        if not result.ok:
            raise ItemFailed(result.error.message, result.error_kind)
        state["records_written"] += len(result.records)

    def summarize(self, params: JobParameters, state: dict[str, Any]) -> dict[str, Any]:
        return {
            "target_date": params.target_date.isoformat(),
            "sources": [s.value for s in self.sources_for(params)],
            "records_written": state["records_written"],
            "failed_items": state["failed_items"],
        }


class FinancialBatchHandler(_CollectingHandler):
    """Fetch annual financial statements from DART. One item per corporation code."""

    job_type = JobType.FINANCIAL_BATCH

    def items(self, params: JobParameters) -> Sequence[str]:
        return list(params.entity_ids)

    async def process_item(self, ctx: JobContext, item: str, state: dict[str, Any]) -> None:
        year = ctx.params.business_year
        request = SourceRequest(
            source=SourceId.DART,
            dataset=DART_FINANCIALS,
            date=date(year, 12, 31),
            entity_id=item,
            params={"business_year": year},
        )
        result = await self._fetch(request)
        if not result.ok:
            raise ItemFailed(result.error.message, result.error_kind)
        if not result.records:
            state.setdefault("no_data", []).append(item)
        state["records_written"] += len(result.records)

    def summarize(self, params: JobParameters, state: dict[str, Any]) -> dict[str, Any]:
        return {
            "business_year": params.business_year,
            "companies_total": len(params.entity_ids),
            "companies_failed": len(state["failed_items"]),
            "records_written": state["records_written"],
            "failed_entities": state["failed_items"],
            "no_data_entities": state.get("no_data", []),
        }


class BackfillHandler(_CollectingHandler):
    """
    Collect and calculate a historical range. One item per date.

    A date already holding an index is skipped unless overwrite_existing is
    set. Partially collected dates are still calculated and listed as data
    gaps; a date where every fetch failed is an item failure.
    """

    job_type = JobType.BACKFILL

    def __init__(
        self,
        clients: Mapping[SourceId, BaseSourceClient],
        engine: AggregationEngine,
        repository: Repository,
    ):
        super().__init__(clients)
        self.engine = engine
        self.repository = repository

    def items(self, params: JobParameters) -> Sequence[date]:
        return date_range(params.start_date, params.end_date, skip_weekends=params.skip_weekends)

    def initial_state(self) -> dict[str, Any]:
        state = super().initial_state()
        state.update({"duplicate_skipped": 0, "data_gaps": [], "calculated": 0})
        return state

    async def process_item(self, ctx: JobContext, item: date, state: dict[str, Any]) -> None:
        if not ctx.params.overwrite_existing and await self.repository.get_index(item) is not None:
            state["duplicate_skipped"] += 1
            return

        requests = self._daily_requests(ctx.params, item)
        failures: list[str] = []
        last_kind = ErrorKind.TRANSIENT
        for request in requests:
            result = await self._fetch(request)
            if result.ok:
                state["records_written"] += len(result.records)
            else:
                failures.append(f"{request.dataset}: {result.error.message}")
                last_kind = result.error_kind

        if requests and len(failures) == len(requests):
            state["data_gaps"].append(item.isoformat())
            raise ItemFailed(f"All {len(requests)} fetches failed for {item}", last_kind)
        if failures:
            state["data_gaps"].append(item.isoformat())
            await ctx.log(f"Partial data for {item}", level=LogLevel.WARN, failures=failures)

        await self.engine.calculate(item)
        state["calculated"] += 1

    def summarize(self, params: JobParameters, state: dict[str, Any]) -> dict[str, Any]:
        days = self.items(params)
        return {
            "start_date": params.start_date.isoformat(),
            "end_date": params.end_date.isoformat(),
            "total_days": len(days),
            "processed_days": state["calculated"],
            "failed_days": len(state["failed_items"]),
            "duplicate_skipped": state["duplicate_skipped"],
            "data_gaps": state["data_gaps"],
            "records_written": state["records_written"],
        }


# =============================================================================
# Recompute
# =============================================================================

class RecomputeHandler(JobHandler):
    """
    Recalculate the index for a date or range, reporting per-date changes.

    Dates below min_confidence are listed as degraded, not failed.
    """

    job_type = JobType.RECOMPUTE

    def __init__(self, engine: AggregationEngine, repository: Repository):
        self.engine = engine
        self.repository = repository

    def items(self, params: JobParameters) -> Sequence[date]:
        if params.target_date is not None:
            return [params.target_date]
        return date_range(params.start_date, params.end_date, skip_weekends=params.skip_weekends)

    def initial_state(self) -> dict[str, Any]:
        state = super().initial_state()
        state.update({"changes": [], "degraded_dates": [], "recalculated": 0})
        return state

    async def process_item(self, ctx: JobContext, item: date, state: dict[str, Any]) -> None:
        previous = await self.repository.get_index(item)
        try:
            index = await self.engine.calculate(item, ctx.params.weights)
        except PersistenceError:
            raise
        except SentimentIndexerError as e:
            raise ItemFailed(e.message, ErrorKind.FATAL)

        state["recalculated"] += 1
        if previous is None or previous.value != index.value:
            old_value = previous.value if previous else None
            state["changes"].append({
                "date": item.isoformat(),
                "old_value": old_value,
                "new_value": index.value,
                "difference": round(index.value - old_value, 2) if old_value is not None else None,
            })

        if ctx.params.min_confidence is not None:
            try:
                ensure_confidence(index, ctx.params.min_confidence)
            except AggregationDegraded as e:
                state["degraded_dates"].append(item.isoformat())
                await ctx.log(e.message, level=LogLevel.WARN)

    def summarize(self, params: JobParameters, state: dict[str, Any]) -> dict[str, Any]:
        diffs = [abs(c["difference"]) for c in state["changes"] if c["difference"] is not None]
        return {
            "total_recalculated": state["recalculated"],
            "changes": state["changes"],
            "avg_change": round(statistics.fmean(diffs), 2) if diffs else 0.0,
            "max_change": round(max(diffs), 2) if diffs else 0.0,
            "changed_dates": len(state["changes"]),
            "degraded_dates": state["degraded_dates"],
            "weights": params.weights or {k.value: v for k, v in self.engine.weights.items()},
        }


def build_handlers(
    clients: Mapping[SourceId, BaseSourceClient],
    engine: AggregationEngine,
    repository: Repository,
) -> dict[JobType, JobHandler]:
    """Handler registry for the queue."""
    return {
        JobType.DAILY_COLLECTION: DailyCollectionHandler(clients),
        JobType.FINANCIAL_BATCH: FinancialBatchHandler(clients),
        JobType.RECOMPUTE: RecomputeHandler(engine, repository),
        JobType.BACKFILL: BackfillHandler(clients, engine, repository),
    }
