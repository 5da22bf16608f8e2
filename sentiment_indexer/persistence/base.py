"""
Repository Contract

Narrow persistence interface consumed by the source clients, the job queue
and the aggregation engine. Each call is durable and atomic on its own;
nothing here spans multiple calls in a transaction.

Implementations wrap storage failures in PersistenceError.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional

from ..core.types import (
    CompositeIndex,
    Job,
    JobFilter,
    JobLogEntry,
    SourceId,
    SourceRecord,
)


class Repository(ABC):
    """Storage for source records, composite indexes, jobs and job logs."""

    # -------------------------------------------------------------------------
    # Source records
    # -------------------------------------------------------------------------

    @abstractmethod
    async def save_source_record(self, record: SourceRecord) -> None:
        """Upsert by (source, date, entity_id), replacing the prior record wholesale."""

    @abstractmethod
    async def get_source_records(self, source: SourceId, day: date) -> list[SourceRecord]:
        """All records of a source for one date."""

    @abstractmethod
    async def get_source_records_between(
        self,
        source: SourceId,
        start: date,
        end: date,
        entity_id: Optional[str] = None,
    ) -> list[SourceRecord]:
        """Records of a source in [start, end], oldest first."""

    # -------------------------------------------------------------------------
    # Composite index
    # -------------------------------------------------------------------------

    @abstractmethod
    async def save_index(self, index: CompositeIndex) -> None:
        """Upsert by date."""

    @abstractmethod
    async def get_index(self, day: date) -> Optional[CompositeIndex]:
        pass

    @abstractmethod
    async def get_latest_index(self) -> Optional[CompositeIndex]:
        pass

    @abstractmethod
    async def get_index_history(self, n: int) -> list[CompositeIndex]:
        """Most recent n indexes, newest first."""

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    @abstractmethod
    async def save_job(self, job: Job) -> None:
        """Upsert by job id."""

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def list_jobs(self, job_filter: JobFilter) -> list[Job]:
        """Jobs matching the filter, newest first."""

    @abstractmethod
    async def append_job_log(self, job_id: str, entry: JobLogEntry) -> None:
        pass

    @abstractmethod
    async def get_job_logs(self, job_id: str, limit: int = 100) -> list[JobLogEntry]:
        """Most recent log entries, oldest first."""

    async def check_health(self) -> bool:
        return True
