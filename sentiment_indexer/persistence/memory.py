"""
In-Memory Repository

Process-local implementation of the repository contract. Used when no
DATABASE_URL is configured and throughout the unit tests.

Stored objects are deep-copied on the way in and out, so callers can never
mutate persisted state through a returned reference.
"""

import logging
from collections import defaultdict
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
from .base import Repository

logger = logging.getLogger(__name__)


class InMemoryRepository(Repository):
    """
    Dict-backed repository.

    Usage:
        repo = InMemoryRepository()
        await repo.save_index(index)
        latest = await repo.get_latest_index()
    """

    def __init__(self):
        self._records: dict[tuple[SourceId, date, str], SourceRecord] = {}
        self._indexes: dict[date, CompositeIndex] = {}
        self._jobs: dict[str, Job] = {}
        self._job_logs: dict[str, list[JobLogEntry]] = defaultdict(list)

    async def save_source_record(self, record: SourceRecord) -> None:
        self._records[record.key] = record.model_copy(deep=True)

    async def get_source_records(self, source: SourceId, day: date) -> list[SourceRecord]:
        return [
            r.model_copy(deep=True)
            for (s, d, _), r in sorted(self._records.items(), key=lambda kv: kv[0][2])
            if s == source and d == day
        ]

    async def get_source_records_between(
        self,
        source: SourceId,
        start: date,
        end: date,
        entity_id: Optional[str] = None,
    ) -> list[SourceRecord]:
        matches = [
            r for (s, d, e), r in self._records.items()
            if s == source and start <= d <= end and (entity_id is None or e == entity_id)
        ]
        matches.sort(key=lambda r: (r.date, r.entity_id))
        return [r.model_copy(deep=True) for r in matches]

    async def save_index(self, index: CompositeIndex) -> None:
        self._indexes[index.date] = index.model_copy(deep=True)

    async def get_index(self, day: date) -> Optional[CompositeIndex]:
        index = self._indexes.get(day)
        return index.model_copy(deep=True) if index else None

    async def get_latest_index(self) -> Optional[CompositeIndex]:
        if not self._indexes:
            return None
        return self._indexes[max(self._indexes)].model_copy(deep=True)

    async def get_index_history(self, n: int) -> list[CompositeIndex]:
        days = sorted(self._indexes, reverse=True)[:max(0, n)]
        return [self._indexes[d].model_copy(deep=True) for d in days]

    async def save_job(self, job: Job) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, job_filter: JobFilter) -> list[Job]:
        jobs = [j for j in self._jobs.values() if job_filter.matches(j)]
        jobs.sort(key=lambda j: (j.created_at, j.sequence), reverse=True)
        page = jobs[job_filter.offset:job_filter.offset + job_filter.limit]
        return [j.model_copy(deep=True) for j in page]

    async def append_job_log(self, job_id: str, entry: JobLogEntry) -> None:
        self._job_logs[job_id].append(entry.model_copy(deep=True))

    async def get_job_logs(self, job_id: str, limit: int = 100) -> list[JobLogEntry]:
        entries = self._job_logs.get(job_id, [])
        return [e.model_copy(deep=True) for e in entries[-limit:]] if limit > 0 else []

    @property
    def source_record_count(self) -> int:
        return len(self._records)
