"""
PostgreSQL Repository

asyncpg-backed implementation of the repository contract.

Tables (see schema_postgres.sql):
    source_records   PRIMARY KEY (source, date, entity_id)
    composite_index  PRIMARY KEY (date)
    jobs             PRIMARY KEY (id)
    job_logs         append-only, ordered by id

Structured fields (payloads, components, job parameters/progress/errors) are
stored as JSONB. Every driver failure is logged and re-raised as
PersistenceError.
"""

import json
import logging
import time
from datetime import date
from typing import Any, Optional

from ..core.errors import PersistenceError
from ..core.metrics import record_db_write
from ..core.types import (
    ComponentScore,
    CompositeIndex,
    Job,
    JobError,
    JobFilter,
    JobLogEntry,
    JobParameters,
    JobProgress,
    SourceId,
    SourceRecord,
)
from .base import Repository
from .pool import DatabasePool

logger = logging.getLogger(__name__)


def _load_json(value: Any) -> Any:
    """asyncpg returns JSONB as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresRepository(Repository):
    """
    Repository for all indexer state.

    Usage:
        repo = PostgresRepository(pool)
        await repo.save_index(index)
        history = await repo.get_index_history(30)
    """

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    async def _write(self, table: str, query: str, *args) -> None:
        start_time = time.time()
        try:
            await self.pool.execute(query, *args)
            record_db_write(table, success=True, latency_seconds=time.time() - start_time)
        except Exception as e:
            record_db_write(table, success=False, latency_seconds=time.time() - start_time)
            logger.error(f"Failed to write {table}: {e}")
            raise PersistenceError(f"Failed to write {table}", {"table": table}, e) from e

    async def _read(self, what: str, method: str, query: str, *args) -> Any:
        try:
            return await getattr(self.pool, method)(query, *args)
        except Exception as e:
            logger.error(f"Failed to read {what}: {e}")
            raise PersistenceError(f"Failed to read {what}", {"query": what}, e) from e

    # =========================================================================
    # Source records
    # =========================================================================

    async def save_source_record(self, record: SourceRecord) -> None:
        await self._write(
            "source_records",
            """
            INSERT INTO source_records (source, date, entity_id, dataset, payload, fetched_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (source, date, entity_id) DO UPDATE SET
                dataset = EXCLUDED.dataset,
                payload = EXCLUDED.payload,
                fetched_at = EXCLUDED.fetched_at
            """,
            record.source.value,
            record.date,
            record.entity_id,
            record.dataset,
            json.dumps(record.payload),
            record.fetched_at,
        )

    async def get_source_records(self, source: SourceId, day: date) -> list[SourceRecord]:
        rows = await self._read(
            "source_records",
            "fetch",
            """
            SELECT source, date, entity_id, dataset, payload, fetched_at
            FROM source_records
            WHERE source = $1 AND date = $2
            ORDER BY entity_id
            """,
            source.value,
            day,
        )
        return [self._row_to_record(row) for row in rows]

    async def get_source_records_between(
        self,
        source: SourceId,
        start: date,
        end: date,
        entity_id: Optional[str] = None,
    ) -> list[SourceRecord]:
        rows = await self._read(
            "source_records",
            "fetch",
            """
            SELECT source, date, entity_id, dataset, payload, fetched_at
            FROM source_records
            WHERE source = $1
              AND date >= $2
              AND date <= $3
              AND ($4::VARCHAR IS NULL OR entity_id = $4)
            ORDER BY date ASC, entity_id ASC
            """,
            source.value,
            start,
            end,
            entity_id,
        )
        return [self._row_to_record(row) for row in rows]

    def _row_to_record(self, row) -> SourceRecord:
        return SourceRecord(
            source=SourceId(row["source"]),
            date=row["date"],
            entity_id=row["entity_id"],
            dataset=row["dataset"],
            payload=_load_json(row["payload"]) or {},
            fetched_at=row["fetched_at"],
        )

    # =========================================================================
    # Composite index
    # =========================================================================

    async def save_index(self, index: CompositeIndex) -> None:
        components = [c.model_dump(mode="json") for c in index.components]
        await self._write(
            "composite_index",
            """
            INSERT INTO composite_index (date, value, level, confidence, components, weights, degraded, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, NOW())
            ON CONFLICT (date) DO UPDATE SET
                value = EXCLUDED.value,
                level = EXCLUDED.level,
                confidence = EXCLUDED.confidence,
                components = EXCLUDED.components,
                weights = EXCLUDED.weights,
                degraded = EXCLUDED.degraded,
                updated_at = NOW()
            """,
            index.date,
            index.value,
            index.level.value,
            index.confidence,
            json.dumps(components),
            json.dumps(index.weights),
            index.degraded,
        )

    async def get_index(self, day: date) -> Optional[CompositeIndex]:
        row = await self._read(
            "composite_index",
            "fetchrow",
            "SELECT * FROM composite_index WHERE date = $1",
            day,
        )
        return self._row_to_index(row) if row else None

    async def get_latest_index(self) -> Optional[CompositeIndex]:
        row = await self._read(
            "composite_index",
            "fetchrow",
            "SELECT * FROM composite_index ORDER BY date DESC LIMIT 1",
        )
        return self._row_to_index(row) if row else None

    async def get_index_history(self, n: int) -> list[CompositeIndex]:
        rows = await self._read(
            "composite_index",
            "fetch",
            "SELECT * FROM composite_index ORDER BY date DESC LIMIT $1",
            n,
        )
        return [self._row_to_index(row) for row in rows]

    def _row_to_index(self, row) -> CompositeIndex:
        return CompositeIndex(
            date=row["date"],
            value=row["value"],
            level=row["level"],
            confidence=row["confidence"],
            components=[ComponentScore.model_validate(c) for c in _load_json(row["components"])],
            weights=_load_json(row["weights"]),
            degraded=row["degraded"],
        )

    # =========================================================================
    # Jobs
    # =========================================================================

    async def save_job(self, job: Job) -> None:
        await self._write(
            "jobs",
            """
            INSERT INTO jobs (
                id, type, priority, state, sequence, attempts, max_attempts,
                next_eligible_at, parameters, progress, result, errors,
                cancel_requested, pause_requested,
                created_at, updated_at, started_at, completed_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)
            ON CONFLICT (id) DO UPDATE SET
                priority = EXCLUDED.priority,
                state = EXCLUDED.state,
                attempts = EXCLUDED.attempts,
                max_attempts = EXCLUDED.max_attempts,
                next_eligible_at = EXCLUDED.next_eligible_at,
                progress = EXCLUDED.progress,
                result = EXCLUDED.result,
                errors = EXCLUDED.errors,
                cancel_requested = EXCLUDED.cancel_requested,
                pause_requested = EXCLUDED.pause_requested,
                updated_at = EXCLUDED.updated_at,
                started_at = EXCLUDED.started_at,
                completed_at = EXCLUDED.completed_at
            """,
            job.id,
            job.type.value,
            job.priority.value,
            job.state.value,
            job.sequence,
            job.attempts,
            job.max_attempts,
            job.next_eligible_at,
            job.parameters.model_dump_json(),
            job.progress.model_dump_json(),
            json.dumps(job.result, default=str) if job.result is not None else None,
            json.dumps([e.model_dump(mode="json") for e in job.errors]),
            job.cancel_requested,
            job.pause_requested,
            job.created_at,
            job.updated_at,
            job.started_at,
            job.completed_at,
        )

    async def get_job(self, job_id: str) -> Optional[Job]:
        row = await self._read("jobs", "fetchrow", "SELECT * FROM jobs WHERE id = $1", job_id)
        return self._row_to_job(row) if row else None

    async def list_jobs(self, job_filter: JobFilter) -> list[Job]:
        states = [s.value for s in job_filter.states] if job_filter.states else None
        types = [t.value for t in job_filter.types] if job_filter.types else None
        rows = await self._read(
            "jobs",
            "fetch",
            """
            SELECT * FROM jobs
            WHERE ($1::TEXT[] IS NULL OR state = ANY($1))
              AND ($2::TEXT[] IS NULL OR type = ANY($2))
            ORDER BY created_at DESC, sequence DESC
            LIMIT $3 OFFSET $4
            """,
            states,
            types,
            job_filter.limit,
            job_filter.offset,
        )
        return [self._row_to_job(row) for row in rows]

    def _row_to_job(self, row) -> Job:
        result = _load_json(row["result"]) if row["result"] is not None else None
        return Job(
            id=row["id"],
            type=row["type"],
            priority=row["priority"],
            state=row["state"],
            sequence=row["sequence"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_eligible_at=row["next_eligible_at"],
            parameters=JobParameters.model_validate(_load_json(row["parameters"])),
            progress=JobProgress.model_validate(_load_json(row["progress"])),
            result=result,
            errors=[JobError.model_validate(e) for e in _load_json(row["errors"])],
            cancel_requested=row["cancel_requested"],
            pause_requested=row["pause_requested"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    async def append_job_log(self, job_id: str, entry: JobLogEntry) -> None:
        await self._write(
            "job_logs",
            """
            INSERT INTO job_logs (job_id, timestamp, level, message, context)
            VALUES ($1, $2, $3, $4, $5)
            """,
            job_id,
            entry.timestamp,
            entry.level.value,
            entry.message,
            json.dumps(entry.context, default=str),
        )

    async def get_job_logs(self, job_id: str, limit: int = 100) -> list[JobLogEntry]:
        rows = await self._read(
            "job_logs",
            "fetch",
            """
            SELECT timestamp, level, message, context FROM (
                SELECT id, timestamp, level, message, context
                FROM job_logs
                WHERE job_id = $1
                ORDER BY id DESC
                LIMIT $2
            ) recent
            ORDER BY id ASC
            """,
            job_id,
            limit,
        )
        return [
            JobLogEntry(
                timestamp=row["timestamp"],
                level=row["level"],
                message=row["message"],
                context=_load_json(row["context"]) or {},
            )
            for row in rows
        ]

    async def check_health(self) -> bool:
        return await self.pool.check_health()
