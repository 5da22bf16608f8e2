"""
Job Handler Context

The narrow interface a handler gets while its job runs: an immutable copy
of the job parameters plus callbacks into the queue for checkpoints,
progress, logs and item errors. Handlers never touch the Job record itself.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from ..core.types import (
    ErrorKind,
    JobError,
    JobLogEntry,
    JobParameters,
    JobProgress,
    JobType,
    LogLevel,
)


@dataclass
class HandlerResult:
    """What a handler returns on (possibly partial) success."""

    processed: int
    failed: int
    total: int
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass
class JobContext:
    job_id: str
    job_type: JobType
    params: JobParameters
    attempt: int
    on_checkpoint: Callable[[str], Awaitable[None]]
    on_progress: Callable[[str, JobProgress], Awaitable[None]]
    on_log: Callable[[str, JobLogEntry], Awaitable[None]]
    on_error: Callable[[str, JobError], Awaitable[None]]
    clock: Callable[[], float] = time.monotonic
    started: float = field(default=0.0)

    def __post_init__(self) -> None:
        if not self.started:
            self.started = self.clock()

    async def checkpoint(self) -> None:
        """
        Cooperative control point between work units.

        Blocks while the job is paused and raises JobCancelled once a cancel
        was requested.
        """
        await self.on_checkpoint(self.job_id)

    async def report_progress(
        self,
        processed: int,
        total: int,
        failed: int = 0,
        current_item: Optional[str] = None,
    ) -> None:
        done = processed + failed
        elapsed = self.clock() - self.started
        rate = done / elapsed if elapsed > 0 else 0.0
        remaining = max(0, total - done)
        progress = JobProgress(
            processed=processed,
            failed=failed,
            total=total,
            percentage=round(done / total * 100, 2) if total else 0.0,
            items_per_second=round(rate, 4),
            eta_seconds=round(remaining / rate, 1) if rate > 0 else None,
            current_item=current_item,
        )
        await self.on_progress(self.job_id, progress)

    async def log(self, message: str, level: LogLevel = LogLevel.INFO, **context: Any) -> None:
        await self.on_log(self.job_id, JobLogEntry(level=level, message=message, context=context))

    async def record_error(self, message: str, kind: ErrorKind, item: Optional[str] = None) -> None:
        await self.on_error(
            self.job_id,
            JobError(message=message, classification=kind, attempt=self.attempt, item=item),
        )
