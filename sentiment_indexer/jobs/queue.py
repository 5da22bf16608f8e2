"""
Batch Job Queue

Owns the lifecycle of Jobs and drives their execution.

State machine:
    PENDING -> RUNNING -> {COMPLETED, CANCELLED, FAILED}
    FAILED  -> PENDING (attempts remain, after backoff) | DEAD
    RUNNING -> PAUSED (at the next handler checkpoint) -> RUNNING on resume
    PENDING -> PAUSED -> PENDING on resume
    COMPLETED, CANCELLED and DEAD are terminal.

The queue holds the authoritative Job records in an in-process arena keyed
by id and persists every mutation through the repository. Handlers get a
JobContext (immutable parameters + callbacks), never the Job.

Scheduling:
- Highest priority first, FIFO (enqueue sequence) among equal priority
- A job is eligible once its next_eligible_at has passed
- Global cap = worker_count; per-source caps from QueueConfig
"""

import asyncio
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..core.constants import (
    DEFAULT_MAX_ATTEMPTS,
    JOB_RETRY_BASE_DELAY_SECONDS,
    JOB_RETRY_MAX_DELAY_SECONDS,
    MAX_BACKFILL_DAYS,
    MAX_JOB_ERRORS,
    PROGRESS_LOG_STEP,
)
from ..core.errors import (
    JobCancelled,
    JobNotFound,
    JobStateConflict,
    PersistenceError,
    ValidationError,
)
from ..core.metrics import (
    record_job_duration,
    record_job_enqueued,
    record_job_finished,
    record_job_retry,
    set_queue_depth,
)
from ..core.types import (
    ErrorKind,
    Job,
    JobError,
    JobFilter,
    JobLogEntry,
    JobParameters,
    JobPriority,
    JobProgress,
    JobState,
    JobType,
    LogLevel,
    SourceId,
    utc_now,
)
from ..persistence.base import Repository
from .context import HandlerResult, JobContext
from .handlers import JobHandler
from .validation import validate_job_parameters

logger = logging.getLogger(__name__)

# States recovered on startup
RECOVERABLE_STATES = [JobState.PENDING, JobState.RUNNING, JobState.PAUSED, JobState.FAILED]
RECOVERY_PAGE_SIZE = 500


@dataclass
class QueueConfig:
    """Configuration for the job queue."""

    worker_count: int = 2
    source_concurrency: dict[SourceId, int] = field(default_factory=lambda: {s: 1 for s in SourceId})
    retry_base_delay_seconds: float = JOB_RETRY_BASE_DELAY_SECONDS
    retry_max_delay_seconds: float = JOB_RETRY_MAX_DELAY_SECONDS
    poll_interval_seconds: float = 5.0
    max_backfill_days: int = MAX_BACKFILL_DAYS

    def retry_delay(self, attempts: int) -> float:
        """Backoff after the given number of failed attempts (1-based)."""
        return min(
            self.retry_base_delay_seconds * (2 ** max(0, attempts - 1)),
            self.retry_max_delay_seconds,
        )


class JobQueue:
    """
    Priority job queue with a bounded worker pool.

    Usage:
        queue = JobQueue(repository, handlers, QueueConfig(worker_count=2))
        await queue.recover()
        await queue.start()
        job_id = await queue.enqueue(JobType.DAILY_COLLECTION, JobParameters(target_date=today))
        ...
        await queue.stop()
    """

    def __init__(
        self,
        repository: Repository,
        handlers: Mapping[JobType, JobHandler],
        config: Optional[QueueConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.handlers = dict(handlers)
        self.config = config or QueueConfig()
        self._clock = clock
        self._monotonic = monotonic

        self._jobs: dict[str, Job] = {}
        self._running: dict[str, tuple[SourceId, ...]] = {}
        self._resume_events: dict[str, asyncio.Event] = {}
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._sequence = 0
        self._workers: list[asyncio.Task] = []
        self._stopping = False
        self._finished_today: Counter = Counter()

    # =========================================================================
    # Internal helpers
    # =========================================================================

    def _sources_for(self, job: Job) -> tuple[SourceId, ...]:
        handler = self.handlers.get(job.type)
        return handler.sources_for(job.parameters) if handler else ()

    async def _persist(self, job: Job) -> None:
        job.updated_at = self._clock()
        await self.repository.save_job(job)

    async def _log(self, job: Job, message: str, level: LogLevel = LogLevel.INFO, **context: Any) -> None:
        log_fn = {LogLevel.INFO: logger.info, LogLevel.WARN: logger.warning, LogLevel.ERROR: logger.error}[level]
        log_fn(f"[job {job.id[:8]}] {message}")
        await self.repository.append_job_log(
            job.id,
            JobLogEntry(timestamp=self._clock(), level=level, message=message, context=context),
        )

    def _update_depth(self) -> None:
        counts = Counter(j.state.value for j in self._jobs.values())
        set_queue_depth({s.value: counts.get(s.value, 0) for s in JobState})

    def _wake(self) -> None:
        self._wakeup.set()

    async def _load(self, job_id: str) -> Job:
        """Arena record for a job, adopting it from the repository if needed."""
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        stored = await self.repository.get_job(job_id)
        if stored is None:
            raise JobNotFound(job_id)
        if not stored.state.is_terminal:
            self._jobs[job_id] = stored
        return stored

    def _finalize(self, job: Job, state: JobState) -> None:
        job.state = state
        job.completed_at = self._clock()
        job.next_eligible_at = None
        job.pause_requested = False

    def _retire(self, job: Job) -> None:
        # Terminal jobs live only in the repository
        if job.state.is_terminal:
            self._finished_today[job.state.value] += 1
            record_job_finished(job.type.value, job.state.value)
            self._jobs.pop(job.id, None)
            self._resume_events.pop(job.id, None)

    # =========================================================================
    # Public API
    # =========================================================================

    async def enqueue(
        self,
        job_type: JobType,
        params: Union[JobParameters, dict[str, Any], None] = None,
        priority: JobPriority = JobPriority.NORMAL,
        max_attempts: Optional[int] = None,
    ) -> str:
        """
        Validate and enqueue a job.

        Returns:
            The new job id

        Raises:
            ValidationError: If parameters are invalid for the job type
        """
        if job_type not in self.handlers:
            raise ValidationError(f"No handler registered for {job_type.value}")

        if params is None:
            params = JobParameters()
        elif isinstance(params, dict):
            try:
                params = JobParameters.model_validate(params)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid parameters: {e.error_count()} error(s)", {"errors": str(e)}, e)

        validate_job_parameters(job_type, params, self.config.max_backfill_days)

        attempts = max_attempts if max_attempts is not None else DEFAULT_MAX_ATTEMPTS[job_type]
        if attempts < 1:
            raise ValidationError("max_attempts must be >= 1", {"max_attempts": attempts})

        async with self._lock:
            self._sequence += 1
            now = self._clock()
            job = Job(
                id=uuid.uuid4().hex,
                type=job_type,
                priority=priority,
                parameters=params,
                max_attempts=attempts,
                sequence=self._sequence,
                created_at=now,
                updated_at=now,
            )
            await self._persist(job)
            self._jobs[job.id] = job
            await self._log(job, f"Job created ({job_type.value}, priority={priority.value})", max_attempts=attempts)
            self._update_depth()

        record_job_enqueued(job_type.value, priority.value)
        self._wake()
        return job.id

    async def get_status(self, job_id: str) -> Job:
        """Current state of a job (a copy)."""
        job = self._jobs.get(job_id)
        if job is not None:
            return job.model_copy(deep=True)
        stored = await self.repository.get_job(job_id)
        if stored is None:
            raise JobNotFound(job_id)
        return stored

    async def list_jobs(self, job_filter: Optional[JobFilter] = None) -> list[Job]:
        return await self.repository.list_jobs(job_filter or JobFilter())

    async def get_logs(self, job_id: str, limit: int = 100) -> list[JobLogEntry]:
        await self.get_status(job_id)
        return await self.repository.get_job_logs(job_id, limit)

    async def pause(self, job_id: str) -> Job:
        """
        Pause a job.

        PENDING jobs pause immediately. RUNNING jobs pause at the handler's
        next checkpoint.

        Raises:
            JobNotFound, JobStateConflict (terminal job)
        """
        async with self._lock:
            job = await self._load(job_id)
            if job.state.is_terminal:
                raise JobStateConflict(job_id, job.state.value, "pause")

            if job.state == JobState.PENDING:
                job.state = JobState.PAUSED
                await self._persist(job)
                await self._log(job, "Paused")
            elif job.state == JobState.RUNNING and not job.pause_requested:
                job.pause_requested = True
                await self._persist(job)
                await self._log(job, "Pause requested")
            self._update_depth()
            return job.model_copy(deep=True)

    async def resume(self, job_id: str) -> Job:
        """
        Resume a paused job.

        Raises:
            JobNotFound, JobStateConflict (job is not paused)
        """
        async with self._lock:
            job = await self._load(job_id)

            if job.state == JobState.RUNNING and job.pause_requested:
                job.pause_requested = False
                await self._persist(job)
                await self._log(job, "Pause request withdrawn")
            elif job.state == JobState.PAUSED:
                if job.id in self._running:
                    job.state = JobState.RUNNING
                    event = self._resume_events.pop(job.id, None)
                    if event:
                        event.set()
                else:
                    job.state = JobState.PENDING
                    self._wake()
                await self._persist(job)
                await self._log(job, f"Resumed ({job.state.value})")
            else:
                raise JobStateConflict(job_id, job.state.value, "resume")

            self._update_depth()
            return job.model_copy(deep=True)

    async def cancel(self, job_id: str) -> Job:
        """
        Cancel a job.

        Jobs that are not executing are cancelled immediately. An executing
        job is cancelled at its next checkpoint; work already done stays
        persisted.

        Raises:
            JobNotFound, JobStateConflict (terminal job)
        """
        async with self._lock:
            job = await self._load(job_id)
            if job.state.is_terminal:
                raise JobStateConflict(job_id, job.state.value, "cancel")

            if job.id in self._running:
                job.cancel_requested = True
                await self._persist(job)
                await self._log(job, "Cancel requested")
                event = self._resume_events.pop(job.id, None)
                if event:
                    event.set()
            else:
                snapshot = job.model_copy(deep=True)
                self._finalize(job, JobState.CANCELLED)
                try:
                    await self._persist(job)
                except PersistenceError:
                    self._jobs[job.id] = snapshot
                    raise
                self._retire(job)
                await self._log(job, "Cancelled")

            self._update_depth()
            return job.model_copy(deep=True)

    async def recover(self) -> int:
        """
        Load non-terminal jobs from the repository after a restart.

        Jobs found RUNNING (or mid-retry) belonged to a dead process and go
        back to PENDING.

        Returns:
            Number of jobs recovered
        """
        jobs: list[Job] = []
        while True:
            page = await self.repository.list_jobs(
                JobFilter(states=RECOVERABLE_STATES, limit=RECOVERY_PAGE_SIZE, offset=len(jobs))
            )
            jobs.extend(page)
            if len(page) < RECOVERY_PAGE_SIZE:
                break

        async with self._lock:
            for job in jobs:
                if job.id in self._jobs:
                    continue
                self._sequence = max(self._sequence, job.sequence)
                if job.state in (JobState.RUNNING, JobState.FAILED):
                    job.state = JobState.PENDING
                    job.pause_requested = False
                    job.cancel_requested = False
                    await self._persist(job)
                    await self._log(job, "Recovered after restart", level=LogLevel.WARN)
                self._jobs[job.id] = job
            self._update_depth()

        if jobs:
            logger.info(f"[queue] Recovered {len(jobs)} job(s)")
            self._wake()
        return len(jobs)

    def get_metrics(self) -> dict[str, Any]:
        """Queue summary for operators."""
        counts = Counter(j.state.value for j in self._jobs.values())
        return {
            "states": {s.value: counts.get(s.value, 0) for s in JobState if not s.is_terminal},
            "running": len(self._running),
            "worker_count": self.config.worker_count,
            "finished": dict(self._finished_today),
        }

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def dequeue_next(self) -> Optional[Job]:
        """
        Claim the next eligible job and mark it RUNNING.

        Returns:
            A copy of the claimed job, or None if nothing is eligible
        """
        async with self._lock:
            if len(self._running) >= self.config.worker_count:
                return None

            now = self._clock()
            busy = Counter(s for sources in self._running.values() for s in sources)
            candidates = sorted(
                (
                    j for j in self._jobs.values()
                    if j.state == JobState.PENDING
                    and (j.next_eligible_at is None or j.next_eligible_at <= now)
                ),
                key=lambda j: (-j.priority.rank, j.sequence),
            )

            for job in candidates:
                sources = self._sources_for(job)
                if any(busy[s] >= self.config.source_concurrency.get(s, self.config.worker_count) for s in sources):
                    continue

                job.state = JobState.RUNNING
                job.started_at = now
                job.next_eligible_at = None
                self._running[job.id] = sources
                await self._persist(job)
                await self._log(job, f"Started attempt {job.attempts + 1}/{job.max_attempts}")
                self._update_depth()
                return job.model_copy(deep=True)

            return None

    def _next_wakeup_seconds(self) -> float:
        """Seconds until the earliest retrying job becomes eligible, capped by the poll interval."""
        timeout = self.config.poll_interval_seconds
        now = self._clock()
        for job in self._jobs.values():
            if job.state == JobState.PENDING and job.next_eligible_at is not None:
                timeout = min(timeout, max(0.0, (job.next_eligible_at - now).total_seconds()))
        return timeout

    async def _wait_for_work(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self._next_wakeup_seconds())
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    # =========================================================================
    # Execution
    # =========================================================================

    def _context_for(self, job: Job) -> JobContext:
        return JobContext(
            job_id=job.id,
            job_type=job.type,
            params=job.parameters.model_copy(deep=True),
            attempt=job.attempts + 1,
            on_checkpoint=self._checkpoint,
            on_progress=self._report_progress,
            on_log=self._append_log,
            on_error=self._record_error,
            clock=self._monotonic,
        )

    async def run_job(self, job: Job) -> None:
        """Run a claimed job's handler and classify the outcome."""
        handler = self.handlers[job.type]
        ctx = self._context_for(job)
        started = self._monotonic()
        try:
            result = await handler.run(ctx)
        except JobCancelled:
            await self._on_cancelled(job.id)
        except asyncio.CancelledError:
            # Worker shutdown; recover() puts the job back to PENDING on restart
            logger.warning(f"[job {job.id[:8]}] Interrupted by shutdown")
            raise
        except Exception as e:
            kind = getattr(e, "kind", ErrorKind.FATAL)
            if not isinstance(kind, ErrorKind):
                kind = ErrorKind.FATAL
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            await self._on_failed(job.id, message, kind)
        else:
            await self._on_completed(job.id, result)
        finally:
            self._running.pop(job.id, None)
            record_job_duration(job.type.value, self._monotonic() - started)
            self._wake()

    async def _save_outcome(self, job: Job, snapshot: Job) -> bool:
        """
        Persist a job outcome.

        If the repository rejects the save, the arena record is replaced by
        the pre-outcome snapshot set back to PENDING with a backoff, so the
        job runs again once storage recovers instead of lingering unsaved.

        Returns:
            True if the outcome was saved
        """
        try:
            await self._persist(job)
        except PersistenceError as e:
            delay = self.config.retry_delay(max(1, snapshot.attempts))
            snapshot.state = JobState.PENDING
            snapshot.completed_at = None
            snapshot.next_eligible_at = self._clock() + timedelta(seconds=delay)
            self._jobs[job.id] = snapshot
            self._update_depth()
            logger.error(
                f"[job {job.id[:8]}] Could not save {job.state.value} outcome, requeued in {delay:.0f}s: {e.message}"
            )
            return False
        return True

    async def _on_completed(self, job_id: str, result: HandlerResult) -> None:
        async with self._lock:
            job = self._jobs[job_id]
            snapshot = job.model_copy(deep=True)
            job.attempts += 1
            job.result = result.summary | {
                "processed": result.processed,
                "failed": result.failed,
                "total": result.total,
            }
            self._finalize(job, JobState.COMPLETED)
            if not await self._save_outcome(job, snapshot):
                return
            self._retire(job)
            self._update_depth()
            await self._log(job, f"Completed: {result.processed}/{result.total} processed, {result.failed} failed")

    async def _on_cancelled(self, job_id: str) -> None:
        async with self._lock:
            job = self._jobs[job_id]
            snapshot = job.model_copy(deep=True)
            self._finalize(job, JobState.CANCELLED)
            if not await self._save_outcome(job, snapshot):
                return
            self._retire(job)
            self._update_depth()
            await self._log(
                job,
                f"Cancelled at {job.progress.processed}/{job.progress.total}",
                processed=job.progress.processed,
            )

    async def _on_failed(self, job_id: str, message: str, kind: ErrorKind) -> None:
        async with self._lock:
            job = self._jobs[job_id]
            job.attempts += 1
            job.errors.append(
                JobError(timestamp=self._clock(), message=message, classification=kind, attempt=job.attempts)
            )
            del job.errors[:-MAX_JOB_ERRORS]
            job.pause_requested = False
            snapshot = job.model_copy(deep=True)

            job.state = JobState.FAILED
            if not await self._save_outcome(job, snapshot):
                return

            retry_delay: Optional[float] = None
            if job.cancel_requested:
                self._finalize(job, JobState.CANCELLED)
                note, level = "Cancelled after failed attempt", LogLevel.INFO
            elif job.attempts < job.max_attempts:
                retry_delay = self.config.retry_delay(job.attempts)
                job.state = JobState.PENDING
                job.next_eligible_at = self._clock() + timedelta(seconds=retry_delay)
                note, level = f"Retry scheduled in {retry_delay:.0f}s", LogLevel.WARN
            else:
                self._finalize(job, JobState.DEAD)
                note, level = "Attempts exhausted", LogLevel.ERROR

            if not await self._save_outcome(job, snapshot):
                return
            if retry_delay is not None:
                record_job_retry(job.type.value)
            self._retire(job)
            self._update_depth()

            await self._log(job, f"Attempt {job.attempts}/{job.max_attempts} failed: {message}", level=LogLevel.ERROR)
            await self._log(job, note, level=level)

    # =========================================================================
    # Handler callbacks
    # =========================================================================

    async def _checkpoint(self, job_id: str) -> None:
        while True:
            async with self._lock:
                job = self._jobs[job_id]
                if job.cancel_requested:
                    raise JobCancelled(f"Job {job_id} cancelled", {"job_id": job_id})
                if job.pause_requested:
                    job.pause_requested = False
                    job.state = JobState.PAUSED
                    await self._persist(job)
                    await self._log(job, f"Paused at {job.progress.processed}/{job.progress.total}")
                    self._update_depth()
                if job.state != JobState.PAUSED:
                    return
                event = asyncio.Event()
                self._resume_events[job_id] = event
            await event.wait()

    async def _report_progress(self, job_id: str, progress: JobProgress) -> None:
        async with self._lock:
            job = self._jobs[job_id]
            previous_step = int(job.progress.percentage // PROGRESS_LOG_STEP)
            job.progress = progress
            await self._persist(job)
            step = int(progress.percentage // PROGRESS_LOG_STEP)
            if step > previous_step and progress.total:
                await self._log(
                    job,
                    f"Progress {progress.percentage:.0f}% ({progress.processed + progress.failed}/{progress.total})",
                )

    async def _append_log(self, job_id: str, entry: JobLogEntry) -> None:
        await self.repository.append_job_log(job_id, entry)

    async def _record_error(self, job_id: str, error: JobError) -> None:
        async with self._lock:
            job = self._jobs[job_id]
            job.errors.append(error)
            del job.errors[:-MAX_JOB_ERRORS]
            await self._persist(job)

    # =========================================================================
    # Worker pool
    # =========================================================================

    async def _worker(self, index: int) -> None:
        logger.info(f"[queue] Worker {index} started")
        while not self._stopping:
            job = await self.dequeue_next()
            if job is None:
                await self._wait_for_work()
                continue
            try:
                await self.run_job(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Outcome could not be recorded (e.g. repository down)
                logger.error(f"[queue] Worker {index} failed to record outcome of {job.id}: {e}")

    async def start(self) -> None:
        """Start the worker pool."""
        if self._workers:
            return
        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"job-worker-{i}")
            for i in range(self.config.worker_count)
        ]
        logger.info(f"[queue] Started {len(self._workers)} worker(s)")

    async def stop(self) -> None:
        """Stop the worker pool. Running handlers are interrupted."""
        self._stopping = True
        self._wake()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("[queue] Stopped")

    @property
    def is_running(self) -> bool:
        return bool(self._workers)
