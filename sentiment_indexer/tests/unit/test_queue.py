"""
Unit tests for the job queue.

Tests:
- Priority / FIFO ordering and concurrency caps
- Retry backoff and the DEAD state
- Pause / resume / cancel state transitions
- Recovery after restart
- Enqueue validation
- Worker pool end to end

Jobs are driven by hand (dequeue_next + run_job) against a fake clock,
except for the worker pool test.
"""

import asyncio
import pytest
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from sentiment_indexer.core.errors import JobNotFound, JobStateConflict, PersistenceError, ValidationError
from sentiment_indexer.core.types import (
    ErrorKind,
    Job,
    JobParameters,
    JobPriority,
    JobState,
    JobType,
    SourceId,
)
from sentiment_indexer.jobs.context import JobContext
from sentiment_indexer.jobs.handlers import JobHandler
from sentiment_indexer.jobs.queue import JobQueue, QueueConfig
from sentiment_indexer.persistence.memory import InMemoryRepository


DAY = date(2024, 1, 15)
RECOMPUTE_PARAMS = {"target_date": DAY}


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class StubHandler(JobHandler):
    """Handler over `count` integer items; raises the queued failures on successive runs."""

    def __init__(
        self,
        job_type: JobType = JobType.RECOMPUTE,
        count: int = 3,
        failures: Optional[list[Exception]] = None,
        on_item: Optional[Callable[[JobContext, int], Awaitable[None]]] = None,
    ):
        self.job_type = job_type
        self.count = count
        self.failures = list(failures or [])
        self.on_item = on_item
        self.processed: list[int] = []
        self.runs = 0

    def items(self, params: JobParameters) -> list[int]:
        return list(range(self.count))

    async def process_item(self, ctx: JobContext, item: int, state: dict[str, Any]) -> None:
        if self.on_item:
            await self.on_item(ctx, item)
        self.processed.append(item)

    def summarize(self, params: JobParameters, state: dict[str, Any]) -> dict[str, Any]:
        return {"items": len(self.processed)}

    async def run(self, ctx: JobContext):
        self.runs += 1
        if self.failures:
            raise self.failures.pop(0)
        return await super().run(ctx)


class RejectingRepository(InMemoryRepository):
    """Rejects the first save of a job in each of the given states."""

    def __init__(self, *states: JobState):
        super().__init__()
        self.reject = set(states)

    async def save_job(self, job: Job) -> None:
        if job.state in self.reject:
            self.reject.discard(job.state)
            raise PersistenceError(f"save rejected for {job.state.value}")
        await super().save_job(job)


def make_queue(*handlers: StubHandler, repository=None, clock=None, **config) -> JobQueue:
    registry = {h.job_type: h for h in (handlers or (StubHandler(),))}
    config.setdefault("worker_count", 10)
    return JobQueue(
        repository or InMemoryRepository(),
        registry,
        QueueConfig(**config),
        clock=clock or FakeClock(),
    )


async def run_next(queue: JobQueue) -> Job:
    job = await queue.dequeue_next()
    assert job is not None
    await queue.run_job(job)
    return await queue.get_status(job.id)


async def wait_for_state(queue: JobQueue, job_id: str, state: JobState, spins: int = 500) -> Job:
    for _ in range(spins):
        job = await queue.get_status(job_id)
        if job.state == state:
            return job
        await asyncio.sleep(0)
    raise AssertionError(f"job {job_id} never reached {state.value}")


# =============================================================================
# Scheduling
# =============================================================================


class TestScheduling:
    """Tests for dequeue ordering and caps."""

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self):
        queue = make_queue()
        a = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS, JobPriority.NORMAL)
        b = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS, JobPriority.HIGH)
        c = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS, JobPriority.NORMAL)
        d = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS, JobPriority.LOW)

        order = [(await queue.dequeue_next()).id for _ in range(4)]

        assert order == [b, a, c, d]
        assert await queue.dequeue_next() is None

    @pytest.mark.asyncio
    async def test_dequeued_job_is_running(self):
        queue = make_queue()
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        job = await queue.dequeue_next()

        assert job.id == job_id
        assert job.state == JobState.RUNNING
        assert job.started_at is not None

    @pytest.mark.asyncio
    async def test_global_worker_cap(self):
        queue = make_queue(worker_count=1)
        await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)
        second = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        first = await queue.dequeue_next()
        assert await queue.dequeue_next() is None

        await queue.run_job(first)
        assert (await queue.dequeue_next()).id == second

    @pytest.mark.asyncio
    async def test_per_source_cap(self):
        """A second collection job waits for the busy source; a source-free job does not."""
        queue = make_queue(StubHandler(JobType.DAILY_COLLECTION), StubHandler(JobType.RECOMPUTE))
        await queue.enqueue(JobType.DAILY_COLLECTION, {"target_date": DAY})
        await queue.enqueue(JobType.DAILY_COLLECTION, {"target_date": DAY + timedelta(days=1)})
        recompute = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        first = await queue.dequeue_next()
        next_job = await queue.dequeue_next()

        assert first.type == JobType.DAILY_COLLECTION
        assert next_job.id == recompute
        assert await queue.dequeue_next() is None

    @pytest.mark.asyncio
    async def test_source_filter_narrows_cap(self):
        """Collection jobs on disjoint sources run side by side."""
        queue = make_queue(StubHandler(JobType.DAILY_COLLECTION))
        await queue.enqueue(JobType.DAILY_COLLECTION, {"target_date": DAY, "sources": ["krx"]})
        await queue.enqueue(JobType.DAILY_COLLECTION, {"target_date": DAY, "sources": ["bok"]})

        assert await queue.dequeue_next() is not None
        assert await queue.dequeue_next() is not None

    @pytest.mark.asyncio
    async def test_configured_source_concurrency(self):
        queue = make_queue(
            StubHandler(JobType.DAILY_COLLECTION),
            source_concurrency={SourceId.KRX: 2, SourceId.BOK: 2, SourceId.DART: 2},
        )
        for offset in range(3):
            await queue.enqueue(JobType.DAILY_COLLECTION, {"target_date": DAY + timedelta(days=offset)})

        assert await queue.dequeue_next() is not None
        assert await queue.dequeue_next() is not None
        assert await queue.dequeue_next() is None


# =============================================================================
# Completion, retry, DEAD
# =============================================================================


class TestOutcomes:
    """Tests for completion and the retry path."""

    @pytest.mark.asyncio
    async def test_completed_result(self):
        queue = make_queue(StubHandler(count=4))
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        job = await run_next(queue)

        assert job.id == job_id
        assert job.state == JobState.COMPLETED
        assert job.attempts == 1
        assert job.result == {"items": 4, "processed": 4, "failed": 0, "total": 4}
        assert job.progress.percentage == 100.0
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(self):
        clock = FakeClock()
        queue = make_queue(StubHandler(failures=[RuntimeError("boom")]), clock=clock)
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        job = await run_next(queue)

        assert job.state == JobState.PENDING
        assert job.attempts == 1
        assert job.next_eligible_at == clock.now + timedelta(seconds=300)
        assert await queue.dequeue_next() is None

        clock.advance(300)
        assert (await queue.dequeue_next()).id == job_id

    @pytest.mark.asyncio
    async def test_attempts_exhausted_goes_dead(self):
        """max_attempts=3: three failures end in DEAD and no fourth dequeue."""
        clock = FakeClock()
        handler = StubHandler(failures=[RuntimeError("boom")] * 4)
        queue = make_queue(handler, clock=clock)
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS, max_attempts=3)

        for _ in range(3):
            await run_next(queue)
            clock.advance(3600)

        job = await queue.get_status(job_id)
        assert job.state == JobState.DEAD
        assert job.attempts == 3
        assert len(job.errors) == 3
        assert [e.attempt for e in job.errors] == [1, 2, 3]
        assert all(e.classification == ErrorKind.FATAL for e in job.errors)

        clock.advance(86400)
        assert await queue.dequeue_next() is None
        assert handler.runs == 3

    @pytest.mark.asyncio
    async def test_errors_preserved_after_successful_retry(self):
        clock = FakeClock()
        queue = make_queue(StubHandler(failures=[RuntimeError("first try")]), clock=clock)
        await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        await run_next(queue)
        clock.advance(300)
        job = await run_next(queue)

        assert job.state == JobState.COMPLETED
        assert job.attempts == 2
        assert [e.message for e in job.errors] == ["first try"]

    @pytest.mark.asyncio
    async def test_unsaved_failure_is_requeued(self):
        """A failed attempt whose FAILED state cannot be saved still gets retried."""
        clock = FakeClock()
        repository = RejectingRepository(JobState.FAILED)
        queue = make_queue(StubHandler(failures=[RuntimeError("boom")]), repository=repository, clock=clock)
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        job = await run_next(queue)

        assert job.state == JobState.PENDING
        assert job.attempts == 1
        assert job.next_eligible_at == clock.now + timedelta(seconds=300)

        clock.advance(300)
        job = await run_next(queue)

        assert job.id == job_id
        assert job.state == JobState.COMPLETED
        assert job.attempts == 2
        assert [e.message for e in job.errors] == ["boom"]
        assert (await repository.get_job(job_id)).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_unsaved_completion_is_requeued(self):
        clock = FakeClock()
        repository = RejectingRepository(JobState.COMPLETED)
        handler = StubHandler(count=2)
        queue = make_queue(handler, repository=repository, clock=clock)
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        job = await run_next(queue)

        assert job.state == JobState.PENDING
        assert job.attempts == 0
        assert job.completed_at is None
        assert queue.get_metrics()["finished"] == {}

        clock.advance(300)
        job = await run_next(queue)

        assert job.state == JobState.COMPLETED
        assert handler.runs == 2
        assert (await repository.get_job(job_id)).state == JobState.COMPLETED

    def test_retry_delay_is_capped(self):
        config = QueueConfig()
        assert config.retry_delay(1) == 300
        assert config.retry_delay(2) == 600
        assert config.retry_delay(10) == 3600


# =============================================================================
# Control operations
# =============================================================================


class TestControl:
    """Tests for pause / resume / cancel."""

    @pytest.mark.asyncio
    async def test_pause_and_resume_pending(self):
        queue = make_queue()
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        paused = await queue.pause(job_id)
        assert paused.state == JobState.PAUSED
        assert await queue.dequeue_next() is None

        resumed = await queue.resume(job_id)
        assert resumed.state == JobState.PENDING
        assert (await queue.dequeue_next()).id == job_id

    @pytest.mark.asyncio
    async def test_pause_running_job_at_checkpoint(self):
        async def pause_on_first(ctx: JobContext, item: int) -> None:
            if item == 0:
                await queue.pause(ctx.job_id)

        handler = StubHandler(count=3, on_item=pause_on_first)
        queue = make_queue(handler)
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)
        job = await queue.dequeue_next()

        task = asyncio.create_task(queue.run_job(job))
        paused = await wait_for_state(queue, job_id, JobState.PAUSED)

        assert paused.progress.processed == 1
        assert handler.processed == [0]

        await queue.resume(job_id)
        await asyncio.wait_for(task, timeout=5)

        done = await queue.get_status(job_id)
        assert done.state == JobState.COMPLETED
        assert handler.processed == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_cancel_running_job_keeps_completed_work(self):
        """Cancelling after item 40 of 100 keeps 40 results and stops there."""
        async def cancel_at_forty(ctx: JobContext, item: int) -> None:
            if item == 39:
                await queue.cancel(ctx.job_id)

        handler = StubHandler(count=100, on_item=cancel_at_forty)
        queue = make_queue(handler)
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        job = await run_next(queue)

        assert job.id == job_id
        assert job.state == JobState.CANCELLED
        assert job.progress.processed == 40
        assert len(handler.processed) == 40

    @pytest.mark.asyncio
    async def test_cancel_paused_running_job(self):
        async def pause_on_first(ctx: JobContext, item: int) -> None:
            if item == 0:
                await queue.pause(ctx.job_id)

        queue = make_queue(StubHandler(count=3, on_item=pause_on_first))
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)
        task = asyncio.create_task(queue.run_job(await queue.dequeue_next()))
        await wait_for_state(queue, job_id, JobState.PAUSED)

        await queue.cancel(job_id)
        await asyncio.wait_for(task, timeout=5)

        assert (await queue.get_status(job_id)).state == JobState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_pending_is_immediate(self):
        queue = make_queue()
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        job = await queue.cancel(job_id)

        assert job.state == JobState.CANCELLED
        assert await queue.dequeue_next() is None

    @pytest.mark.asyncio
    async def test_operations_on_terminal_job_conflict(self):
        queue = make_queue()
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)
        await queue.cancel(job_id)

        with pytest.raises(JobStateConflict):
            await queue.cancel(job_id)
        with pytest.raises(JobStateConflict):
            await queue.pause(job_id)
        with pytest.raises(JobStateConflict):
            await queue.resume(job_id)

    @pytest.mark.asyncio
    async def test_unsaved_cancel_leaves_job_pending(self):
        queue = make_queue(repository=RejectingRepository(JobState.CANCELLED))
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        with pytest.raises(PersistenceError):
            await queue.cancel(job_id)

        assert (await queue.get_status(job_id)).state == JobState.PENDING
        assert (await queue.dequeue_next()).id == job_id

    @pytest.mark.asyncio
    async def test_resume_pending_conflicts(self):
        queue = make_queue()
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        with pytest.raises(JobStateConflict):
            await queue.resume(job_id)

    @pytest.mark.asyncio
    async def test_unknown_job(self):
        queue = make_queue()

        with pytest.raises(JobNotFound):
            await queue.get_status("missing")
        with pytest.raises(JobNotFound):
            await queue.cancel("missing")
        with pytest.raises(JobNotFound):
            await queue.get_logs("missing")


# =============================================================================
# Enqueue validation, logs, metrics, recovery
# =============================================================================


class TestEnqueue:
    """Tests for enqueue validation and bookkeeping."""

    @pytest.mark.asyncio
    async def test_invalid_parameter_types_rejected(self):
        queue = make_queue()
        with pytest.raises(ValidationError):
            await queue.enqueue(JobType.RECOMPUTE, {"target_date": "not-a-date"})

    @pytest.mark.asyncio
    async def test_missing_required_parameter_rejected(self):
        queue = make_queue(StubHandler(JobType.DAILY_COLLECTION))
        with pytest.raises(ValidationError):
            await queue.enqueue(JobType.DAILY_COLLECTION, {})

    @pytest.mark.asyncio
    async def test_max_attempts_must_be_positive(self):
        queue = make_queue()
        with pytest.raises(ValidationError):
            await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS, max_attempts=0)

    @pytest.mark.asyncio
    async def test_unregistered_type_rejected(self):
        queue = make_queue()
        with pytest.raises(ValidationError):
            await queue.enqueue(JobType.BACKFILL, {"start_date": DAY, "end_date": DAY})

    @pytest.mark.asyncio
    async def test_weekend_only_range_rejected(self):
        queue = make_queue()
        # 2024-01-20 Saturday .. 2024-01-21 Sunday
        weekend = {"start_date": date(2024, 1, 20), "end_date": date(2024, 1, 21)}

        with pytest.raises(ValidationError, match="no weekdays"):
            await queue.enqueue(JobType.RECOMPUTE, weekend)

        job_id = await queue.enqueue(JobType.RECOMPUTE, {**weekend, "skip_weekends": False})
        assert (await queue.get_status(job_id)).state == JobState.PENDING

    @pytest.mark.asyncio
    async def test_type_default_max_attempts(self):
        queue = make_queue(StubHandler(JobType.FINANCIAL_BATCH))
        job_id = await queue.enqueue(
            JobType.FINANCIAL_BATCH, {"entity_ids": ["00126380"], "business_year": 2023}
        )

        assert (await queue.get_status(job_id)).max_attempts == 2

    @pytest.mark.asyncio
    async def test_logs_and_metrics(self):
        queue = make_queue()
        job_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        logs = await queue.get_logs(job_id)
        metrics = queue.get_metrics()

        assert logs[0].message.startswith("Job created")
        assert metrics["states"]["pending"] == 1
        assert metrics["running"] == 0
        assert "completed" not in metrics["states"]

    @pytest.mark.asyncio
    async def test_list_jobs(self):
        queue = make_queue()
        first = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)
        second = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)

        jobs = await queue.list_jobs()

        assert {j.id for j in jobs} == {first, second}


class TestRecovery:
    """Tests for restart recovery."""

    @pytest.mark.asyncio
    async def test_recover_requeues_running_jobs(self):
        repository = InMemoryRepository()
        await repository.save_job(Job(id="running", type=JobType.RECOMPUTE, state=JobState.RUNNING, sequence=7))
        await repository.save_job(Job(id="paused", type=JobType.RECOMPUTE, state=JobState.PAUSED, sequence=3))
        await repository.save_job(Job(id="done", type=JobType.RECOMPUTE, state=JobState.COMPLETED, sequence=1))

        queue = make_queue(repository=repository)
        recovered = await queue.recover()

        assert recovered == 2
        assert (await queue.get_status("running")).state == JobState.PENDING
        assert (await queue.get_status("paused")).state == JobState.PAUSED
        assert (await queue.dequeue_next()).id == "running"

        new_id = await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS)
        assert (await queue.get_status(new_id)).sequence == 8

    @pytest.mark.asyncio
    async def test_recover_pages_through_all_jobs(self):
        repository = InMemoryRepository()
        for n in range(1, 1202):
            await repository.save_job(Job(id=f"job-{n}", type=JobType.RECOMPUTE, state=JobState.PENDING, sequence=n))

        queue = make_queue(repository=repository)

        assert await queue.recover() == 1201
        assert queue.get_metrics()["states"]["pending"] == 1201
        assert (await queue.dequeue_next()).id == "job-1"


class TestWorkerPool:
    """End-to-end run through the worker pool."""

    @pytest.mark.asyncio
    async def test_workers_complete_jobs(self):
        queue = JobQueue(
            InMemoryRepository(),
            {JobType.RECOMPUTE: StubHandler(count=2)},
            QueueConfig(worker_count=2, poll_interval_seconds=0.01),
        )
        await queue.start()
        try:
            assert queue.is_running
            ids = [await queue.enqueue(JobType.RECOMPUTE, RECOMPUTE_PARAMS) for _ in range(3)]
            for job_id in ids:
                for _ in range(500):
                    if (await queue.get_status(job_id)).state == JobState.COMPLETED:
                        break
                    await asyncio.sleep(0.01)
                assert (await queue.get_status(job_id)).state == JobState.COMPLETED
        finally:
            await queue.stop()

        assert not queue.is_running
