from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from placeblocks.container import build_services
from placeblocks.core.config import Settings
from placeblocks.core.errors import JobNotFoundError, TransientNetworkError
from placeblocks.jobs.executor import JobRun
from placeblocks.jobs.queue import InMemoryJobQueue
from placeblocks.jobs.scheduler import CrawlScheduler
from placeblocks.jobs.worker_pool import WorkerPool, crawl_error_for
from placeblocks.schemas.jobs import CrawlError, CrawlJob, CrawlProgress, CrawlResult
from placeblocks.services.store import InMemoryBlockStore

START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class Clock:
    def __init__(self) -> None:
        self.now = START

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class RaisingExecutor:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc
        self.calls = 0

    async def execute(self, job: CrawlJob) -> JobRun:
        self.calls += 1
        raise self.exc


class CancelledMidRunExecutor:
    """Finishes its work after an operator cancelled the job."""

    def __init__(self, queue: InMemoryJobQueue) -> None:
        self.queue = queue

    async def execute(self, job: CrawlJob) -> JobRun:
        await self.queue.transition(job.id, "cancelled")
        return JobRun(result=CrawlResult(new_blocks=3), progress=CrawlProgress(processed=3, succeeded=3))


def _setup(executor_factory) -> tuple[Clock, InMemoryJobQueue, CrawlScheduler, WorkerPool, object]:
    clock = Clock()
    queue = InMemoryJobQueue(clock=clock)
    executor = executor_factory(queue)
    return clock, queue, CrawlScheduler(queue, clock=clock), WorkerPool(queue, executor), executor


def test_transient_failures_retry_until_budget_is_spent() -> None:
    async def scenario() -> None:
        clock, queue, scheduler, pool, executor = _setup(lambda _: RaisingExecutor(TransientNetworkError("TOUR_API down")))
        job_id = await scheduler.schedule_full_crawl()

        delays = []
        job = await pool.run_once()
        while job is not None and job.status == "pending":
            delays.append((job.next_run_at - clock.now).total_seconds())
            assert await pool.run_once() is None
            clock.advance(hours=1)
            job = await pool.run_once()

        final = await queue.get(job_id)
        assert final.status == "failed"
        assert final.retry_count == 3
        assert final.error is not None
        assert final.error.code == "TransientNetworkError"
        assert executor.calls == 4
        assert delays == [5.0, 10.0, 20.0]

    asyncio.run(scenario())


def test_other_errors_fail_without_retry() -> None:
    async def scenario() -> None:
        _, queue, scheduler, pool, executor = _setup(lambda _: RaisingExecutor(KeyError("items")))
        job_id = await scheduler.schedule_full_crawl()
        job = await pool.run_once()

        assert job.status == "failed"
        assert job.retry_count == 0
        assert job.error.retryable is False
        assert executor.calls == 1
        assert (await queue.stats()).failed == 1
        assert job_id == job.id

    asyncio.run(scenario())


def test_transient_errors_are_final_when_retry_disabled() -> None:
    async def scenario() -> None:
        _, _, scheduler, pool, executor = _setup(lambda _: RaisingExecutor(TransientNetworkError("down")))
        await scheduler.schedule("FULL_CRAWL", {"retry_on_fail": False})
        job = await pool.run_once()

        assert job.status == "failed"
        assert executor.calls == 1

    asyncio.run(scenario())


def test_cancel_during_run_keeps_progress() -> None:
    async def scenario() -> None:
        _, _, scheduler, pool, _ = _setup(CancelledMidRunExecutor)
        job_id = await scheduler.schedule_full_crawl()
        job = await pool.run_once()

        assert job.id == job_id
        assert job.status == "cancelled"
        assert job.progress.processed == 3
        assert job.result is None

    asyncio.run(scenario())


def test_run_once_with_empty_queue() -> None:
    async def scenario() -> None:
        _, _, _, pool, _ = _setup(lambda _: RaisingExecutor(RuntimeError("unused")))
        assert await pool.run_once() is None

    asyncio.run(scenario())


def test_reaper_requeues_jobs_of_crashed_workers() -> None:
    async def scenario() -> None:
        clock, queue, scheduler, pool, _ = _setup(lambda _: RaisingExecutor(RuntimeError("unused")))
        job_id = await scheduler.schedule_full_crawl()
        await queue.claim_next("crashed", 30)
        clock.advance(seconds=31)

        assert await pool.reap_expired() == 1
        assert (await queue.get(job_id)).status == "pending"

    asyncio.run(scenario())


def test_stop_ends_the_worker_loops() -> None:
    async def scenario() -> None:
        _, _, _, pool, _ = _setup(lambda _: RaisingExecutor(RuntimeError("unused")))
        pool.poll_interval_seconds = 0.01
        runner = asyncio.create_task(pool.run())
        await asyncio.sleep(0.05)
        await pool.stop()
        await asyncio.wait_for(runner, timeout=1)

    asyncio.run(scenario())


def test_crawl_error_marks_only_network_errors_retryable() -> None:
    job = CrawlJob.model_validate(
        {"id": "j", "type": "FULL_CRAWL", "config": {}, "created_at": START, "next_run_at": START}
    )
    assert crawl_error_for(job, TransientNetworkError("x")).retryable
    assert not crawl_error_for(job, ValueError("x")).retryable
    assert crawl_error_for(job, ValueError("")).message == "ValueError"


def test_prune_keeps_only_the_newest_finished_jobs() -> None:
    async def scenario() -> None:
        clock, queue, scheduler, _, executor = _setup(lambda _: RaisingExecutor(RuntimeError("unused")))
        pool = WorkerPool(queue, executor, keep_completed_jobs=2, keep_failed_jobs=1)

        completed: list[str] = []
        failed: list[str] = []
        for index in range(5):
            job_id = await scheduler.schedule("QUALITY_CHECK")
            await queue.claim_next("w1", 60)
            clock.advance(minutes=1)
            if index % 2:
                await queue.fail(job_id, CrawlError(code="ValueError", message="bad", retryable=False))
                failed.append(job_id)
            else:
                await queue.complete(job_id, CrawlResult())
                completed.append(job_id)
        waiting = await scheduler.schedule("QUALITY_CHECK")

        assert await pool.prune_finished() == 2
        for job_id in (*completed[1:], failed[-1], waiting):
            await queue.get(job_id)
        for job_id in (completed[0], failed[0]):
            with pytest.raises(JobNotFoundError):
                await queue.get(job_id)
        stats = await queue.stats()
        assert (stats.completed, stats.failed, stats.pending) == (2, 1, 1)

    asyncio.run(scenario())


def test_worker_pool_takes_retention_from_settings() -> None:
    settings = Settings(database_url=None, redis_url=None, job_retention_completed=7, job_retention_failed=3)
    pool = build_services(settings, store=InMemoryBlockStore(), queue=InMemoryJobQueue()).build_worker_pool()
    assert (pool.keep_completed_jobs, pool.keep_failed_jobs) == (7, 3)
