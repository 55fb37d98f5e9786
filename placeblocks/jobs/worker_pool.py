from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from placeblocks.core.errors import InvalidTransitionError, TransientNetworkError
from placeblocks.jobs.executor import CrawlJobExecutor
from placeblocks.jobs.queue import JobQueue
from placeblocks.schemas.jobs import CrawlError, CrawlJob

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def crawl_error_for(job: CrawlJob, exc: Exception) -> CrawlError:
    retryable = isinstance(exc, TransientNetworkError) and job.config.retry_on_fail
    return CrawlError(
        code=exc.__class__.__name__,
        message=str(exc) or exc.__class__.__name__,
        retryable=retryable,
    )


class WorkerPool:
    """N asyncio workers pulling from one priority queue."""

    def __init__(
        self,
        queue: JobQueue,
        executor: CrawlJobExecutor,
        *,
        concurrency: int = 2,
        worker_id: str = "local-worker",
        poll_interval_seconds: float = 2.0,
        max_backoff_seconds: float = 15.0,
        lease_seconds: int = 300,
        lease_reaper_interval_seconds: float = 15.0,
        lease_reaper_batch_size: int = 100,
        keep_completed_jobs: int = 100,
        keep_failed_jobs: int = 50,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.concurrency = max(1, concurrency)
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.lease_seconds = lease_seconds
        self.lease_reaper_interval_seconds = lease_reaper_interval_seconds
        self.lease_reaper_batch_size = lease_reaper_batch_size
        self.keep_completed_jobs = keep_completed_jobs
        self.keep_failed_jobs = keep_failed_jobs
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._last_reap_at = 0.0

    async def run(self) -> None:
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"{self.worker_id}-{index}"), name=f"crawl-worker-{index}")
            for index in range(self.concurrency)
        ]
        try:
            await asyncio.gather(*self._tasks)
        finally:
            self._tasks = []

    async def stop(self) -> None:
        # in-flight jobs finish their current run before the loops exit
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def run_once(self, worker_id: str | None = None) -> CrawlJob | None:
        """Claim and run at most one due job. Returns the job as stored afterwards."""
        claimed = await self.queue.claim_next(worker_id or self.worker_id, self.lease_seconds)
        if claimed is None:
            return None
        with tracer.start_as_current_span("worker.process_job") as job_span:
            job_span.set_attribute("job.id", claimed.id)
            job_span.set_attribute("job.type", claimed.type)
            return await self._process(claimed)

    async def reap_expired(self) -> int:
        requeued = await self.queue.requeue_expired(self.lease_reaper_batch_size)
        if requeued:
            logger.info("requeued expired leases: %s", requeued)
        return requeued

    async def prune_finished(self) -> int:
        pruned = await self.queue.prune_finished(self.keep_completed_jobs, self.keep_failed_jobs)
        if pruned:
            logger.info("pruned finished jobs: %s", pruned)
        return pruned

    async def _worker_loop(self, worker_id: str) -> None:
        backoff = self.poll_interval_seconds
        while not self._stopping.is_set():
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - self._last_reap_at >= self.lease_reaper_interval_seconds:
                        self._last_reap_at = now
                        await self.reap_expired()
                        await self.prune_finished()

                    processed = await self.run_once(worker_id)
                    if processed is None:
                        await self._idle(self.poll_interval_seconds)
                        continue
                backoff = self.poll_interval_seconds
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                logger.exception("worker %s iteration failed: %s; retry in %.1fs", worker_id, exc, sleep_for)
                await self._idle(sleep_for)
                backoff = sleep_for

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return

    async def _process(self, job: CrawlJob) -> CrawlJob:
        try:
            run = await self.executor.execute(job)
        except Exception as exc:
            error = crawl_error_for(job, exc)
            if error.retryable:
                logger.warning("job id=%s hit a transient failure: %s", job.id, exc)
            else:
                logger.exception("job execution failed for id=%s", job.id)
            try:
                failed = await self.queue.fail(job.id, error)
            except InvalidTransitionError:
                logger.info("job id=%s changed state during a failing run, failure not recorded", job.id)
                return await self.queue.get(job.id)
            if failed.status == "pending":
                logger.info("job id=%s scheduled for retry %s/%s at %s", job.id, failed.retry_count, failed.max_retries, failed.next_run_at)
            return failed

        if run.interrupted is not None:
            await self.queue.update_progress(job.id, run.progress)
            logger.info("job id=%s left in status %s with partial progress", job.id, run.interrupted)
            return await self.queue.get(job.id)

        try:
            return await self.queue.complete(job.id, run.result, run.progress)
        except InvalidTransitionError:
            # cancelled or paused after the last cooperative check
            await self.queue.update_progress(job.id, run.progress)
            logger.info("job id=%s finished after it left the running state, progress kept", job.id)
            return await self.queue.get(job.id)
