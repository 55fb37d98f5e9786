from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

from placeblocks.core.errors import JobNotFoundError
from placeblocks.jobs.lease_reaper import should_requeue
from placeblocks.jobs.state import compute_retry_delay_seconds, ensure_retryable, ensure_transition
from placeblocks.schemas.jobs import (
    CRAWL_JOB_STATUSES,
    CrawlError,
    CrawlJob,
    CrawlProgress,
    CrawlResult,
    JobOutcomes,
    QueueStats,
)

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    async def enqueue(self, job: CrawlJob) -> CrawlJob: ...

    async def get(self, job_id: str) -> CrawlJob: ...

    async def claim_next(self, worker_id: str, lease_seconds: int) -> CrawlJob | None: ...

    async def update_progress(
        self,
        job_id: str,
        progress: CrawlProgress,
        *,
        lease_seconds: int | None = None,
    ) -> CrawlJob: ...

    async def transition(self, job_id: str, target: str) -> CrawlJob: ...

    async def complete(self, job_id: str, result: CrawlResult, progress: CrawlProgress | None = None) -> CrawlJob: ...

    async def fail(
        self,
        job_id: str,
        error: CrawlError,
        progress: CrawlProgress | None = None,
    ) -> CrawlJob: ...

    async def retry(self, job_id: str) -> CrawlJob: ...

    async def requeue_expired(self, limit: int) -> int: ...

    async def prune_finished(self, keep_completed: int, keep_failed: int) -> int: ...

    async def stats(self) -> QueueStats: ...

    async def recent_outcomes(self, since: datetime) -> JobOutcomes: ...

    async def close(self) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def apply_failure(job: CrawlJob, error: CrawlError, now: datetime) -> CrawlJob:
    """Return the job after a failed run: back to pending with backoff, or failed for good."""
    ensure_transition(job.id, job.status, "failed")
    if error.retryable and job.retry_count < job.max_retries:
        retry_count = job.retry_count + 1
        delay = compute_retry_delay_seconds(retry_count, job.config.retry)
        return job.model_copy(
            update={
                "status": "pending",
                "retry_count": retry_count,
                "error": error,
                "next_run_at": now + timedelta(seconds=delay),
                "worker_id": None,
                "lease_expires_at": None,
            }
        )
    return job.model_copy(
        update={
            "status": "failed",
            "error": error,
            "completed_at": now,
            "worker_id": None,
            "lease_expires_at": None,
        }
    )


class InMemoryJobQueue:
    """Single-process priority queue with the same semantics as the Postgres queue."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._jobs: dict[str, CrawlJob] = {}
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    async def enqueue(self, job: CrawlJob) -> CrawlJob:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            return job.model_copy(deep=True)

    async def get(self, job_id: str) -> CrawlJob:
        return self._require(job_id).model_copy(deep=True)

    async def claim_next(self, worker_id: str, lease_seconds: int) -> CrawlJob | None:
        async with self._lock:
            now = self._clock()
            due = [job for job in self._jobs.values() if job.status == "pending" and job.next_run_at <= now]
            if not due:
                return None
            due.sort(key=lambda job: (-job.priority, job.created_at))
            claimed = due[0].model_copy(
                update={
                    "status": "running",
                    "started_at": now,
                    "worker_id": worker_id,
                    "lease_expires_at": now + timedelta(seconds=lease_seconds),
                }
            )
            self._jobs[claimed.id] = claimed
            return claimed.model_copy(deep=True)

    async def update_progress(
        self,
        job_id: str,
        progress: CrawlProgress,
        *,
        lease_seconds: int | None = None,
    ) -> CrawlJob:
        async with self._lock:
            job = self._require(job_id)
            update: dict[str, object] = {"progress": progress}
            if job.status == "running" and lease_seconds is not None:
                update["lease_expires_at"] = self._clock() + timedelta(seconds=lease_seconds)
            job = job.model_copy(update=update)
            self._jobs[job_id] = job
            return job.model_copy(deep=True)

    async def transition(self, job_id: str, target: str) -> CrawlJob:
        async with self._lock:
            job = self._require(job_id)
            ensure_transition(job.id, job.status, target)
            now = self._clock()
            update: dict[str, object] = {"status": target}
            if target == "pending":
                update.update({"next_run_at": now, "worker_id": None, "lease_expires_at": None})
            elif target in {"cancelled", "completed", "failed"}:
                update.update({"completed_at": now, "lease_expires_at": None})
            elif target == "paused":
                update.update({"lease_expires_at": None})
            job = job.model_copy(update=update)
            self._jobs[job_id] = job
            return job.model_copy(deep=True)

    async def complete(self, job_id: str, result: CrawlResult, progress: CrawlProgress | None = None) -> CrawlJob:
        async with self._lock:
            job = self._require(job_id)
            ensure_transition(job.id, job.status, "completed")
            job = job.model_copy(
                update={
                    "status": "completed",
                    "result": result,
                    "progress": progress or job.progress,
                    "completed_at": self._clock(),
                    "lease_expires_at": None,
                }
            )
            self._jobs[job_id] = job
            return job.model_copy(deep=True)

    async def fail(self, job_id: str, error: CrawlError, progress: CrawlProgress | None = None) -> CrawlJob:
        async with self._lock:
            job = self._require(job_id)
            if progress is not None:
                job = job.model_copy(update={"progress": progress})
            job = apply_failure(job, error, self._clock())
            self._jobs[job_id] = job
            return job.model_copy(deep=True)

    async def retry(self, job_id: str) -> CrawlJob:
        async with self._lock:
            job = self._require(job_id)
            ensure_retryable(job)
            job = job.model_copy(
                update={
                    "status": "pending",
                    "next_run_at": self._clock(),
                    "completed_at": None,
                    "worker_id": None,
                    "lease_expires_at": None,
                }
            )
            self._jobs[job_id] = job
            return job.model_copy(deep=True)

    async def requeue_expired(self, limit: int) -> int:
        async with self._lock:
            now = self._clock()
            expired = [job for job in self._jobs.values() if should_requeue(job, now=now)]
            expired.sort(key=lambda job: job.lease_expires_at or now)
            for job in expired[: max(1, min(limit, 1000))]:
                self._jobs[job.id] = job.model_copy(
                    update={"status": "pending", "next_run_at": now, "worker_id": None, "lease_expires_at": None}
                )
                logger.info("requeued job with expired lease id=%s worker=%s", job.id, job.worker_id)
            return min(len(expired), max(1, min(limit, 1000)))

    async def prune_finished(self, keep_completed: int, keep_failed: int) -> int:
        """Drop all but the newest finished jobs of each status."""
        async with self._lock:
            removed = 0
            for status, keep in (("completed", keep_completed), ("failed", keep_failed)):
                finished = [job for job in self._jobs.values() if job.status == status]
                finished.sort(key=lambda job: job.completed_at or job.created_at, reverse=True)
                for job in finished[max(0, keep) :]:
                    del self._jobs[job.id]
                    removed += 1
            return removed

    async def stats(self) -> QueueStats:
        now = self._clock()
        counts = {status: 0 for status in CRAWL_JOB_STATUSES}
        due = 0
        for job in self._jobs.values():
            counts[job.status] += 1
            if job.status == "pending" and job.next_run_at <= now:
                due += 1
        return QueueStats(**counts, due=due)

    async def recent_outcomes(self, since: datetime) -> JobOutcomes:
        finished = [
            job
            for job in self._jobs.values()
            if job.completed_at is not None and job.completed_at >= since and job.status in {"completed", "failed"}
        ]
        completed = [job for job in finished if job.status == "completed"]
        failed = [job for job in finished if job.status == "failed"]
        return JobOutcomes(
            completed=len(completed),
            failed=len(failed),
            error_count=len(failed) + sum(job.retry_count for job in finished),
            last_completed_at=max((job.completed_at for job in completed if job.completed_at), default=None),
        )

    def _require(self, job_id: str) -> CrawlJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found")
        return job
