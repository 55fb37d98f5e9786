from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from placeblocks.core.errors import InvalidTransitionError, JobNotFoundError
from placeblocks.jobs.lease_reaper import lease_expired, should_requeue
from placeblocks.jobs.queue import InMemoryJobQueue, apply_failure
from placeblocks.jobs.state import can_transition, compute_retry_delay_seconds, ensure_retryable
from placeblocks.schemas.jobs import CrawlError, CrawlJob, CrawlJobConfig, RetryPolicy

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _job(job_id: str = "job-1", **overrides: object) -> CrawlJob:
    payload: dict[str, object] = {
        "id": job_id,
        "type": "REGION_CRAWL",
        "config": CrawlJobConfig(region_codes=["1"]),
        "created_at": NOW,
        "next_run_at": NOW,
    }
    payload.update(overrides)
    return CrawlJob.model_validate(payload)


def test_allowed_transitions() -> None:
    assert can_transition("pending", "running")
    assert can_transition("running", "paused")
    assert can_transition("paused", "pending")
    assert can_transition("failed", "pending")
    assert not can_transition("completed", "pending")
    assert not can_transition("cancelled", "pending")
    assert not can_transition("paused", "cancelled")
    assert not can_transition("pending", "completed")


def test_retry_delay_doubles_and_caps() -> None:
    policy = RetryPolicy(base_delay_seconds=5, max_delay_seconds=30)
    assert [compute_retry_delay_seconds(count, policy) for count in (1, 2, 3, 4, 5)] == [5, 10, 20, 30, 30]
    assert compute_retry_delay_seconds(3, RetryPolicy(base_delay_seconds=0)) == 0.0


def test_apply_failure_requeues_with_backoff_until_exhausted() -> None:
    error = CrawlError(code="TransientNetworkError", message="timeout", retryable=True)
    job = _job(status="running", worker_id="w1", max_retries=2)

    first = apply_failure(job, error, NOW)
    assert first.status == "pending"
    assert first.retry_count == 1
    assert first.next_run_at == NOW + timedelta(seconds=5)
    assert first.worker_id is None

    second = apply_failure(first.model_copy(update={"status": "running"}), error, NOW)
    assert second.retry_count == 2
    assert second.next_run_at == NOW + timedelta(seconds=10)

    final = apply_failure(second.model_copy(update={"status": "running"}), error, NOW)
    assert final.status == "failed"
    assert final.retry_count == 2
    assert final.completed_at == NOW


def test_non_retryable_failure_is_final() -> None:
    error = CrawlError(code="ValueError", message="bad config", retryable=False)
    failed = apply_failure(_job(status="running"), error, NOW)
    assert failed.status == "failed"
    assert failed.retry_count == 0


def test_manual_retry_refused_once_budget_is_spent() -> None:
    ensure_retryable(_job(status="failed", retry_count=1, max_retries=3))
    with pytest.raises(InvalidTransitionError):
        ensure_retryable(_job(status="failed", retry_count=3, max_retries=3))
    with pytest.raises(InvalidTransitionError):
        ensure_retryable(_job(status="completed"))


def test_lease_expiry_detection() -> None:
    running = _job(status="running", lease_expires_at=NOW)
    assert lease_expired(running, now=NOW)
    assert should_requeue(running, now=NOW + timedelta(seconds=1))
    assert not should_requeue(running, now=NOW - timedelta(seconds=1))
    assert not should_requeue(_job(status="pending", lease_expires_at=NOW), now=NOW)
    assert not lease_expired(_job(status="running"), now=NOW)


def test_queue_claims_by_priority_then_age() -> None:
    async def scenario() -> None:
        queue = InMemoryJobQueue(clock=lambda: NOW)
        await queue.enqueue(_job("old-low", priority=3, created_at=NOW - timedelta(minutes=5)))
        await queue.enqueue(_job("new-high", priority=8))
        await queue.enqueue(_job("old-high", priority=8, created_at=NOW - timedelta(minutes=1)))
        await queue.enqueue(_job("future", priority=10, next_run_at=NOW + timedelta(hours=1)))

        order = []
        while (claimed := await queue.claim_next("w1", 60)) is not None:
            order.append(claimed.id)
            assert claimed.status == "running"
            assert claimed.lease_expires_at == NOW + timedelta(seconds=60)
        assert order == ["old-high", "new-high", "old-low"]

        stats = await queue.stats()
        assert stats.running == 3
        assert stats.pending == 1
        assert stats.due == 0

    asyncio.run(scenario())


def test_queue_requeues_expired_leases() -> None:
    now = [NOW]

    async def scenario() -> None:
        queue = InMemoryJobQueue(clock=lambda: now[0])
        await queue.enqueue(_job())
        await queue.claim_next("crashed-worker", 30)

        assert await queue.requeue_expired(10) == 0
        now[0] = NOW + timedelta(seconds=31)
        assert await queue.requeue_expired(10) == 1

        job = await queue.get("job-1")
        assert job.status == "pending"
        assert job.worker_id is None

    asyncio.run(scenario())


def test_progress_update_extends_lease() -> None:
    now = [NOW]

    async def scenario() -> None:
        queue = InMemoryJobQueue(clock=lambda: now[0])
        await queue.enqueue(_job())
        claimed = await queue.claim_next("w1", 30)
        now[0] = NOW + timedelta(seconds=20)
        updated = await queue.update_progress(claimed.id, claimed.progress.model_copy(update={"processed": 5}), lease_seconds=30)

        assert updated.progress.processed == 5
        assert updated.lease_expires_at == now[0] + timedelta(seconds=30)

    asyncio.run(scenario())


def test_recent_outcomes_count_failures_and_retries() -> None:
    now = [NOW]

    async def scenario() -> None:
        queue = InMemoryJobQueue(clock=lambda: now[0])
        error = CrawlError(code="TransientNetworkError", message="down", retryable=True)
        await queue.enqueue(_job("a", max_retries=1))
        await queue.claim_next("w1", 60)
        await queue.fail("a", error)
        now[0] = NOW + timedelta(seconds=10)
        await queue.claim_next("w1", 60)
        await queue.fail("a", error)

        outcomes = await queue.recent_outcomes(NOW - timedelta(hours=1))
        assert outcomes.failed == 1
        assert outcomes.error_count == 2

    asyncio.run(scenario())


def test_unknown_job_raises() -> None:
    async def scenario() -> None:
        with pytest.raises(JobNotFoundError):
            await InMemoryJobQueue().get("nope")

    asyncio.run(scenario())
