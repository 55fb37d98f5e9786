from __future__ import annotations

from placeblocks.core.errors import InvalidTransitionError
from placeblocks.schemas.jobs import CrawlJob, RetryPolicy

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"running", "cancelled"},
    # running -> pending is the lease-expiry requeue of a crashed worker's job
    "running": {"completed", "failed", "cancelled", "paused", "pending"},
    "paused": {"pending"},
    "failed": {"pending"},
    "completed": set(),
    "cancelled": set(),
}
TERMINAL_STATUSES = {"completed", "cancelled"}
ACTIVE_STATUSES = {"pending", "running", "paused"}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def ensure_transition(job_id: str, current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"job {job_id}", current, target)


def ensure_retryable(job: CrawlJob) -> None:
    """Manual retry applies to failed jobs only; running -> pending belongs to the lease reaper."""
    if job.status != "failed" or job.retry_count >= job.max_retries:
        raise InvalidTransitionError(f"job {job.id}", job.status, "pending")


def compute_retry_delay_seconds(retry_count: int, policy: RetryPolicy) -> float:
    if policy.base_delay_seconds <= 0:
        return 0.0
    multiplier = max(0, retry_count - 1)
    delay = policy.base_delay_seconds * (2**multiplier)
    return min(delay, policy.max_delay_seconds)
