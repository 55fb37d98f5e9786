from __future__ import annotations

from datetime import datetime, timezone

from placeblocks.schemas.jobs import CrawlJob


def lease_expired(job: CrawlJob, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    lease = job.lease_expires_at
    if lease is None:
        return False
    if lease.tzinfo is None:
        lease = lease.replace(tzinfo=timezone.utc)
    return lease <= now


def should_requeue(job: CrawlJob, now: datetime | None = None) -> bool:
    return job.status == "running" and lease_expired(job, now=now)
