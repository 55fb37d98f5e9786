from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from placeblocks.core.errors import InvalidTransitionError, ValidationError
from placeblocks.jobs.queue import JobQueue
from placeblocks.schemas.jobs import (
    CRAWL_JOB_TYPES,
    DEFAULT_PRIORITY_BY_TYPE,
    CrawlJob,
    CrawlJobConfig,
    QueueStats,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CrawlScheduler:
    """Validates and enqueues crawl jobs and exposes the operator controls."""

    def __init__(self, queue: JobQueue, *, clock: Callable[[], datetime] | None = None) -> None:
        self.queue = queue
        self._clock = clock or _utcnow

    async def schedule(
        self,
        job_type: str,
        config: CrawlJobConfig | dict[str, Any] | None = None,
        *,
        priority: int | None = None,
        delay_seconds: float | None = None,
    ) -> str:
        resolved_config = self._validate(job_type, config, priority, delay_seconds)
        now = self._clock()
        run_at = now + timedelta(seconds=delay_seconds) if delay_seconds else now
        job = CrawlJob(
            id=str(uuid4()),
            type=job_type,
            status="pending",
            priority=priority if priority is not None else DEFAULT_PRIORITY_BY_TYPE[job_type],
            config=resolved_config,
            created_at=now,
            scheduled_at=run_at if delay_seconds else None,
            next_run_at=run_at,
            max_retries=resolved_config.retry.max_retries if resolved_config.retry_on_fail else 0,
        )
        await self.queue.enqueue(job)
        logger.info("crawl job scheduled id=%s type=%s priority=%s", job.id, job.type, job.priority)
        return job.id

    async def schedule_full_crawl(self, **config: Any) -> str:
        return await self.schedule("FULL_CRAWL", config)

    async def schedule_region_crawl(self, region_codes: list[str], **config: Any) -> str:
        return await self.schedule("REGION_CRAWL", {**config, "region_codes": region_codes})

    async def schedule_content_refresh(self, keywords: list[str], **config: Any) -> str:
        config.setdefault("sources", ["NAVER_BLOG"])
        return await self.schedule("CONTENT_REFRESH", {**config, "keywords": keywords})

    async def status(self, job_id: str) -> CrawlJob:
        return await self.queue.get(job_id)

    async def cancel(self, job_id: str) -> CrawlJob:
        job = await self.queue.transition(job_id, "cancelled")
        logger.info("crawl job cancelled id=%s", job_id)
        return job

    async def pause(self, job_id: str) -> CrawlJob:
        job = await self.queue.transition(job_id, "paused")
        logger.info("crawl job paused id=%s", job_id)
        return job

    async def resume(self, job_id: str) -> CrawlJob:
        current = await self.queue.get(job_id)
        if current.status != "paused":
            raise InvalidTransitionError(f"job {job_id}", current.status, "pending")
        job = await self.queue.transition(job_id, "pending")
        logger.info("crawl job resumed id=%s", job_id)
        return job

    async def retry(self, job_id: str) -> CrawlJob:
        job = await self.queue.retry(job_id)
        logger.info("crawl job manually retried id=%s retry_count=%s", job_id, job.retry_count)
        return job

    async def queue_stats(self) -> QueueStats:
        return await self.queue.stats()

    @staticmethod
    def _validate(
        job_type: str,
        config: CrawlJobConfig | dict[str, Any] | None,
        priority: int | None,
        delay_seconds: float | None,
    ) -> CrawlJobConfig:
        if job_type not in CRAWL_JOB_TYPES:
            raise ValidationError(
                f"unknown job type {job_type!r}",
                errors=[{"loc": ["type"], "msg": f"must be one of {', '.join(CRAWL_JOB_TYPES)}"}],
            )
        if priority is not None and not 1 <= priority <= 10:
            raise ValidationError("priority must be between 1 and 10", errors=[{"loc": ["priority"], "msg": "out of range"}])
        if delay_seconds is not None and delay_seconds < 0:
            raise ValidationError("delay_seconds must not be negative", errors=[{"loc": ["delay_seconds"], "msg": "negative"}])

        if isinstance(config, CrawlJobConfig):
            resolved = config
        else:
            try:
                resolved = CrawlJobConfig.model_validate(config or {})
            except PydanticValidationError as exc:
                raise ValidationError(
                    "invalid crawl job config",
                    errors=[{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()],
                ) from exc

        problems = resolved.problems_for(job_type)
        if problems:
            raise ValidationError(
                "; ".join(problems),
                errors=[{"loc": ["config"], "msg": problem} for problem in problems],
            )
        return resolved
