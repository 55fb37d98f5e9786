from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from placeblocks.core.errors import JobNotFoundError, StoreUnavailableError
from placeblocks.jobs.queue import apply_failure
from placeblocks.jobs.state import ensure_retryable, ensure_transition
from placeblocks.schemas.jobs import (
    CRAWL_JOB_STATUSES,
    CrawlError,
    CrawlJob,
    CrawlProgress,
    CrawlResult,
    JobOutcomes,
    QueueStats,
)

JOB_SCHEMA_SQL = """
create table if not exists crawl_jobs (
  id text primary key,
  type text not null,
  status text not null default 'pending',
  priority integer not null default 5 check (priority between 1 and 10),
  config jsonb not null,
  progress jsonb not null default '{}',
  result jsonb,
  error jsonb,
  created_at timestamptz not null default now(),
  started_at timestamptz,
  completed_at timestamptz,
  scheduled_at timestamptz,
  next_run_at timestamptz not null default now(),
  lease_expires_at timestamptz,
  worker_id text,
  retry_count integer not null default 0,
  max_retries integer not null default 3
);

create index if not exists crawl_jobs_claim_idx
  on crawl_jobs (priority desc, created_at asc) where status = 'pending';
create index if not exists crawl_jobs_lease_idx
  on crawl_jobs (lease_expires_at) where status = 'running';
create index if not exists crawl_jobs_completed_idx on crawl_jobs (completed_at desc);
"""

JOB_COLUMNS = """
  id,
  type,
  status,
  priority,
  config,
  progress,
  result,
  error,
  created_at,
  started_at,
  completed_at,
  scheduled_at,
  next_run_at,
  lease_expires_at,
  worker_id,
  retry_count,
  max_retries
"""


class PostgresJobQueue:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(JOB_SCHEMA_SQL)

    async def enqueue(self, job: CrawlJob) -> CrawlJob:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"""
                insert into crawl_jobs ({JOB_COLUMNS})
                values ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7::jsonb, $8::jsonb,
                        $9, $10, $11, $12, $13, $14, $15, $16, $17)
                """,
                *self._job_params(job),
            )
        return job

    async def get(self, job_id: str) -> CrawlJob:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {JOB_COLUMNS} from crawl_jobs where id = $1", job_id)
        if row is None:
            raise JobNotFoundError(f"job {job_id} not found")
        return self._job_from_row(row)

    async def claim_next(self, worker_id: str, lease_seconds: int) -> CrawlJob | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    with next_job as (
                      select id
                      from crawl_jobs
                      where status = 'pending' and next_run_at <= now()
                      order by priority desc, created_at asc
                      limit 1
                      for update skip locked
                    )
                    update crawl_jobs j
                    set
                      status = 'running',
                      started_at = now(),
                      worker_id = $1,
                      lease_expires_at = now() + ($2::int * interval '1 second')
                    from next_job n
                    where j.id = n.id
                    returning {", ".join(f"j.{column.strip()}" for column in JOB_COLUMNS.split(","))}
                    """,
                    worker_id,
                    lease_seconds,
                )
        return self._job_from_row(row) if row is not None else None

    async def update_progress(
        self,
        job_id: str,
        progress: CrawlProgress,
        *,
        lease_seconds: int | None = None,
    ) -> CrawlJob:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update crawl_jobs
            set
              progress = $2::jsonb,
              lease_expires_at = case
                when status = 'running' and $3::int is not null then now() + ($3::int * interval '1 second')
                else lease_expires_at
              end
            where id = $1
            returning {JOB_COLUMNS}
            """,
            job_id,
            json.dumps(progress.model_dump(mode="json")),
            lease_seconds,
        )
        if row is None:
            raise JobNotFoundError(f"job {job_id} not found")
        return self._job_from_row(row)

    async def transition(self, job_id: str, target: str) -> CrawlJob:
        def apply(job: CrawlJob, now: datetime) -> CrawlJob:
            ensure_transition(job.id, job.status, target)
            update: dict[str, Any] = {"status": target}
            if target == "pending":
                update.update({"next_run_at": now, "worker_id": None, "lease_expires_at": None})
            elif target in {"cancelled", "completed", "failed"}:
                update.update({"completed_at": now, "lease_expires_at": None})
            elif target == "paused":
                update.update({"lease_expires_at": None})
            return job.model_copy(update=update)

        return await self._mutate(job_id, apply)

    async def complete(self, job_id: str, result: CrawlResult, progress: CrawlProgress | None = None) -> CrawlJob:
        def apply(job: CrawlJob, now: datetime) -> CrawlJob:
            ensure_transition(job.id, job.status, "completed")
            return job.model_copy(
                update={
                    "status": "completed",
                    "result": result,
                    "progress": progress or job.progress,
                    "completed_at": now,
                    "lease_expires_at": None,
                }
            )

        return await self._mutate(job_id, apply)

    async def fail(self, job_id: str, error: CrawlError, progress: CrawlProgress | None = None) -> CrawlJob:
        def apply(job: CrawlJob, now: datetime) -> CrawlJob:
            if progress is not None:
                job = job.model_copy(update={"progress": progress})
            return apply_failure(job, error, now)

        return await self._mutate(job_id, apply)

    async def retry(self, job_id: str) -> CrawlJob:
        def apply(job: CrawlJob, now: datetime) -> CrawlJob:
            ensure_retryable(job)
            return job.model_copy(
                update={
                    "status": "pending",
                    "next_run_at": now,
                    "completed_at": None,
                    "worker_id": None,
                    "lease_expires_at": None,
                }
            )

        return await self._mutate(job_id, apply)

    async def requeue_expired(self, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from crawl_jobs
                      where status = 'running'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update crawl_jobs j
                    set
                      status = 'pending',
                      worker_id = null,
                      lease_expires_at = null,
                      next_run_at = now()
                    from expired e
                    where j.id = e.id
                    returning j.id
                    """,
                    bounded_limit,
                )
        return len(rows)

    async def prune_finished(self, keep_completed: int, keep_failed: int) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                with ranked as (
                  select
                    id,
                    status,
                    row_number() over (
                      partition by status
                      order by coalesce(completed_at, created_at) desc
                    ) as position
                  from crawl_jobs
                  where status in ('completed', 'failed')
                )
                delete from crawl_jobs j
                using ranked r
                where j.id = r.id
                  and (
                    (r.status = 'completed' and r.position > $1)
                    or (r.status = 'failed' and r.position > $2)
                  )
                returning j.id
                """,
                max(0, keep_completed),
                max(0, keep_failed),
            )
        return len(rows)

    async def stats(self) -> QueueStats:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("select status, count(*) as n from crawl_jobs group by status")
            due = await conn.fetchval(
                "select count(*) from crawl_jobs where status = 'pending' and next_run_at <= now()"
            )
        counts = {status: 0 for status in CRAWL_JOB_STATUSES}
        for row in rows:
            if row["status"] in counts:
                counts[row["status"]] = int(row["n"])
        return QueueStats(**counts, due=int(due or 0))

    async def recent_outcomes(self, since: datetime) -> JobOutcomes:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) filter (where status = 'completed') as completed,
              count(*) filter (where status = 'failed') as failed,
              coalesce(sum(retry_count), 0) as retries,
              max(completed_at) filter (where status = 'completed') as last_completed_at
            from crawl_jobs
            where completed_at >= $1 and status in ('completed', 'failed')
            """,
            since,
        )
        failed = int(row["failed"] or 0)
        return JobOutcomes(
            completed=int(row["completed"] or 0),
            failed=failed,
            error_count=failed + int(row["retries"] or 0),
            last_completed_at=row["last_completed_at"],
        )

    async def _mutate(self, job_id: str, apply: Callable[[CrawlJob, datetime], CrawlJob]) -> CrawlJob:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"select {JOB_COLUMNS}, now() as observed_at from crawl_jobs where id = $1 for update",
                    job_id,
                )
                if row is None:
                    raise JobNotFoundError(f"job {job_id} not found")
                job = apply(self._job_from_row(row), row["observed_at"])
                await conn.execute(
                    """
                    update crawl_jobs
                    set
                      type = $2,
                      status = $3,
                      priority = $4,
                      config = $5::jsonb,
                      progress = $6::jsonb,
                      result = $7::jsonb,
                      error = $8::jsonb,
                      created_at = $9,
                      started_at = $10,
                      completed_at = $11,
                      scheduled_at = $12,
                      next_run_at = $13,
                      lease_expires_at = $14,
                      worker_id = $15,
                      retry_count = $16,
                      max_retries = $17
                    where id = $1
                    """,
                    *self._job_params(job),
                )
                return job

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("PB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _dump(value: Any) -> str | None:
        if value is None:
            return None
        return json.dumps(value.model_dump(mode="json"))

    @classmethod
    def _job_params(cls, job: CrawlJob) -> list[Any]:
        return [
            job.id,
            job.type,
            job.status,
            job.priority,
            cls._dump(job.config),
            cls._dump(job.progress),
            cls._dump(job.result),
            cls._dump(job.error),
            job.created_at,
            job.started_at,
            job.completed_at,
            job.scheduled_at,
            job.next_run_at,
            job.lease_expires_at,
            job.worker_id,
            job.retry_count,
            job.max_retries,
        ]

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any] | None:
        if value is None:
            return None
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return None
        if isinstance(value, dict):
            return value
        return None

    @classmethod
    def _job_from_row(cls, row: asyncpg.Record) -> CrawlJob:
        return CrawlJob.model_validate(
            {
                "id": row["id"],
                "type": row["type"],
                "status": row["status"],
                "priority": row["priority"],
                "config": cls._coerce_json_dict(row["config"]) or {},
                "progress": cls._coerce_json_dict(row["progress"]) or {},
                "result": cls._coerce_json_dict(row["result"]),
                "error": cls._coerce_json_dict(row["error"]),
                "created_at": row["created_at"],
                "started_at": row["started_at"],
                "completed_at": row["completed_at"],
                "scheduled_at": row["scheduled_at"],
                "next_run_at": row["next_run_at"],
                "lease_expires_at": row["lease_expires_at"],
                "worker_id": row["worker_id"],
                "retry_count": row["retry_count"],
                "max_retries": row["max_retries"],
            }
        )
