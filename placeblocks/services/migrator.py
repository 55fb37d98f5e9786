"""Bulk copy of blocks to an alternate storage backend.

A run is two-phase: an optional rollback checkpoint is registered on the
target before anything is written, then active blocks are paged out of the
repository and written in batches. Every write is tagged with the run id so
that ``rollback`` can remove exactly what the run wrote, however far it got.
Failures never raise past ``migrate_*``; they are returned on the result.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
import httpx
from opentelemetry import trace

from placeblocks.core.errors import (
    ConfigurationError,
    MigrationError,
    MigrationValidationMismatch,
    StoreUnavailableError,
)
from placeblocks.schemas.blocks import ContentBlockFilter, PlaceBlockFilter
from placeblocks.services.repository import ContentBlockRepository, PlaceBlockRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MIGRATION_TARGETS = ("object_storage", "postgres")


@dataclass(slots=True)
class MigrationConfig:
    target: str = "object_storage"
    batch_size: int = 500
    validate_after_migration: bool = True
    create_rollback_point: bool = True
    dry_run: bool = True

    def validate(self) -> None:
        if self.target not in MIGRATION_TARGETS:
            raise ConfigurationError(f"unknown migration target {self.target!r}")
        if self.batch_size < 1:
            raise ConfigurationError("migration batch_size must be at least 1")


@dataclass(slots=True)
class MigrationResult:
    kind: str
    migrated: int = 0
    failed: int = 0
    validated: bool = False
    mismatch: dict[str, Any] | None = None
    rollback_point_id: str | None = None
    run_id: str | None = None
    dry_run: bool = False
    duration_ms: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "migrated": self.migrated,
            "failed": self.failed,
            "validated": self.validated,
            "mismatch": self.mismatch,
            "rollback_point_id": self.rollback_point_id,
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass(slots=True)
class RollbackResult:
    checkpoint_id: str
    removed: int = 0
    error: str | None = None


class MigrationTarget(Protocol):
    async def create_checkpoint(self, kind: str) -> str: ...

    async def write_batch(
        self,
        kind: str,
        blocks: Sequence[dict[str, Any]],
        checkpoint_id: str,
        batch_index: int,
    ) -> int: ...

    async def count(self, kind: str, checkpoint_id: str) -> int: ...

    async def rollback(self, checkpoint_id: str) -> int: ...

    async def close(self) -> None: ...


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_checkpoint_id() -> str:
    return f"ckpt-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class InMemoryMigrationTarget:
    """Destination kept in process memory.

    ``accept_limit`` silently drops writes past the limit and ``fail_on_batch``
    raises on the given batch index; both only exist to exercise validation
    and failure handling.
    """

    def __init__(self, *, accept_limit: int | None = None, fail_on_batch: int | None = None) -> None:
        self.accept_limit = accept_limit
        self.fail_on_batch = fail_on_batch
        self.checkpoints: dict[str, dict[str, Any]] = {}
        self.rows: dict[str, dict[str, list[dict[str, Any]]]] = {}

    async def close(self) -> None:
        return None

    async def create_checkpoint(self, kind: str) -> str:
        checkpoint_id = _new_checkpoint_id()
        self.checkpoints[checkpoint_id] = {"kind": kind, "created_at": _utcnow_iso()}
        return checkpoint_id

    async def write_batch(
        self,
        kind: str,
        blocks: Sequence[dict[str, Any]],
        checkpoint_id: str,
        batch_index: int,
    ) -> int:
        if self.fail_on_batch is not None and batch_index == self.fail_on_batch:
            raise MigrationError(f"batch {batch_index} rejected by destination")
        stored = self.rows.setdefault(checkpoint_id, {}).setdefault(kind, [])
        for block in blocks:
            if self.accept_limit is not None and self._total() >= self.accept_limit:
                break
            stored.append(dict(block))
        return len(blocks)

    async def count(self, kind: str, checkpoint_id: str) -> int:
        return len(self.rows.get(checkpoint_id, {}).get(kind, []))

    async def rollback(self, checkpoint_id: str) -> int:
        removed = sum(len(rows) for rows in self.rows.pop(checkpoint_id, {}).values())
        self.checkpoints.pop(checkpoint_id, None)
        return removed

    def _total(self) -> int:
        return sum(len(rows) for by_kind in self.rows.values() for rows in by_kind.values())


class ObjectStorageTarget:
    """Batched JSON blobs in an S3-style bucket, addressed path-style over HTTP.

    Object stores cannot list cheaply, so each run keeps a manifest object that
    names every batch it wrote. Counting and rollback walk the manifest.
    """

    def __init__(
        self,
        endpoint: str | None,
        bucket: str,
        *,
        token: str | None = None,
        prefix: str = "placeblocks",
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not endpoint:
            raise ConfigurationError("PB_OBJECT_STORAGE_ENDPOINT is required for object storage migrations")
        self.endpoint = endpoint.rstrip("/")
        self.bucket = bucket
        self.token = token
        self.prefix = prefix.strip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def batch_key(self, kind: str, checkpoint_id: str, batch_index: int) -> str:
        return f"{self.prefix}/{kind}/{checkpoint_id}/batch_{batch_index}.json"

    def manifest_key(self, checkpoint_id: str) -> str:
        return f"{self.prefix}/manifests/{checkpoint_id}.json"

    async def create_checkpoint(self, kind: str) -> str:
        checkpoint_id = _new_checkpoint_id()
        await self._put_json(
            self.manifest_key(checkpoint_id),
            {"id": checkpoint_id, "kind": kind, "created_at": _utcnow_iso(), "batches": []},
        )
        return checkpoint_id

    async def write_batch(
        self,
        kind: str,
        blocks: Sequence[dict[str, Any]],
        checkpoint_id: str,
        batch_index: int,
    ) -> int:
        key = self.batch_key(kind, checkpoint_id, batch_index)
        manifest = await self._get_json(self.manifest_key(checkpoint_id)) or {
            "id": checkpoint_id,
            "kind": kind,
            "created_at": _utcnow_iso(),
            "batches": [],
        }
        # the manifest names a batch before it exists, so rollback can always find it
        manifest["batches"].append({"key": key, "kind": kind, "count": len(blocks)})
        await self._put_json(self.manifest_key(checkpoint_id), manifest)
        await self._put_json(key, {"kind": kind, "batch_index": batch_index, "records": list(blocks)})
        return len(blocks)

    async def count(self, kind: str, checkpoint_id: str) -> int:
        manifest = await self._get_json(self.manifest_key(checkpoint_id))
        if manifest is None:
            return 0
        total = 0
        for batch in manifest.get("batches", []):
            if batch.get("kind") != kind:
                continue
            blob = await self._get_json(batch["key"])
            if blob is not None:
                total += len(blob.get("records", []))
        return total

    async def rollback(self, checkpoint_id: str) -> int:
        manifest = await self._get_json(self.manifest_key(checkpoint_id))
        if manifest is None:
            raise MigrationError(f"unknown checkpoint {checkpoint_id}")
        removed = 0
        for batch in manifest.get("batches", []):
            if await self._delete(batch["key"]):
                removed += int(batch.get("count", 0))
        await self._delete(self.manifest_key(checkpoint_id))
        return removed

    def _url(self, key: str) -> str:
        return f"{self.endpoint}/{self.bucket}/{key}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._client

    async def _put_json(self, key: str, payload: dict[str, Any]) -> None:
        response = await self._get_client().put(
            self._url(key),
            content=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers=self._headers(),
        )
        if response.status_code >= 300:
            raise MigrationError(f"PUT {key} failed with status {response.status_code}")

    async def _get_json(self, key: str) -> dict[str, Any] | None:
        response = await self._get_client().get(self._url(key), headers=self._headers())
        if response.status_code == 404:
            return None
        if response.status_code >= 300:
            raise MigrationError(f"GET {key} failed with status {response.status_code}")
        payload = response.json()
        return payload if isinstance(payload, dict) else None

    async def _delete(self, key: str) -> bool:
        response = await self._get_client().delete(self._url(key), headers=self._headers())
        if response.status_code == 404:
            return False
        if response.status_code >= 300:
            raise MigrationError(f"DELETE {key} failed with status {response.status_code}")
        return True


MIGRATION_SCHEMA_SQL = """
create table if not exists migration_checkpoints (
  id text primary key,
  kind text not null,
  created_at timestamptz not null default now()
);

create table if not exists migrated_blocks (
  migration_checkpoint text not null,
  kind text not null,
  id text not null,
  payload jsonb not null,
  migrated_at timestamptz not null default now(),
  primary key (migration_checkpoint, kind, id)
);
"""


class PostgresMigrationTarget:
    def __init__(self, database_url: str | None, min_pool_size: int = 1, max_pool_size: int = 5) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        # the pool applies the schema when it is first opened
        await self._get_pool()

    async def create_checkpoint(self, kind: str) -> str:
        checkpoint_id = _new_checkpoint_id()
        pool = await self._get_pool()
        await pool.execute("insert into migration_checkpoints (id, kind) values ($1, $2)", checkpoint_id, kind)
        return checkpoint_id

    async def write_batch(
        self,
        kind: str,
        blocks: Sequence[dict[str, Any]],
        checkpoint_id: str,
        batch_index: int,
    ) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    insert into migrated_blocks (migration_checkpoint, kind, id, payload)
                    values ($1, $2, $3, $4::jsonb)
                    on conflict (migration_checkpoint, kind, id) do update set payload = excluded.payload
                    """,
                    [(checkpoint_id, kind, block["id"], json.dumps(block, ensure_ascii=False)) for block in blocks],
                )
        return len(blocks)

    async def count(self, kind: str, checkpoint_id: str) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval(
            "select count(*) from migrated_blocks where migration_checkpoint = $1 and kind = $2",
            checkpoint_id,
            kind,
        )
        return int(value or 0)

    async def rollback(self, checkpoint_id: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                removed = await conn.fetchval(
                    """
                    with removed as (
                      delete from migrated_blocks where migration_checkpoint = $1 returning 1
                    )
                    select count(*) from removed
                    """,
                    checkpoint_id,
                )
                await conn.execute("delete from migration_checkpoints where id = $1", checkpoint_id)
        return int(removed or 0)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("PB_MIGRATION_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=60,
            )
            async with self._pool.acquire() as conn:
                await conn.execute(MIGRATION_SCHEMA_SQL)
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("migration database unavailable") from exc


class BlockMigrator:
    def __init__(
        self,
        place_repo: PlaceBlockRepository,
        content_repo: ContentBlockRepository,
        target: MigrationTarget,
        config: MigrationConfig | None = None,
    ) -> None:
        self.place_repo = place_repo
        self.content_repo = content_repo
        self.target = target
        self.config = config or MigrationConfig()

    async def migrate_places(
        self,
        region_codes: list[str] | None = None,
        categories: list[str] | None = None,
    ) -> MigrationResult:
        block_filter = PlaceBlockFilter.model_validate(
            {"status": ["active"], "region_codes": region_codes or [], "categories": categories or []}
        )
        return await self._migrate("places", self._dump(self.place_repo.iter_blocks(block_filter)))

    async def migrate_contents(self, sources: list[str] | None = None) -> MigrationResult:
        block_filter = ContentBlockFilter.model_validate({"status": ["active"], "sources": sources or []})
        return await self._migrate("contents", self._dump(self.content_repo.iter_blocks(block_filter)))

    async def rollback(self, checkpoint_id: str) -> RollbackResult:
        result = RollbackResult(checkpoint_id=checkpoint_id)
        with tracer.start_as_current_span("migrator.rollback") as span:
            span.set_attribute("migration.checkpoint_id", checkpoint_id)
            try:
                result.removed = await self.target.rollback(checkpoint_id)
            except (MigrationError, StoreUnavailableError, httpx.HTTPError) as exc:
                result.error = str(exc)
                logger.error("migration rollback failed checkpoint=%s: %s", checkpoint_id, exc)
                return result
        logger.info("migration rolled back checkpoint=%s removed=%s", checkpoint_id, result.removed)
        return result

    async def _migrate(self, kind: str, records: AsyncIterator[dict[str, Any]]) -> MigrationResult:
        self.config.validate()
        started = time.monotonic()
        result = MigrationResult(kind=kind, dry_run=self.config.dry_run)

        with tracer.start_as_current_span("migrator.migrate") as span:
            span.set_attribute("migration.kind", kind)
            span.set_attribute("migration.dry_run", self.config.dry_run)
            try:
                if self.config.dry_run:
                    result.migrated = await self._count(records)
                else:
                    await self._transfer(kind, records, result)
            except (MigrationError, StoreUnavailableError, httpx.HTTPError, asyncpg.PostgresError) as exc:
                # prepare failed or the source read broke: nothing to validate
                result.error = str(exc) or exc.__class__.__name__
                logger.error("migration of %s aborted: %s", kind, result.error)

            if result.error is None and not self.config.dry_run and self.config.validate_after_migration:
                await self._validate(kind, result)

            span.set_attribute("migration.migrated", result.migrated)
            span.set_attribute("migration.validated", result.validated)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "migration of %s finished migrated=%s failed=%s validated=%s dry_run=%s checkpoint=%s",
            kind,
            result.migrated,
            result.failed,
            result.validated,
            result.dry_run,
            result.rollback_point_id,
        )
        return result

    async def _transfer(self, kind: str, records: AsyncIterator[dict[str, Any]], result: MigrationResult) -> None:
        if self.config.create_rollback_point:
            run_id = await self.target.create_checkpoint(kind)
            result.rollback_point_id = run_id
        else:
            run_id = f"run-{uuid4().hex}"
        result.run_id = run_id

        batch: list[dict[str, Any]] = []
        batch_index = 0
        async for record in records:
            batch.append(record)
            if len(batch) >= self.config.batch_size:
                if not await self._write(kind, batch, run_id, batch_index, result):
                    return
                batch = []
                batch_index += 1
        if batch:
            await self._write(kind, batch, run_id, batch_index, result)

    async def _write(
        self,
        kind: str,
        batch: list[dict[str, Any]],
        run_id: str,
        batch_index: int,
        result: MigrationResult,
    ) -> bool:
        try:
            await self.target.write_batch(kind, batch, run_id, batch_index)
        except (MigrationError, StoreUnavailableError, httpx.HTTPError, asyncpg.PostgresError, OSError) as exc:
            result.failed += len(batch)
            result.error = f"batch {batch_index} failed: {exc}"
            logger.error(
                "migration of %s stopped at batch=%s migrated=%s checkpoint=%s: %s",
                kind,
                batch_index,
                result.migrated,
                run_id,
                exc,
            )
            return False
        result.migrated += len(batch)
        return True

    async def _validate(self, kind: str, result: MigrationResult) -> None:
        if result.run_id is None:
            return
        try:
            actual = await self.target.count(kind, result.run_id)
        except (MigrationError, StoreUnavailableError, httpx.HTTPError, asyncpg.PostgresError) as exc:
            result.validated = False
            result.error = f"validation failed: {exc}"
            logger.error("migration validation of %s failed: %s", kind, exc)
            return
        if actual == result.migrated:
            result.validated = True
            return
        mismatch = MigrationValidationMismatch(kind, result.migrated, actual)
        result.validated = False
        result.mismatch = {"kind": kind, "expected": result.migrated, "actual": actual, "message": str(mismatch)}
        logger.error("migration validation mismatch run=%s: %s", result.run_id, mismatch)

    @staticmethod
    async def _count(records: AsyncIterator[dict[str, Any]]) -> int:
        total = 0
        async for _ in records:
            total += 1
        return total

    @staticmethod
    async def _dump(blocks: AsyncIterator[Any]) -> AsyncIterator[dict[str, Any]]:
        async for block in blocks:
            yield block.model_dump(mode="json")
