from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from placeblocks.core.errors import (
    BlockNotFoundError,
    ConcurrentUpdateError,
    DuplicateKeyError,
    StoreUnavailableError,
)
from placeblocks.schemas.blocks import (
    BlockStats,
    ContentAnalysis,
    ContentBlock,
    ContentBlockFilter,
    ContentBlockMetadata,
    PlaceBlock,
    PlaceBlockFilter,
    PlaceBlockMetadata,
)
from placeblocks.schemas.places import load_content_payload, load_place_payload
from placeblocks.services.quality import bounding_box

BLOCK_SCHEMA_SQL = """
create table if not exists place_blocks (
  id text primary key,
  data jsonb not null,
  status text not null default 'active',
  quality_grade text not null,
  completeness integer not null check (completeness between 0 and 100),
  dedupe_hash varchar(64) not null,
  related_content_ids text[] not null default '{}',
  search_keywords text[] not null default '{}',
  region_code text not null default '99',
  name text not null,
  category text not null,
  source text not null,
  source_id text not null,
  latitude double precision,
  longitude double precision,
  metadata jsonb not null,
  version integer not null default 1,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  last_crawled_at timestamptz not null default now(),
  crawl_count integer not null default 1
);

create unique index if not exists place_blocks_live_dedupe_hash
  on place_blocks (dedupe_hash) where status <> 'deleted';
create index if not exists place_blocks_status_idx on place_blocks (status);
create index if not exists place_blocks_category_idx on place_blocks (category);
create index if not exists place_blocks_region_idx on place_blocks (region_code);
create index if not exists place_blocks_quality_idx on place_blocks (quality_grade);
create index if not exists place_blocks_location_idx on place_blocks (latitude, longitude);
create index if not exists place_blocks_keywords_idx on place_blocks using gin (search_keywords);
create index if not exists place_blocks_updated_idx on place_blocks (updated_at desc);

create table if not exists content_blocks (
  id text primary key,
  data jsonb not null,
  status text not null default 'active',
  quality_grade text not null,
  completeness integer not null check (completeness between 0 and 100),
  related_place_id text,
  dedupe_hash varchar(64) not null,
  title text not null,
  source text not null,
  source_id text not null,
  content_type text not null,
  published_at text,
  view_count integer,
  like_count integer,
  analysis jsonb,
  metadata jsonb not null,
  version integer not null default 1,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  last_crawled_at timestamptz not null default now(),
  crawl_count integer not null default 1
);

create unique index if not exists content_blocks_live_dedupe_hash
  on content_blocks (dedupe_hash) where status <> 'deleted';
create index if not exists content_blocks_status_idx on content_blocks (status);
create index if not exists content_blocks_place_idx on content_blocks (related_place_id);
create index if not exists content_blocks_published_idx on content_blocks (published_at desc);
"""

FRESHNESS_SQL = """
case
  when last_crawled_at > now() - interval '7 days' then 'fresh'
  when last_crawled_at > now() - interval '30 days' then 'recent'
  when last_crawled_at > now() - interval '90 days' then 'stale'
  else 'outdated'
end
"""

PLACE_COLUMNS = f"""
  id,
  data,
  status,
  quality_grade,
  {FRESHNESS_SQL} as freshness,
  completeness,
  dedupe_hash,
  related_content_ids,
  search_keywords,
  region_code,
  metadata,
  created_at,
  updated_at,
  last_crawled_at,
  crawl_count
"""

CONTENT_COLUMNS = f"""
  id,
  data,
  status,
  quality_grade,
  {FRESHNESS_SQL} as freshness,
  completeness,
  related_place_id,
  dedupe_hash,
  analysis,
  metadata,
  created_at,
  updated_at,
  last_crawled_at,
  crawl_count
"""

PLACE_SORT_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "completeness": "completeness",
    "quality_grade": "quality_grade",
    "name": "name",
}
CONTENT_SORT_COLUMNS = {
    "created_at": "created_at",
    "published_at": "published_at",
    "view_count": "view_count",
    "like_count": "like_count",
}


class PostgresBlockStore:
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
            await conn.execute(BLOCK_SCHEMA_SQL)

    async def insert_place(self, block: PlaceBlock) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into place_blocks (
                  id, data, status, quality_grade, completeness, dedupe_hash,
                  related_content_ids, search_keywords, region_code,
                  name, category, source, source_id, latitude, longitude,
                  metadata, version, created_at, updated_at, last_crawled_at, crawl_count
                )
                values (
                  $1, $2::jsonb, $3, $4, $5, $6,
                  $7::text[], $8::text[], $9,
                  $10, $11, $12, $13, $14, $15,
                  $16::jsonb, $17, $18, $19, $20, $21
                )
                """,
                *self._place_params(block),
            )
        except pg_exc.UniqueViolationError as exc:
            raise DuplicateKeyError(block.dedupe_hash) from exc

    async def replace_place(self, block: PlaceBlock, *, expected_version: int) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                try:
                    row = await conn.fetchrow(
                        """
                        update place_blocks
                        set
                          data = $2::jsonb,
                          status = $3,
                          quality_grade = $4,
                          completeness = $5,
                          dedupe_hash = $6,
                          related_content_ids = $7::text[],
                          search_keywords = $8::text[],
                          region_code = $9,
                          name = $10,
                          category = $11,
                          source = $12,
                          source_id = $13,
                          latitude = $14,
                          longitude = $15,
                          metadata = $16::jsonb,
                          version = $17,
                          created_at = $18,
                          updated_at = $19,
                          last_crawled_at = $20,
                          crawl_count = $21
                        where id = $1 and version = $22
                        returning id
                        """,
                        *self._place_params(block),
                        expected_version,
                    )
                except pg_exc.UniqueViolationError as exc:
                    raise DuplicateKeyError(block.dedupe_hash) from exc
                if row is None:
                    await self._raise_replace_failure(conn, "place_blocks", block.id, expected_version)

    async def get_place(self, block_id: str) -> PlaceBlock | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {PLACE_COLUMNS} from place_blocks where id = $1", block_id)
        return self._place_from_row(row) if row is not None else None

    async def get_place_by_hash(self, dedupe_hash: str) -> PlaceBlock | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {PLACE_COLUMNS} from place_blocks where dedupe_hash = $1 and status <> 'deleted'",
            dedupe_hash,
        )
        return self._place_from_row(row) if row is not None else None

    async def query_places(self, block_filter: PlaceBlockFilter) -> tuple[list[PlaceBlock], int]:
        pool = await self._get_pool()
        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        conditions.append(f"status = any({bind(block_filter.effective_statuses())}::text[])")
        if block_filter.categories:
            conditions.append(f"category = any({bind(list(block_filter.categories))}::text[])")
        if block_filter.region_codes:
            conditions.append(f"region_code = any({bind(list(block_filter.region_codes))}::text[])")
        if block_filter.quality_grades:
            conditions.append(f"quality_grade = any({bind(list(block_filter.quality_grades))}::text[])")
        if block_filter.freshness:
            conditions.append(f"({FRESHNESS_SQL}) = any({bind(list(block_filter.freshness))}::text[])")
        if block_filter.sources:
            conditions.append(f"source = any({bind(list(block_filter.sources))}::text[])")
        keyword = block_filter.keyword.strip() if block_filter.keyword else None
        if keyword:
            like_token = bind(f"%{keyword}%")
            exact_token = bind(keyword)
            conditions.append(
                f"(name ilike {like_token} or exists ("
                f"select 1 from unnest(search_keywords) as place_keyword(kw) where lower(place_keyword.kw) = lower({exact_token})))"
            )
        if block_filter.location is not None:
            box = bounding_box(
                block_filter.location.latitude,
                block_filter.location.longitude,
                block_filter.location.radius_km,
            )
            conditions.append(f"latitude between {bind(box.min_latitude)} and {bind(box.max_latitude)}")
            conditions.append(f"longitude between {bind(box.min_longitude)} and {bind(box.max_longitude)}")
        if block_filter.completeness_range is not None:
            conditions.append(
                f"completeness between {bind(block_filter.completeness_range.min)} "
                f"and {bind(block_filter.completeness_range.max)}"
            )
        if block_filter.crawled_at_range is not None:
            conditions.append(
                f"last_crawled_at between {bind(block_filter.crawled_at_range.start)} "
                f"and {bind(block_filter.crawled_at_range.end)}"
            )

        where_sql = " and ".join(conditions)
        sort_expr = PLACE_SORT_COLUMNS[block_filter.sort_by]
        direction = "asc" if block_filter.sort_dir == "asc" else "desc"
        count_params = list(params)
        limit_token = bind(block_filter.page_size)
        offset_token = bind((block_filter.page - 1) * block_filter.page_size)

        async with pool.acquire() as conn:
            total = await conn.fetchval(f"select count(*) from place_blocks where {where_sql}", *count_params)
            rows = await conn.fetch(
                f"""
                select {PLACE_COLUMNS}
                from place_blocks
                where {where_sql}
                order by {sort_expr} {direction} nulls last, id asc
                limit {limit_token}
                offset {offset_token}
                """,
                *params,
            )
        return [self._place_from_row(row) for row in rows], int(total or 0)

    async def insert_content(self, block: ContentBlock) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into content_blocks (
                  id, data, status, quality_grade, completeness, related_place_id, dedupe_hash,
                  title, source, source_id, content_type, published_at, view_count, like_count,
                  analysis, metadata, version, created_at, updated_at, last_crawled_at, crawl_count
                )
                values (
                  $1, $2::jsonb, $3, $4, $5, $6, $7,
                  $8, $9, $10, $11, $12, $13, $14,
                  $15::jsonb, $16::jsonb, $17, $18, $19, $20, $21
                )
                """,
                *self._content_params(block),
            )
        except pg_exc.UniqueViolationError as exc:
            raise DuplicateKeyError(block.dedupe_hash) from exc

    async def replace_content(self, block: ContentBlock, *, expected_version: int) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                try:
                    row = await conn.fetchrow(
                        """
                        update content_blocks
                        set
                          data = $2::jsonb,
                          status = $3,
                          quality_grade = $4,
                          completeness = $5,
                          related_place_id = $6,
                          dedupe_hash = $7,
                          title = $8,
                          source = $9,
                          source_id = $10,
                          content_type = $11,
                          published_at = $12,
                          view_count = $13,
                          like_count = $14,
                          analysis = $15::jsonb,
                          metadata = $16::jsonb,
                          version = $17,
                          created_at = $18,
                          updated_at = $19,
                          last_crawled_at = $20,
                          crawl_count = $21
                        where id = $1 and version = $22
                        returning id
                        """,
                        *self._content_params(block),
                        expected_version,
                    )
                except pg_exc.UniqueViolationError as exc:
                    raise DuplicateKeyError(block.dedupe_hash) from exc
                if row is None:
                    await self._raise_replace_failure(conn, "content_blocks", block.id, expected_version)

    async def get_content(self, block_id: str) -> ContentBlock | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {CONTENT_COLUMNS} from content_blocks where id = $1", block_id)
        return self._content_from_row(row) if row is not None else None

    async def get_content_by_hash(self, dedupe_hash: str) -> ContentBlock | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {CONTENT_COLUMNS} from content_blocks where dedupe_hash = $1 and status <> 'deleted'",
            dedupe_hash,
        )
        return self._content_from_row(row) if row is not None else None

    async def query_contents(self, block_filter: ContentBlockFilter) -> tuple[list[ContentBlock], int]:
        pool = await self._get_pool()
        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        conditions.append(f"status = any({bind(block_filter.effective_statuses())}::text[])")
        if block_filter.sources:
            conditions.append(f"source = any({bind(list(block_filter.sources))}::text[])")
        if block_filter.related_place_id is not None:
            conditions.append(f"related_place_id = {bind(block_filter.related_place_id)}")
        if block_filter.quality_grades:
            conditions.append(f"quality_grade = any({bind(list(block_filter.quality_grades))}::text[])")
        if block_filter.freshness:
            conditions.append(f"({FRESHNESS_SQL}) = any({bind(list(block_filter.freshness))}::text[])")
        keyword = block_filter.keyword.strip() if block_filter.keyword else None
        if keyword:
            conditions.append(f"title ilike {bind(f'%{keyword}%')}")

        where_sql = " and ".join(conditions)
        sort_expr = CONTENT_SORT_COLUMNS[block_filter.sort_by]
        direction = "asc" if block_filter.sort_dir == "asc" else "desc"
        count_params = list(params)
        limit_token = bind(block_filter.page_size)
        offset_token = bind((block_filter.page - 1) * block_filter.page_size)

        async with pool.acquire() as conn:
            total = await conn.fetchval(f"select count(*) from content_blocks where {where_sql}", *count_params)
            rows = await conn.fetch(
                f"""
                select {CONTENT_COLUMNS}
                from content_blocks
                where {where_sql}
                order by {sort_expr} {direction} nulls last, id asc
                limit {limit_token}
                offset {offset_token}
                """,
                *params,
            )
        return [self._content_from_row(row) for row in rows], int(total or 0)

    async def aggregate_stats(self) -> BlockStats:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            places_by_status = await self._grouped(conn, "select status as key, count(*) as n from place_blocks group by status")
            contents_by_status = await self._grouped(
                conn, "select status as key, count(*) as n from content_blocks group by status"
            )
            places_by_category = await self._grouped(
                conn,
                "select category as key, count(*) as n from place_blocks where status = 'active' group by category",
            )
            places_by_region = await self._grouped(
                conn,
                "select region_code as key, count(*) as n from place_blocks where status = 'active' group by region_code",
            )
            contents_by_source = await self._grouped(
                conn,
                "select source as key, count(*) as n from content_blocks where status = 'active' group by source",
            )
            quality_distribution = await self._grouped(
                conn,
                "select quality_grade as key, count(*) as n from place_blocks where status = 'active' group by quality_grade",
            )
            freshness_distribution = await self._grouped(
                conn,
                f"select ({FRESHNESS_SQL}) as key, count(*) as n from place_blocks where status = 'active' group by 1",
            )
            summary = await conn.fetchrow(
                """
                select
                  coalesce(avg(completeness) filter (where status = 'active'), 0)::float as average_completeness,
                  greatest(
                    max(last_crawled_at),
                    (select max(last_crawled_at) from content_blocks)
                  ) as last_crawled_at,
                  now() as observed_at
                from place_blocks
                """
            )
        return BlockStats(
            total_places=places_by_status.get("active", 0),
            total_contents=contents_by_status.get("active", 0),
            places_by_status=places_by_status,
            contents_by_status=contents_by_status,
            places_by_category=places_by_category,
            places_by_region=places_by_region,
            contents_by_source=contents_by_source,
            quality_distribution=quality_distribution,
            freshness_distribution=freshness_distribution,
            average_completeness=round(float(summary["average_completeness"]), 2),
            last_crawled_at=summary["last_crawled_at"],
            last_updated=summary["observed_at"] or datetime.now(timezone.utc),
        )

    async def analyze(self) -> list[str]:
        pool = await self._get_pool()
        tables = ["place_blocks", "content_blocks"]
        async with pool.acquire() as conn:
            for table in tables:
                await conn.execute(f"analyze {table}")
        return tables

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
    async def _grouped(conn: asyncpg.Connection, sql: str) -> dict[str, int]:
        rows = await conn.fetch(sql)
        return {str(row["key"]): int(row["n"]) for row in rows if row["key"] is not None}

    @staticmethod
    async def _raise_replace_failure(conn: asyncpg.Connection, table: str, block_id: str, expected_version: int) -> None:
        current = await conn.fetchval(f"select version from {table} where id = $1", block_id)
        if current is None:
            raise BlockNotFoundError(f"block {block_id} not found")
        raise ConcurrentUpdateError(f"block {block_id} is at version {current}, expected {expected_version}")

    @staticmethod
    def _place_params(block: PlaceBlock) -> list[Any]:
        return [
            block.id,
            json.dumps(block.data.model_dump(mode="json")),
            block.status,
            block.quality_grade,
            block.completeness,
            block.dedupe_hash,
            list(block.related_content_ids),
            list(block.search_keywords),
            block.region_code,
            block.data.name,
            block.data.category,
            block.metadata.source,
            block.metadata.source_id,
            block.data.latitude,
            block.data.longitude,
            json.dumps(block.metadata.model_dump(mode="json")),
            block.metadata.version,
            block.created_at,
            block.updated_at,
            block.last_crawled_at,
            block.crawl_count,
        ]

    @staticmethod
    def _content_params(block: ContentBlock) -> list[Any]:
        return [
            block.id,
            json.dumps(block.data.model_dump(mode="json")),
            block.status,
            block.quality_grade,
            block.completeness,
            block.related_place_id,
            block.dedupe_hash,
            block.data.title,
            block.data.source,
            block.metadata.source_id,
            block.data.type,
            block.data.published_at,
            block.data.view_count,
            block.data.like_count,
            json.dumps(block.analysis.model_dump(mode="json")) if block.analysis is not None else None,
            json.dumps(block.metadata.model_dump(mode="json")),
            block.metadata.version,
            block.created_at,
            block.updated_at,
            block.last_crawled_at,
            block.crawl_count,
        ]

    @staticmethod
    def _json(value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value

    @classmethod
    def _place_from_row(cls, row: asyncpg.Record) -> PlaceBlock:
        return PlaceBlock(
            id=row["id"],
            data=load_place_payload(cls._json(row["data"])),
            status=row["status"],
            quality_grade=row["quality_grade"],
            freshness=row["freshness"],
            completeness=row["completeness"],
            dedupe_hash=row["dedupe_hash"],
            related_content_ids=list(row["related_content_ids"] or []),
            search_keywords=list(row["search_keywords"] or []),
            region_code=row["region_code"],
            metadata=PlaceBlockMetadata.model_validate(cls._json(row["metadata"])),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_crawled_at=row["last_crawled_at"],
            crawl_count=row["crawl_count"],
        )

    @classmethod
    def _content_from_row(cls, row: asyncpg.Record) -> ContentBlock:
        analysis = cls._json(row["analysis"])
        return ContentBlock(
            id=row["id"],
            data=load_content_payload(cls._json(row["data"])),
            status=row["status"],
            quality_grade=row["quality_grade"],
            freshness=row["freshness"],
            completeness=row["completeness"],
            related_place_id=row["related_place_id"],
            dedupe_hash=row["dedupe_hash"],
            analysis=ContentAnalysis.model_validate(analysis) if analysis else None,
            metadata=ContentBlockMetadata.model_validate(cls._json(row["metadata"])),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_crawled_at=row["last_crawled_at"],
            crawl_count=row["crawl_count"],
        )
