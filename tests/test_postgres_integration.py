from __future__ import annotations

import asyncio
import os

import asyncpg  # type: ignore[import-untyped]
import pytest

from placeblocks.core.errors import ConcurrentUpdateError, DuplicateKeyError, JobNotFoundError
from placeblocks.jobs.pg_queue import PostgresJobQueue
from placeblocks.jobs.scheduler import CrawlScheduler
from placeblocks.schemas.blocks import PlaceBlockFilter
from placeblocks.schemas.jobs import CrawlResult
from placeblocks.schemas.places import NormalizedPlace
from placeblocks.services.postgres import PostgresBlockStore
from placeblocks.services.repository import PlaceBlockRepository


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("PB_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require PB_DATABASE_URL")
    return url


async def _truncate(database_url: str, *tables: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(f"truncate table {', '.join(tables)}")
    finally:
        await conn.close()


def _place(name: str, **overrides: object) -> NormalizedPlace:
    payload: dict[str, object] = {
        "id": f"tour-{name}",
        "source": "TOUR_API",
        "name": name,
        "address": "서울특별시 마포구 월드컵로 1",
        "category": "kids_cafe",
        "latitude": 37.55,
        "longitude": 126.91,
    }
    payload.update(overrides)
    return NormalizedPlace.model_validate(payload)


def test_place_blocks_round_trip_and_dedup(database_url: str) -> None:
    async def scenario() -> None:
        store = PostgresBlockStore(database_url, 1, 2)
        try:
            await store.ensure_schema()
            await _truncate(database_url, "place_blocks", "content_blocks")
            repo = PlaceBlockRepository(store)

            created = await repo.create(_place("Jump Land"))
            loaded = await repo.find_by_id(created.id)
            assert loaded is not None
            assert loaded.data == created.data
            assert loaded.region_code == "1"

            with pytest.raises(DuplicateKeyError) as excinfo:
                await repo.create(_place("jump   land"))
            assert excinfo.value.existing_id == created.id

            updated = await repo.update(created.id, {"description": "실내 놀이터"})
            assert updated.version == created.version + 1
            with pytest.raises(ConcurrentUpdateError):
                await store.replace_place(updated, expected_version=created.version)

            page = await repo.search(PlaceBlockFilter(categories=["kids_cafe"], keyword="jump"))
            assert [block.id for block in page.items] == [created.id]

            stats = await store.aggregate_stats()
            assert stats.total_places == 1
            assert stats.places_by_category == {"kids_cafe": 1}
        finally:
            await store.close()

    asyncio.run(scenario())


def test_job_queue_claims_by_priority(database_url: str) -> None:
    async def scenario() -> None:
        queue = PostgresJobQueue(database_url, 1, 2)
        try:
            await queue.ensure_schema()
            await _truncate(database_url, "crawl_jobs")
            scheduler = CrawlScheduler(queue)

            high = await scheduler.schedule_content_refresh(["키즈카페"])
            low = await scheduler.schedule("QUALITY_CHECK")

            claimed = await queue.claim_next("worker-a", 60)
            assert claimed is not None and claimed.id == high
            assert claimed.status == "running"
            assert claimed.worker_id == "worker-a"

            cancelled = await scheduler.cancel(low)
            assert cancelled.status == "cancelled"
            assert await queue.claim_next("worker-b", 60) is None

            stats = await queue.stats()
            assert (stats.running, stats.cancelled) == (1, 1)
        finally:
            await queue.close()

    asyncio.run(scenario())


def test_job_queue_prunes_old_finished_jobs(database_url: str) -> None:
    async def scenario() -> None:
        queue = PostgresJobQueue(database_url, 1, 2)
        try:
            await queue.ensure_schema()
            await _truncate(database_url, "crawl_jobs")
            scheduler = CrawlScheduler(queue)

            finished: list[str] = []
            for _ in range(3):
                job_id = await scheduler.schedule("QUALITY_CHECK")
                await queue.claim_next("worker-a", 60)
                await queue.complete(job_id, CrawlResult())
                finished.append(job_id)
            waiting = await scheduler.schedule("QUALITY_CHECK")

            assert await queue.prune_finished(1, 1) == 2
            assert (await queue.get(finished[-1])).status == "completed"
            assert (await queue.get(waiting)).status == "pending"
            with pytest.raises(JobNotFoundError):
                await queue.get(finished[0])
        finally:
            await queue.close()

    asyncio.run(scenario())
