from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from placeblocks.jobs.freshness import refresh_recommendation
from placeblocks.schemas.places import NormalizedContent, NormalizedPlace
from placeblocks.services.cache import BlockCache
from placeblocks.services.optimizer import BlockOptimizer
from placeblocks.services.quality import place_dedupe_hash
from placeblocks.services.repository import ContentBlockRepository, PlaceBlockRepository
from placeblocks.services.store import InMemoryBlockStore

START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.closed = False

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.values[key] = value
        if ex is not None:
            self.expiry[key] = ex

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.values.pop(key, None) is not None)

    async def aclose(self) -> None:
        self.closed = True


def _place(name: str, **overrides: object) -> NormalizedPlace:
    payload: dict[str, object] = {"id": f"tour-{name}", "source": "TOUR_API", "name": name, "address": f"서울특별시 {name}"}
    payload.update(overrides)
    return NormalizedPlace.model_validate(payload)


def _setup(clock=None):
    store = InMemoryBlockStore(clock=clock)
    places = PlaceBlockRepository(store, clock=clock)
    contents = ContentBlockRepository(store, clock=clock)
    cache = BlockCache(FakeRedis(), ttl_seconds=60, key_prefix="test")
    return store, places, contents, cache, BlockOptimizer(places, contents, store, cache, clock=clock)


def test_optimize_by_quality_archives_and_invalidates_cache() -> None:
    async def scenario() -> None:
        store, places, _, cache, optimizer = _setup()
        weak = await places.create(_place("Weak", address=""))
        strong = await places.create(_place("Strong", latitude=37.5, longitude=127.0))
        await cache.set_place(weak)

        result = await optimizer.optimize_by_quality(["F"])

        assert result.archived == 1
        assert store.places[weak.id].status == "archived"
        assert store.places[strong.id].status == "active"
        assert await cache.get_place(weak.id) is None

    asyncio.run(scenario())


def test_refresh_candidates_follow_freshness() -> None:
    now = [START]

    def clock() -> datetime:
        return now[0]

    async def scenario() -> None:
        _, places, _, _, optimizer = _setup(clock)
        old = await places.create(_place("Old"))
        now[0] = START + timedelta(days=60)
        await places.create(_place("New"))

        result = await optimizer.optimize_by_quality(refresh_stale=True)
        assert result.archived == 0
        assert result.refresh_ids == [old.id]
        assert result.scheduled_refresh == 1

    asyncio.run(scenario())


def test_refresh_recommendation_reasons() -> None:
    class Block:
        id = "b1"
        status = "archived"
        last_crawled_at = "2025-01-01T00:00:00Z"

    recommendation = refresh_recommendation(Block(), now=START)
    assert recommendation["needs_refresh"] is False
    assert recommendation["reason"] == "block_not_active"
    assert recommendation["freshness"] == "outdated"

    Block.status = "active"
    assert refresh_recommendation(Block(), now=START)["reason"] == "outdated_threshold_exceeded"
    Block.last_crawled_at = "garbage"
    assert refresh_recommendation(Block(), now=START)["reason"] == "missing_or_invalid_last_crawled_at"


def test_dedup_keeps_most_complete_block_and_rewrites_stale_hash() -> None:
    async def scenario() -> None:
        store, places, _, _, optimizer = _setup()
        original = await places.create(_place("Museum"))
        richer = original.model_copy(
            update={"id": "legacy-rich", "dedupe_hash": "f" * 64, "completeness": 90, "created_at": START}
        )
        store.places[richer.id] = richer

        result = await optimizer.deduplicate_blocks()

        assert (result.merged, result.deleted) == (1, 1)
        assert store.places[original.id].status == "deleted"
        keeper = store.places["legacy-rich"]
        assert keeper.status == "active"
        assert keeper.dedupe_hash == place_dedupe_hash(keeper.data)

    asyncio.run(scenario())


def test_dedup_collapses_contents_by_url() -> None:
    async def scenario() -> None:
        store, _, contents, _, optimizer = _setup()
        first = await contents.create(
            NormalizedContent.model_validate(
                {"id": "n1", "source": "NAVER_BLOG", "type": "blog_post", "title": "후기", "source_url": "https://b/1"}
            )
        )
        copy = first.model_copy(update={"id": "n1-copy", "dedupe_hash": "legacy"})
        store.contents[copy.id] = copy

        result = await optimizer.deduplicate_blocks()

        assert result.deleted == 1
        assert store.contents["n1-copy"].status == "deleted"
        assert store.contents[first.id].status == "active"

    asyncio.run(scenario())


def test_warm_cache_and_indexes() -> None:
    async def scenario() -> None:
        store, places, _, cache, optimizer = _setup()
        for index in range(3):
            await places.create(_place(f"Place {index}"))

        warmed = await optimizer.warm_cache(top_places=2, recent_contents=5)
        assert warmed.cached_places == 2
        assert warmed.cached_contents == 0
        assert all(ttl == 60 for ttl in cache.client.expiry.values())
        assert all(key.startswith("test:place:") for key in cache.client.values)

        indexes = await optimizer.optimize_indexes()
        assert indexes.analyzed_tables == []
        assert store.analyze_calls == 1

        await cache.close()
        assert cache.client.closed

    asyncio.run(scenario())


def test_warm_cache_without_cache_is_a_no_op() -> None:
    async def scenario() -> None:
        store = InMemoryBlockStore()
        optimizer = BlockOptimizer(PlaceBlockRepository(store), ContentBlockRepository(store), store)
        result = await optimizer.warm_cache()
        assert (result.cached_places, result.cached_contents) == (0, 0)

    asyncio.run(scenario())
