from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from placeblocks.jobs.freshness import refresh_candidates
from placeblocks.schemas.blocks import ContentBlock, ContentBlockFilter, PlaceBlock, PlaceBlockFilter
from placeblocks.services.cache import BlockCache
from placeblocks.services.quality import content_dedupe_hash, place_dedupe_hash
from placeblocks.services.repository import ContentBlockRepository, PlaceBlockRepository
from placeblocks.services.store import BlockStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class OptimizeResult:
    archived: int = 0
    scheduled_refresh: int = 0
    refresh_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DedupResult:
    merged: int = 0
    deleted: int = 0


@dataclass(slots=True)
class IndexOptimizeResult:
    analyzed_tables: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CacheWarmResult:
    cached_places: int = 0
    cached_contents: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _keeper_order(block: PlaceBlock | ContentBlock) -> tuple[int, datetime, str]:
    # most complete first, then the oldest block, then id for a stable pick
    return (-block.completeness, block.created_at, block.id)


def _group_by(blocks: Sequence[Any], key: Callable[[Any], str]) -> list[list[Any]]:
    groups: dict[str, list[Any]] = {}
    for block in blocks:
        groups.setdefault(key(block), []).append(block)
    return [sorted(group, key=_keeper_order) for group in groups.values() if len(group) > 1]


class BlockOptimizer:
    def __init__(
        self,
        place_repo: PlaceBlockRepository,
        content_repo: ContentBlockRepository,
        store: BlockStore,
        cache: BlockCache | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.place_repo = place_repo
        self.content_repo = content_repo
        self.store = store
        self.cache = cache
        self._clock = clock or _utcnow

    async def optimize_by_quality(
        self,
        archive_grades: Sequence[str] = (),
        *,
        refresh_stale: bool = False,
    ) -> OptimizeResult:
        """Archive active places whose grade is listed and count the ones due for a re-crawl."""
        result = OptimizeResult()
        with tracer.start_as_current_span("optimizer.optimize_by_quality") as span:
            if archive_grades:
                # collect first, archiving while paging would shift page boundaries
                targets = [
                    block.id
                    async for block in self.place_repo.iter_blocks(
                        PlaceBlockFilter(status=["active"], quality_grades=list(archive_grades))
                    )
                ]
                for block_id in targets:
                    await self.place_repo.update_status(block_id, "archived")
                    result.archived += 1
                if targets and self.cache is not None:
                    await self.cache.invalidate(*targets)

            if refresh_stale:
                active = [block async for block in self.place_repo.iter_blocks(PlaceBlockFilter(status=["active"]))]
                result.refresh_ids = refresh_candidates(active, now=self._clock())
                result.scheduled_refresh = len(result.refresh_ids)

            span.set_attribute("optimizer.archived", result.archived)
            span.set_attribute("optimizer.scheduled_refresh", result.scheduled_refresh)
        logger.info(
            "quality optimization archived=%s scheduled_refresh=%s grades=%s",
            result.archived,
            result.scheduled_refresh,
            ",".join(archive_grades),
        )
        return result

    async def deduplicate_blocks(self) -> DedupResult:
        """Collapse active blocks that share an identity under the current hash rules."""
        result = DedupResult()
        deleted_ids: list[str] = []
        with tracer.start_as_current_span("optimizer.deduplicate_blocks"):
            places = [block async for block in self.place_repo.iter_blocks(PlaceBlockFilter(status=["active"]))]
            for group in _group_by(places, lambda block: place_dedupe_hash(block.data)):
                keeper, duplicates = group[0], group[1:]
                for duplicate in duplicates:
                    await self.place_repo.update_status(duplicate.id, "deleted")
                    deleted_ids.append(duplicate.id)
                    result.deleted += 1
                related = [content_id for duplicate in duplicates for content_id in duplicate.related_content_ids]
                if related:
                    await self.place_repo.link_content(keeper.id, related)
                if keeper.dedupe_hash != place_dedupe_hash(keeper.data):
                    # rewrite so the stored hash matches the current rules
                    await self.place_repo.update(keeper.id, {})
                result.merged += 1

            contents = [block async for block in self.content_repo.iter_blocks(ContentBlockFilter(status=["active"]))]
            for group in _group_by(contents, lambda block: content_dedupe_hash(block.data)):
                keeper, duplicates = group[0], group[1:]
                for duplicate in duplicates:
                    await self.content_repo.update_status(duplicate.id, "deleted")
                    deleted_ids.append(duplicate.id)
                    result.deleted += 1
                if keeper.dedupe_hash != content_dedupe_hash(keeper.data):
                    await self.content_repo.update(keeper.id, {})
                result.merged += 1

        if self.cache is not None and deleted_ids:
            await self.cache.invalidate(*deleted_ids)
        logger.info("dedup scan merged=%s deleted=%s", result.merged, result.deleted)
        return result

    async def optimize_indexes(self) -> IndexOptimizeResult:
        tables = await self.store.analyze()
        logger.info("index statistics refreshed tables=%s", ",".join(tables) or "-")
        return IndexOptimizeResult(analyzed_tables=tables)

    async def warm_cache(self, top_places: int = 100, recent_contents: int = 50) -> CacheWarmResult:
        result = CacheWarmResult()
        if self.cache is None:
            logger.info("cache warm skipped: no cache configured")
            return result

        if top_places > 0:
            places = await self.place_repo.search(
                PlaceBlockFilter(status=["active"], sort_by="completeness", sort_dir="desc", page_size=min(top_places, 1000))
            )
            for place in places.items:
                await self.cache.set_place(place)
                result.cached_places += 1

        if recent_contents > 0:
            contents = await self.content_repo.search(
                ContentBlockFilter(status=["active"], sort_by="published_at", sort_dir="desc", page_size=min(recent_contents, 1000))
            )
            for content in contents.items:
                await self.cache.set_content(content)
                result.cached_contents += 1

        logger.info("cache warmed places=%s contents=%s", result.cached_places, result.cached_contents)
        return result

