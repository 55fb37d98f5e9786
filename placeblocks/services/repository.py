"""Block repositories.

Every write to a block goes through these classes so that hash, quality,
keywords and the metadata version are recomputed in one place. The Optimizer,
Migrator and Pipeline all use the same entry points.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from placeblocks.core.errors import BlockNotFoundError, DuplicateKeyError, InvalidTransitionError
from placeblocks.schemas.blocks import (
    BlockStats,
    BulkUpsertResult,
    ContentBlock,
    ContentBlockFilter,
    ContentBlockMetadata,
    Page,
    PlaceBlock,
    PlaceBlockFilter,
    PlaceBlockMetadata,
)
from placeblocks.schemas.places import NormalizedContent, NormalizedPlace
from placeblocks.services.quality import (
    content_dedupe_hash,
    content_quality,
    freshness_for,
    place_dedupe_hash,
    place_quality,
    place_region_code,
    place_search_keywords,
)
from placeblocks.services.store import BlockStore

logger = logging.getLogger(__name__)

ITER_PAGE_SIZE = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _merge_payload(current: Any, changes: dict[str, Any] | Any) -> dict[str, Any]:
    payload = current.model_dump()
    if isinstance(changes, dict):
        overrides = changes
    else:
        overrides = changes.model_dump(exclude_unset=True)
    # shallow override: nested objects are replaced, never merged
    payload.update(overrides)
    return payload


def _ensure_status_change(block_id: str, current: str, target: str) -> None:
    if current == "deleted" and target != "deleted":
        raise InvalidTransitionError(f"block {block_id}", current, target)


class PlaceBlockRepository:
    def __init__(self, store: BlockStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or _utcnow

    async def create(self, place: NormalizedPlace, *, status: str = "active") -> PlaceBlock:
        now = self._clock()
        block = self._derive(
            PlaceBlock.model_construct(
                id=str(uuid4()),
                data=place,
                status=status,
                related_content_ids=[],
                metadata=PlaceBlockMetadata(source=place.source, source_id=place.id),
                created_at=now,
                updated_at=now,
                last_crawled_at=now,
                crawl_count=1,
            ),
            now,
        )
        await self.store.insert_place(block)
        logger.debug("place block created id=%s hash=%s grade=%s", block.id, block.dedupe_hash, block.quality_grade)
        return block

    async def update(self, block_id: str, changes: dict[str, Any] | NormalizedPlace) -> PlaceBlock:
        existing = await self._require(block_id)
        now = self._clock()
        data = NormalizedPlace.model_validate(_merge_payload(existing.data, changes))
        block = self._derive(
            existing.model_copy(
                update={
                    "data": data,
                    "updated_at": now,
                    "last_crawled_at": now,
                    "crawl_count": existing.crawl_count + 1,
                    "metadata": existing.metadata.model_copy(update={"version": existing.metadata.version + 1}),
                }
            ),
            now,
        )
        await self.store.replace_place(block, expected_version=existing.metadata.version)
        return block

    async def update_status(self, block_id: str, status: str) -> PlaceBlock:
        existing = await self._require(block_id)
        _ensure_status_change(block_id, existing.status, status)
        now = self._clock()
        block = existing.model_copy(
            update={
                "status": status,
                "updated_at": now,
                "metadata": existing.metadata.model_copy(update={"version": existing.metadata.version + 1}),
            }
        )
        await self.store.replace_place(block, expected_version=existing.metadata.version)
        logger.info("place block status changed id=%s from=%s to=%s", block_id, existing.status, status)
        return block

    async def link_content(self, block_id: str, content_ids: Iterable[str]) -> PlaceBlock:
        existing = await self._require(block_id)
        merged = list(dict.fromkeys([*existing.related_content_ids, *content_ids]))
        if merged == existing.related_content_ids:
            return existing
        block = existing.model_copy(
            update={
                "related_content_ids": merged,
                "updated_at": self._clock(),
                "metadata": existing.metadata.model_copy(update={"version": existing.metadata.version + 1}),
            }
        )
        await self.store.replace_place(block, expected_version=existing.metadata.version)
        return block

    async def unlink_content(self, block_id: str, content_ids: Iterable[str]) -> PlaceBlock:
        existing = await self._require(block_id)
        removed = set(content_ids)
        kept = [content_id for content_id in existing.related_content_ids if content_id not in removed]
        if kept == existing.related_content_ids:
            return existing
        block = existing.model_copy(
            update={
                "related_content_ids": kept,
                "updated_at": self._clock(),
                "metadata": existing.metadata.model_copy(update={"version": existing.metadata.version + 1}),
            }
        )
        await self.store.replace_place(block, expected_version=existing.metadata.version)
        return block

    async def find_by_id(self, block_id: str) -> PlaceBlock | None:
        return await self.store.get_place(block_id)

    async def find_by_dedupe_hash(self, dedupe_hash: str) -> PlaceBlock | None:
        return await self.store.get_place_by_hash(dedupe_hash)

    async def search(self, block_filter: PlaceBlockFilter | None = None) -> Page[PlaceBlock]:
        resolved = block_filter or PlaceBlockFilter()
        items, total = await self.store.query_places(resolved)
        return Page[PlaceBlock].build(items, total=total, page=resolved.page, page_size=resolved.page_size)

    async def iter_blocks(self, block_filter: PlaceBlockFilter | None = None) -> AsyncIterator[PlaceBlock]:
        base = block_filter or PlaceBlockFilter()
        page = 1
        while True:
            result = await self.search(base.model_copy(update={"page": page, "page_size": ITER_PAGE_SIZE}))
            for item in result.items:
                yield item
            if not result.has_next:
                return
            page += 1

    async def bulk_upsert(self, places: Iterable[NormalizedPlace], *, skip_duplicates: bool = True) -> BulkUpsertResult:
        # Not atomic: each record is applied on its own, a crash leaves earlier records written.
        result = BulkUpsertResult()
        for place in places:
            existing = await self.find_by_dedupe_hash(place_dedupe_hash(place))
            if existing is not None:
                if skip_duplicates:
                    result.skipped += 1
                else:
                    await self.update(existing.id, place)
                    result.updated += 1
                continue
            try:
                await self.create(place)
            except DuplicateKeyError:
                result.skipped += 1
                continue
            result.created += 1
        return result

    async def _require(self, block_id: str) -> PlaceBlock:
        block = await self.store.get_place(block_id)
        if block is None:
            raise BlockNotFoundError(f"place block {block_id} not found")
        return block

    @staticmethod
    def _derive(block: PlaceBlock, now: datetime) -> PlaceBlock:
        completeness, grade = place_quality(block.data)
        return PlaceBlock.model_validate(
            {
                **dict(block),
                "quality_grade": grade,
                "completeness": completeness,
                "dedupe_hash": place_dedupe_hash(block.data),
                "search_keywords": place_search_keywords(block.data),
                "region_code": place_region_code(block.data),
                "freshness": freshness_for(block.last_crawled_at, now),
            }
        )


class ContentBlockRepository:
    def __init__(self, store: BlockStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or _utcnow

    async def create(
        self,
        content: NormalizedContent,
        *,
        related_place_id: str | None = None,
        status: str = "active",
    ) -> ContentBlock:
        now = self._clock()
        block = self._derive(
            ContentBlock.model_construct(
                id=str(uuid4()),
                data=content,
                status=status,
                related_place_id=related_place_id,
                analysis=None,
                metadata=ContentBlockMetadata(source=content.source, source_id=content.id),
                created_at=now,
                updated_at=now,
                last_crawled_at=now,
                crawl_count=1,
            ),
            now,
        )
        await self.store.insert_content(block)
        logger.debug("content block created id=%s hash=%s grade=%s", block.id, block.dedupe_hash, block.quality_grade)
        return block

    async def update(
        self,
        block_id: str,
        changes: dict[str, Any] | NormalizedContent,
        *,
        related_place_id: str | None = None,
    ) -> ContentBlock:
        existing = await self._require(block_id)
        now = self._clock()
        data = NormalizedContent.model_validate(_merge_payload(existing.data, changes))
        block = self._derive(
            existing.model_copy(
                update={
                    "data": data,
                    "related_place_id": related_place_id or existing.related_place_id,
                    "updated_at": now,
                    "last_crawled_at": now,
                    "crawl_count": existing.crawl_count + 1,
                    "metadata": existing.metadata.model_copy(update={"version": existing.metadata.version + 1}),
                }
            ),
            now,
        )
        await self.store.replace_content(block, expected_version=existing.metadata.version)
        return block

    async def update_status(self, block_id: str, status: str) -> ContentBlock:
        existing = await self._require(block_id)
        _ensure_status_change(block_id, existing.status, status)
        block = existing.model_copy(
            update={
                "status": status,
                "updated_at": self._clock(),
                "metadata": existing.metadata.model_copy(update={"version": existing.metadata.version + 1}),
            }
        )
        await self.store.replace_content(block, expected_version=existing.metadata.version)
        logger.info("content block status changed id=%s from=%s to=%s", block_id, existing.status, status)
        return block

    async def find_by_id(self, block_id: str) -> ContentBlock | None:
        return await self.store.get_content(block_id)

    async def find_by_dedupe_hash(self, dedupe_hash: str) -> ContentBlock | None:
        return await self.store.get_content_by_hash(dedupe_hash)

    async def find_by_place_id(self, place_id: str) -> list[ContentBlock]:
        return [block async for block in self.iter_blocks(ContentBlockFilter(related_place_id=place_id))]

    async def search(self, block_filter: ContentBlockFilter | None = None) -> Page[ContentBlock]:
        resolved = block_filter or ContentBlockFilter()
        items, total = await self.store.query_contents(resolved)
        return Page[ContentBlock].build(items, total=total, page=resolved.page, page_size=resolved.page_size)

    async def iter_blocks(self, block_filter: ContentBlockFilter | None = None) -> AsyncIterator[ContentBlock]:
        base = block_filter or ContentBlockFilter()
        page = 1
        while True:
            result = await self.search(base.model_copy(update={"page": page, "page_size": ITER_PAGE_SIZE}))
            for item in result.items:
                yield item
            if not result.has_next:
                return
            page += 1

    async def bulk_upsert(
        self,
        contents: Iterable[NormalizedContent],
        *,
        skip_duplicates: bool = True,
    ) -> BulkUpsertResult:
        result = BulkUpsertResult()
        for content in contents:
            existing = await self.find_by_dedupe_hash(content_dedupe_hash(content))
            if existing is not None:
                if skip_duplicates:
                    result.skipped += 1
                else:
                    await self.update(existing.id, content)
                    result.updated += 1
                continue
            try:
                await self.create(content)
            except DuplicateKeyError:
                result.skipped += 1
                continue
            result.created += 1
        return result

    async def _require(self, block_id: str) -> ContentBlock:
        block = await self.store.get_content(block_id)
        if block is None:
            raise BlockNotFoundError(f"content block {block_id} not found")
        return block

    @staticmethod
    def _derive(block: ContentBlock, now: datetime) -> ContentBlock:
        completeness, grade = content_quality(block.data)
        return ContentBlock.model_validate(
            {
                **dict(block),
                "quality_grade": grade,
                "completeness": completeness,
                "dedupe_hash": content_dedupe_hash(block.data),
                "freshness": freshness_for(block.last_crawled_at, now),
            }
        )


class BlockStatsRepository:
    """Holds the last aggregate snapshot. Snapshots are always rebuilt from the store."""

    def __init__(self, store: BlockStore) -> None:
        self.store = store
        self._snapshot: BlockStats | None = None

    async def get_stats(self, *, refresh: bool = False) -> BlockStats:
        if refresh or self._snapshot is None:
            return await self.refresh_stats()
        return self._snapshot

    async def refresh_stats(self) -> BlockStats:
        self._snapshot = await self.store.aggregate_stats()
        return self._snapshot
