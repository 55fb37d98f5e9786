from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

from placeblocks.core.errors import BlockNotFoundError, ConcurrentUpdateError, DuplicateKeyError
from placeblocks.schemas.blocks import (
    BlockStats,
    ContentBlock,
    ContentBlockFilter,
    PlaceBlock,
    PlaceBlockFilter,
)
from placeblocks.services.quality import bounding_box, freshness_for


class BlockStore(Protocol):
    """Storage backend for place and content blocks.

    Stores own uniqueness of ``dedupe_hash`` among non-deleted rows and the
    optimistic ``metadata.version`` check on replace. Freshness on returned
    blocks is derived from ``last_crawled_at`` at read time.
    """

    async def insert_place(self, block: PlaceBlock) -> None: ...

    async def replace_place(self, block: PlaceBlock, *, expected_version: int) -> None: ...

    async def get_place(self, block_id: str) -> PlaceBlock | None: ...

    async def get_place_by_hash(self, dedupe_hash: str) -> PlaceBlock | None: ...

    async def query_places(self, block_filter: PlaceBlockFilter) -> tuple[list[PlaceBlock], int]: ...

    async def insert_content(self, block: ContentBlock) -> None: ...

    async def replace_content(self, block: ContentBlock, *, expected_version: int) -> None: ...

    async def get_content(self, block_id: str) -> ContentBlock | None: ...

    async def get_content_by_hash(self, dedupe_hash: str) -> ContentBlock | None: ...

    async def query_contents(self, block_filter: ContentBlockFilter) -> tuple[list[ContentBlock], int]: ...

    async def aggregate_stats(self) -> BlockStats: ...

    async def analyze(self) -> list[str]: ...

    async def close(self) -> None: ...


def _with_freshness(block: Any, now: datetime) -> Any:
    return block.model_copy(update={"freshness": freshness_for(block.last_crawled_at, now)}, deep=True)


def _ordered(items: list[Any], key: Callable[[Any], Any], *, descending: bool) -> list[Any]:
    # rows without a sort value always go last, ties break on id
    present = [item for item in items if key(item) is not None]
    missing = [item for item in items if key(item) is None]
    present.sort(key=lambda item: item.id)
    present.sort(key=key, reverse=descending)
    missing.sort(key=lambda item: item.id)
    return present + missing


def _paginate(items: list[Any], page: int, page_size: int) -> list[Any]:
    offset = (page - 1) * page_size
    return items[offset : offset + page_size]


class InMemoryBlockStore:
    """Dict-backed store used by tests, dry runs and local development."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.places: dict[str, PlaceBlock] = {}
        self.contents: dict[str, ContentBlock] = {}
        self.analyze_calls = 0

    async def close(self) -> None:
        return None

    async def insert_place(self, block: PlaceBlock) -> None:
        self._check_unique(self.places, block.id, block.dedupe_hash, block.status)
        self.places[block.id] = block.model_copy(deep=True)

    async def replace_place(self, block: PlaceBlock, *, expected_version: int) -> None:
        self._check_replace(self.places, block.id, expected_version)
        self._check_unique(self.places, block.id, block.dedupe_hash, block.status)
        self.places[block.id] = block.model_copy(deep=True)

    async def get_place(self, block_id: str) -> PlaceBlock | None:
        block = self.places.get(block_id)
        return _with_freshness(block, self._clock()) if block is not None else None

    async def get_place_by_hash(self, dedupe_hash: str) -> PlaceBlock | None:
        for block in self.places.values():
            if block.dedupe_hash == dedupe_hash and block.status != "deleted":
                return _with_freshness(block, self._clock())
        return None

    async def query_places(self, block_filter: PlaceBlockFilter) -> tuple[list[PlaceBlock], int]:
        now = self._clock()
        statuses = set(block_filter.effective_statuses())
        box = (
            bounding_box(
                block_filter.location.latitude,
                block_filter.location.longitude,
                block_filter.location.radius_km,
            )
            if block_filter.location is not None
            else None
        )
        keyword = block_filter.keyword.strip().lower() if block_filter.keyword else None

        matched: list[PlaceBlock] = []
        for stored in self.places.values():
            block = _with_freshness(stored, now)
            if block.status not in statuses:
                continue
            if block_filter.categories and block.data.category not in block_filter.categories:
                continue
            if block_filter.region_codes and block.region_code not in block_filter.region_codes:
                continue
            if block_filter.quality_grades and block.quality_grade not in block_filter.quality_grades:
                continue
            if block_filter.freshness and block.freshness not in block_filter.freshness:
                continue
            if block_filter.sources and block.metadata.source not in block_filter.sources:
                continue
            if keyword and not (
                keyword in block.data.name.lower()
                or any(keyword == item.lower() for item in block.search_keywords)
            ):
                continue
            if box is not None and not box.contains(block.data.latitude, block.data.longitude):
                continue
            if block_filter.completeness_range is not None and not (
                block_filter.completeness_range.min <= block.completeness <= block_filter.completeness_range.max
            ):
                continue
            if block_filter.crawled_at_range is not None and not (
                block_filter.crawled_at_range.start <= block.last_crawled_at <= block_filter.crawled_at_range.end
            ):
                continue
            matched.append(block)

        sort_by = block_filter.sort_by
        ordered = _ordered(
            matched,
            lambda item: item.data.name if sort_by == "name" else getattr(item, sort_by),
            descending=block_filter.sort_dir == "desc",
        )
        return _paginate(ordered, block_filter.page, block_filter.page_size), len(matched)

    async def insert_content(self, block: ContentBlock) -> None:
        self._check_unique(self.contents, block.id, block.dedupe_hash, block.status)
        self.contents[block.id] = block.model_copy(deep=True)

    async def replace_content(self, block: ContentBlock, *, expected_version: int) -> None:
        self._check_replace(self.contents, block.id, expected_version)
        self._check_unique(self.contents, block.id, block.dedupe_hash, block.status)
        self.contents[block.id] = block.model_copy(deep=True)

    async def get_content(self, block_id: str) -> ContentBlock | None:
        block = self.contents.get(block_id)
        return _with_freshness(block, self._clock()) if block is not None else None

    async def get_content_by_hash(self, dedupe_hash: str) -> ContentBlock | None:
        for block in self.contents.values():
            if block.dedupe_hash == dedupe_hash and block.status != "deleted":
                return _with_freshness(block, self._clock())
        return None

    async def query_contents(self, block_filter: ContentBlockFilter) -> tuple[list[ContentBlock], int]:
        now = self._clock()
        statuses = set(block_filter.effective_statuses())
        keyword = block_filter.keyword.strip().lower() if block_filter.keyword else None

        matched: list[ContentBlock] = []
        for stored in self.contents.values():
            block = _with_freshness(stored, now)
            if block.status not in statuses:
                continue
            if block_filter.sources and block.data.source not in block_filter.sources:
                continue
            if block_filter.related_place_id is not None and block.related_place_id != block_filter.related_place_id:
                continue
            if block_filter.quality_grades and block.quality_grade not in block_filter.quality_grades:
                continue
            if block_filter.freshness and block.freshness not in block_filter.freshness:
                continue
            if keyword and keyword not in block.data.title.lower():
                continue
            matched.append(block)

        sort_by = block_filter.sort_by
        ordered = _ordered(
            matched,
            lambda item: item.created_at if sort_by == "created_at" else getattr(item.data, sort_by),
            descending=block_filter.sort_dir == "desc",
        )
        return _paginate(ordered, block_filter.page, block_filter.page_size), len(matched)

    async def aggregate_stats(self) -> BlockStats:
        now = self._clock()
        places = [_with_freshness(block, now) for block in self.places.values()]
        active_places = [block for block in places if block.status == "active"]
        active_contents = [block for block in self.contents.values() if block.status == "active"]

        crawl_times = [block.last_crawled_at for block in places] + [
            block.last_crawled_at for block in self.contents.values()
        ]
        completeness = [block.completeness for block in active_places]
        return BlockStats(
            total_places=len(active_places),
            total_contents=len(active_contents),
            places_by_status=dict(Counter(block.status for block in places)),
            contents_by_status=dict(Counter(block.status for block in self.contents.values())),
            places_by_category=dict(Counter(block.data.category for block in active_places)),
            places_by_region=dict(Counter(block.region_code for block in active_places)),
            contents_by_source=dict(Counter(block.data.source for block in active_contents)),
            quality_distribution=dict(Counter(block.quality_grade for block in active_places)),
            freshness_distribution=dict(Counter(block.freshness for block in active_places)),
            average_completeness=round(sum(completeness) / len(completeness), 2) if completeness else 0.0,
            last_crawled_at=max(crawl_times) if crawl_times else None,
            last_updated=now,
        )

    async def analyze(self) -> list[str]:
        self.analyze_calls += 1
        return []

    @staticmethod
    def _check_unique(rows: dict[str, Any], block_id: str, dedupe_hash: str, status: str) -> None:
        if status == "deleted":
            return
        for existing in rows.values():
            if existing.id != block_id and existing.dedupe_hash == dedupe_hash and existing.status != "deleted":
                raise DuplicateKeyError(dedupe_hash, existing_id=existing.id)

    @staticmethod
    def _check_replace(rows: dict[str, Any], block_id: str, expected_version: int) -> None:
        existing = rows.get(block_id)
        if existing is None:
            raise BlockNotFoundError(f"block {block_id} not found")
        if existing.metadata.version != expected_version:
            raise ConcurrentUpdateError(
                f"block {block_id} is at version {existing.metadata.version}, expected {expected_version}"
            )
