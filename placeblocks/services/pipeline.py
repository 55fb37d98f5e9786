"""Transform and Load for normalized records.

Records arrive already parsed (the Extract boundary lives in ``services.sources``).
Each record is graded, checked against the dedupe hash and then created,
updated or skipped. A run always returns a ``PipelineResult``; the only error
that escapes is ``ConfigurationError``, raised before the first batch.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal

from opentelemetry import trace

from placeblocks.core.errors import BlockNotFoundError, ConfigurationError, DuplicateKeyError
from placeblocks.schemas.blocks import QUALITY_GRADES, ContentBlock, PlaceBlock
from placeblocks.schemas.places import NormalizedContent, NormalizedPlace
from placeblocks.services.quality import (
    content_dedupe_hash,
    content_quality,
    grade_at_or_above,
    place_dedupe_hash,
    place_quality,
)
from placeblocks.services.repository import (
    BlockStatsRepository,
    ContentBlockRepository,
    PlaceBlockRepository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ShouldContinue = Callable[[], bool | Awaitable[bool]]
Outcome = Literal["created", "updated", "skipped_quality", "skipped_duplicate"]


@dataclass(slots=True)
class PipelineConfig:
    batch_size: int = 100
    concurrency: int = 5
    quality_threshold: str = "F"
    skip_duplicates: bool = True
    update_existing: bool = False
    dry_run: bool = False
    refresh_stats: bool = True

    def validate(self) -> None:
        if self.batch_size < 1:
            raise ConfigurationError("pipeline batch_size must be at least 1")
        if self.concurrency < 1:
            raise ConfigurationError("pipeline concurrency must be at least 1")
        if self.quality_threshold not in QUALITY_GRADES:
            raise ConfigurationError(f"unknown quality threshold {self.quality_threshold!r}")


@dataclass(slots=True)
class PipelineError:
    stage: str
    item_id: str | None
    message: str
    timestamp: str


@dataclass(slots=True)
class PipelineResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    created: int = 0
    updated: int = 0
    duplicates: int = 0
    quality_stats: dict[str, int] = field(default_factory=lambda: {grade: 0 for grade in QUALITY_GRADES})
    duration_ms: int = 0
    errors: list[PipelineError] = field(default_factory=list)
    cancelled: bool = False

    def record(self, outcome: Outcome, grade: str) -> None:
        self.processed += 1
        if outcome == "skipped_quality":
            self.skipped += 1
            return
        if outcome == "skipped_duplicate":
            self.skipped += 1
            self.duplicates += 1
            return
        self.succeeded += 1
        self.quality_stats[grade] += 1
        if outcome == "created":
            self.created += 1
        else:
            self.updated += 1

    def record_failure(self, stage: str, item_id: str | None, message: str) -> None:
        self.processed += 1
        self.failed += 1
        self.errors.append(
            PipelineError(
                stage=stage,
                item_id=item_id,
                message=message,
                timestamp=datetime.now(timezone.utc).isoformat(),
            )
        )

    def record_error(self, stage: str, item_id: str | None, message: str) -> None:
        """Keep an error for a record that still counts under its outcome."""
        self.errors.append(
            PipelineError(
                stage=stage,
                item_id=item_id,
                message=message,
                timestamp=datetime.now(timezone.utc).isoformat(),
            )
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "created": self.created,
            "updated": self.updated,
            "duplicates": self.duplicates,
            "quality_stats": dict(self.quality_stats),
            "duration_ms": self.duration_ms,
            "errors": [
                {"stage": error.stage, "item_id": error.item_id, "message": error.message, "timestamp": error.timestamp}
                for error in self.errors
            ],
            "cancelled": self.cancelled,
        }


def _chunk(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[index : index + size] for index in range(0, len(items), size)]


@dataclass(slots=True)
class _RunState:
    result: PipelineResult
    # dry runs write nothing, so records counted as created are tracked here by hash
    planned: dict[str, Any] = field(default_factory=dict)


def _same_payload(current: Any, incoming: Any) -> bool:
    # fetched_at changes on every crawl and is not part of the record
    return current.model_dump(exclude={"fetched_at"}) == incoming.model_dump(exclude={"fetched_at"})


async def _resolve(should_continue: ShouldContinue | None) -> bool:
    if should_continue is None:
        return True
    answer = should_continue()
    if inspect.isawaitable(answer):
        answer = await answer
    return bool(answer)


class DataBlockPipeline:
    def __init__(
        self,
        place_repo: PlaceBlockRepository,
        content_repo: ContentBlockRepository,
        stats_repo: BlockStatsRepository | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self.place_repo = place_repo
        self.content_repo = content_repo
        self.stats_repo = stats_repo
        self.config = config or PipelineConfig()

    def with_config(self, **overrides: Any) -> DataBlockPipeline:
        return DataBlockPipeline(self.place_repo, self.content_repo, self.stats_repo, replace(self.config, **overrides))

    async def process_places(
        self,
        places: Sequence[NormalizedPlace],
        *,
        should_continue: ShouldContinue | None = None,
    ) -> PipelineResult:
        self.config.validate()
        with tracer.start_as_current_span("pipeline.process_places") as span:
            span.set_attribute("pipeline.records", len(places))
            result = await self._run(places, self._process_place, should_continue)
            span.set_attribute("pipeline.failed", result.failed)
            return result

    async def process_contents(
        self,
        contents: Sequence[NormalizedContent],
        *,
        related_place_id: str | None = None,
        should_continue: ShouldContinue | None = None,
    ) -> PipelineResult:
        self.config.validate()

        async def process(content: NormalizedContent, state: _RunState) -> tuple[Outcome, str]:
            return await self._process_content(content, related_place_id, state)

        with tracer.start_as_current_span("pipeline.process_contents") as span:
            span.set_attribute("pipeline.records", len(contents))
            result = await self._run(contents, process, should_continue)
            span.set_attribute("pipeline.failed", result.failed)
            return result

    async def _run(
        self,
        records: Sequence[Any],
        process: Callable[[Any, _RunState], Awaitable[tuple[Outcome, str]]],
        should_continue: ShouldContinue | None,
    ) -> PipelineResult:
        started = time.monotonic()
        result = PipelineResult()
        state = _RunState(result)
        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def run_batch(batch: Sequence[Any]) -> None:
            async with semaphore:
                if result.cancelled or not await _resolve(should_continue):
                    result.cancelled = True
                    return
                # records inside a batch run one after another
                for record in batch:
                    item_id = getattr(record, "id", None)
                    try:
                        outcome, grade = await process(record, state)
                    except Exception as exc:
                        logger.warning("pipeline record failed id=%s: %s", item_id, exc)
                        result.record_failure("load", item_id, str(exc) or exc.__class__.__name__)
                        continue
                    result.record(outcome, grade)

        await asyncio.gather(*(run_batch(batch) for batch in _chunk(records, self.config.batch_size)))

        if self.config.refresh_stats and not self.config.dry_run and self.stats_repo is not None:
            if result.created or result.updated:
                try:
                    await self.stats_repo.refresh_stats()
                except Exception as exc:
                    logger.exception("stats refresh after pipeline run failed")
                    result.record_error("optimize", None, str(exc) or exc.__class__.__name__)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "pipeline run processed=%s succeeded=%s failed=%s skipped=%s cancelled=%s dry_run=%s",
            result.processed,
            result.succeeded,
            result.failed,
            result.skipped,
            result.cancelled,
            self.config.dry_run,
        )
        return result

    async def _process_place(self, place: NormalizedPlace, state: _RunState) -> tuple[Outcome, str]:
        _, grade = place_quality(place)
        if not grade_at_or_above(grade, self.config.quality_threshold):
            return "skipped_quality", grade

        dedupe_hash = place_dedupe_hash(place)
        # a dry run always looks up, standing in for the collision a real insert would hit
        if self.config.skip_duplicates or self.config.update_existing or self.config.dry_run:
            existing = await self.place_repo.find_by_dedupe_hash(dedupe_hash)
            if existing is not None:
                return await self._apply_place_duplicate(existing, place), grade

        if self.config.dry_run:
            return self._plan_create(state, dedupe_hash, place), grade
        try:
            await self.place_repo.create(place)
        except DuplicateKeyError as exc:
            # another writer inserted the same identity between lookup and insert
            existing = (
                await self.place_repo.find_by_id(exc.existing_id)
                if exc.existing_id
                else await self.place_repo.find_by_dedupe_hash(exc.dedupe_hash)
            )
            if existing is None:
                raise
            return await self._apply_place_duplicate(existing, place), grade
        return "created", grade

    async def _apply_place_duplicate(self, existing: PlaceBlock, place: NormalizedPlace) -> Outcome:
        if not self.config.update_existing or _same_payload(existing.data, place):
            return "skipped_duplicate"
        if not self.config.dry_run:
            await self.place_repo.update(existing.id, place)
        return "updated"

    def _plan_create(self, state: _RunState, dedupe_hash: str, record: Any) -> Outcome:
        planned = state.planned.get(dedupe_hash)
        if planned is None:
            state.planned[dedupe_hash] = record
            return "created"
        if not self.config.update_existing or _same_payload(planned, record):
            return "skipped_duplicate"
        state.planned[dedupe_hash] = record
        return "updated"

    async def _process_content(
        self,
        content: NormalizedContent,
        related_place_id: str | None,
        state: _RunState,
    ) -> tuple[Outcome, str]:
        _, grade = content_quality(content)
        if not grade_at_or_above(grade, self.config.quality_threshold):
            return "skipped_quality", grade

        dedupe_hash = content_dedupe_hash(content)
        if self.config.skip_duplicates or self.config.update_existing or self.config.dry_run:
            existing = await self.content_repo.find_by_dedupe_hash(dedupe_hash)
            if existing is not None:
                return await self._apply_content_duplicate(existing, content, related_place_id, state), grade

        await self._require_place(related_place_id)
        if self.config.dry_run:
            return self._plan_create(state, dedupe_hash, content), grade
        try:
            block = await self.content_repo.create(content, related_place_id=related_place_id)
        except DuplicateKeyError as exc:
            existing = (
                await self.content_repo.find_by_id(exc.existing_id)
                if exc.existing_id
                else await self.content_repo.find_by_dedupe_hash(exc.dedupe_hash)
            )
            if existing is None:
                raise
            return await self._apply_content_duplicate(existing, content, related_place_id, state), grade
        if related_place_id is not None:
            await self._link(state, related_place_id, block.id)
        return "created", grade

    async def _apply_content_duplicate(
        self,
        existing: ContentBlock,
        content: NormalizedContent,
        related_place_id: str | None,
        state: _RunState,
    ) -> Outcome:
        relinked = related_place_id is not None and related_place_id != existing.related_place_id
        if not self.config.update_existing or (_same_payload(existing.data, content) and not relinked):
            return "skipped_duplicate"
        if relinked:
            await self._require_place(related_place_id)
        if self.config.dry_run:
            return "updated"
        await self.content_repo.update(existing.id, content, related_place_id=related_place_id)
        if relinked:
            await self._link(state, related_place_id, existing.id)
            if existing.related_place_id is not None:
                await self._unlink(state, existing.related_place_id, existing.id)
        return "updated"

    async def _require_place(self, place_id: str | None) -> None:
        if place_id is not None and await self.place_repo.find_by_id(place_id) is None:
            raise BlockNotFoundError(f"related place {place_id} not found")

    async def _link(self, state: _RunState, place_id: str, content_id: str) -> None:
        # the content row is already stored, so a failed link is reported without failing the record
        try:
            await self.place_repo.link_content(place_id, [content_id])
        except Exception as exc:
            logger.warning("linking content id=%s to place id=%s failed: %s", content_id, place_id, exc)
            state.result.record_error("link", content_id, str(exc) or exc.__class__.__name__)

    async def _unlink(self, state: _RunState, place_id: str, content_id: str) -> None:
        try:
            await self.place_repo.unlink_content(place_id, [content_id])
        except Exception as exc:
            logger.warning("unlinking content id=%s from place id=%s failed: %s", content_id, place_id, exc)
            state.result.record_error("link", content_id, str(exc) or exc.__class__.__name__)
