from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace

from placeblocks.jobs.queue import JobQueue
from placeblocks.schemas.jobs import (
    CONTENT_SOURCE_NAMES,
    PLACE_SOURCE_NAMES,
    CrawlJob,
    CrawlProgress,
    CrawlResult,
    SourceStats,
)
from placeblocks.services.optimizer import BlockOptimizer
from placeblocks.services.pipeline import DataBlockPipeline, PipelineResult
from placeblocks.services.sources import Extractor, SourcePage, SourceQuery

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_CONTENT_KEYWORDS = ["키즈카페 추천", "아이랑 놀이공원", "어린이 박물관 후기", "실내놀이터 브이로그"]
MAX_RECORDED_ERRORS = 50


@dataclass(slots=True)
class JobRun:
    """What one execution produced. ``interrupted`` names the status that stopped it early."""

    result: CrawlResult
    progress: CrawlProgress
    interrupted: str | None = None


@dataclass(slots=True)
class _RunState:
    job: CrawlJob
    started: float
    result: CrawlResult = field(default_factory=CrawlResult)
    progress: CrawlProgress = field(default_factory=CrawlProgress)
    interrupted: str | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)

    def source_stats(self, source: str) -> SourceStats:
        return self.result.source_stats.setdefault(source, SourceStats())

    def absorb(self, source: str, page: SourcePage[Any], outcome: PipelineResult) -> None:
        stats = self.source_stats(source)
        stats.total += page.fetched
        stats.rejected += page.rejected
        stats.success += outcome.succeeded
        stats.failed += outcome.failed

        self.result.new_blocks += outcome.created
        self.result.updated_blocks += outcome.updated
        self.result.duplicates_skipped += outcome.duplicates
        self.result.rejected_records += page.rejected

        self.progress.processed += outcome.processed
        self.progress.succeeded += outcome.succeeded
        self.progress.failed += outcome.failed
        self.progress.skipped += outcome.skipped
        self.progress.current_source = source
        self.progress.current_page = page.page
        if self.progress.total_estimated:
            done = self.progress.processed + self.result.rejected_records
            self.progress.percentage = round(min(100.0, done * 100.0 / self.progress.total_estimated), 1)

        for error in outcome.errors:
            if len(self.errors) >= MAX_RECORDED_ERRORS:
                break
            self.errors.append({"stage": error.stage, "item_id": error.item_id, "message": error.message})


class CrawlJobExecutor:
    """Runs one claimed crawl job end to end and reports what it did."""

    def __init__(
        self,
        extractors: Mapping[str, Extractor[Any]],
        pipeline: DataBlockPipeline,
        optimizer: BlockOptimizer,
        queue: JobQueue,
        *,
        lease_seconds: int = 300,
    ) -> None:
        self.extractors = dict(extractors)
        self.pipeline = pipeline
        self.optimizer = optimizer
        self.queue = queue
        self.lease_seconds = lease_seconds

    async def execute(self, job: CrawlJob) -> JobRun:
        state = _RunState(job=job, started=time.monotonic())
        with tracer.start_as_current_span("executor.run_job") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.type", job.type)

            if job.type in {"FULL_CRAWL", "INCREMENTAL", "REGION_CRAWL", "CATEGORY_CRAWL"}:
                await self._crawl_places(state)
            elif job.type == "CONTENT_REFRESH":
                await self._crawl_contents(state)
            elif job.type == "QUALITY_CHECK":
                optimized = await self.optimizer.optimize_by_quality(job.config.archive_grades, refresh_stale=True)
                state.result.archived_blocks = optimized.archived
                state.result.details["scheduled_refresh"] = optimized.scheduled_refresh
            elif job.type == "DEDUP_SCAN":
                deduped = await self.optimizer.deduplicate_blocks()
                state.result.deleted_blocks = deduped.deleted
                state.result.details["merged_groups"] = deduped.merged
            else:
                raise ValueError(f"unsupported job type {job.type}")

            if state.interrupted is None:
                state.progress.percentage = 100.0
            span.set_attribute("job.new_blocks", state.result.new_blocks)
            span.set_attribute("job.rejected_records", state.result.rejected_records)

        if state.errors:
            state.result.details["errors"] = state.errors
        state.result.duration_ms = int((time.monotonic() - state.started) * 1000)
        logger.info(
            "job run finished id=%s type=%s new=%s updated=%s duplicates=%s rejected=%s interrupted=%s",
            job.id,
            job.type,
            state.result.new_blocks,
            state.result.updated_blocks,
            state.result.duplicates_skipped,
            state.result.rejected_records,
            state.interrupted,
        )
        return JobRun(result=state.result, progress=state.progress, interrupted=state.interrupted)

    async def _crawl_places(self, state: _RunState) -> None:
        job = state.job
        config = job.config
        incremental = job.type == "INCREMENTAL"
        pipeline = self.pipeline.with_config(
            quality_threshold=config.quality_threshold,
            skip_duplicates=config.skip_duplicates,
            update_existing=config.update_existing or incremental,
            dry_run=config.dry_run,
        )

        regions: Sequence[str | None] = config.region_codes or [None]
        categories: Sequence[str | None] = config.categories if job.type == "CATEGORY_CRAWL" else [None]
        wanted = set(config.categories) if job.type == "CATEGORY_CRAWL" else None

        for source in self._available(state, config.sources, PLACE_SOURCE_NAMES):
            extractor = self.extractors[source]
            for region in regions:
                for category in categories:
                    for page_number in range(1, config.max_pages + 1):
                        if not await self._still_running(state):
                            return
                        page = await extractor.extract(
                            SourceQuery(
                                page=page_number,
                                page_size=config.page_size,
                                region_code=region,
                                category=category,
                            ),
                            request_delay_ms=config.request_delay_ms,
                        )
                        if page_number == 1 and page.total_count:
                            state.progress.total_estimated += min(page.total_count, config.max_pages * config.page_size)

                        items = page.items
                        if wanted is not None:
                            items = [item for item in items if item.category in wanted]
                            state.result.details["filtered_out"] = (
                                state.result.details.get("filtered_out", 0) + len(page.items) - len(items)
                            )

                        outcome = await pipeline.process_places(items, should_continue=lambda: self._still_running(state))
                        state.absorb(source, page, outcome)
                        await self.queue.update_progress(job.id, state.progress, lease_seconds=self.lease_seconds)

                        if outcome.cancelled:
                            return
                        if incremental and outcome.created == 0 and outcome.updated == 0:
                            logger.info(
                                "incremental crawl caught up id=%s source=%s region=%s page=%s",
                                job.id,
                                source,
                                region,
                                page_number,
                            )
                            break
                        if not page.has_more:
                            break

    async def _crawl_contents(self, state: _RunState) -> None:
        job = state.job
        config = job.config
        pipeline = self.pipeline.with_config(
            quality_threshold=config.quality_threshold,
            skip_duplicates=config.skip_duplicates,
            update_existing=config.update_existing,
            dry_run=config.dry_run,
        )
        keywords = config.keywords or DEFAULT_CONTENT_KEYWORDS

        for source in self._available(state, config.sources, CONTENT_SOURCE_NAMES):
            extractor = self.extractors[source]
            for keyword in keywords:
                for page_number in range(1, config.max_pages + 1):
                    if not await self._still_running(state):
                        return
                    page = await extractor.extract(
                        SourceQuery(page=page_number, page_size=config.page_size, keyword=keyword),
                        request_delay_ms=config.request_delay_ms,
                    )
                    if page_number == 1 and page.total_count:
                        state.progress.total_estimated += min(page.total_count, config.max_pages * config.page_size)

                    outcome = await pipeline.process_contents(page.items, should_continue=lambda: self._still_running(state))
                    state.absorb(source, page, outcome)
                    await self.queue.update_progress(job.id, state.progress, lease_seconds=self.lease_seconds)

                    if outcome.cancelled:
                        return
                    if not page.has_more:
                        break

    def _available(self, state: _RunState, sources: Sequence[str], kinds: set[str]) -> list[str]:
        available: list[str] = []
        for source in sources:
            if source not in kinds:
                continue
            if source not in self.extractors:
                logger.warning("no extractor configured for source=%s, skipping job=%s", source, state.job.id)
                state.result.details.setdefault("unavailable_sources", []).append(source)
                continue
            available.append(source)
        return available

    async def _still_running(self, state: _RunState) -> bool:
        if state.interrupted is not None:
            return False
        current = await self.queue.get(state.job.id)
        if current.status == "running" and current.worker_id == state.job.worker_id:
            return True
        state.interrupted = current.status
        logger.info("job id=%s stopped cooperatively, status is now %s", state.job.id, current.status)
        return False
