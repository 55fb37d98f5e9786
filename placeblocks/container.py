from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from placeblocks.core.config import Settings
from placeblocks.core.errors import ConfigurationError
from placeblocks.jobs.executor import CrawlJobExecutor
from placeblocks.jobs.pg_queue import PostgresJobQueue
from placeblocks.jobs.queue import InMemoryJobQueue, JobQueue
from placeblocks.jobs.scheduler import CrawlScheduler
from placeblocks.jobs.worker_pool import WorkerPool
from placeblocks.schemas.places import NormalizedContent, NormalizedPlace
from placeblocks.services.cache import BlockCache
from placeblocks.services.migrator import (
    BlockMigrator,
    MigrationConfig,
    MigrationTarget,
    ObjectStorageTarget,
    PostgresMigrationTarget,
)
from placeblocks.services.monitor import BlockMonitor, MonitorThresholds
from placeblocks.services.naver_blog import NaverBlogAdapter
from placeblocks.services.optimizer import BlockOptimizer
from placeblocks.services.pipeline import DataBlockPipeline, PipelineConfig
from placeblocks.services.postgres import PostgresBlockStore
from placeblocks.services.repository import BlockStatsRepository, ContentBlockRepository, PlaceBlockRepository
from placeblocks.services.sources import Extractor
from placeblocks.services.store import BlockStore, InMemoryBlockStore
from placeblocks.services.tour_api import TourApiAdapter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    settings: Settings
    store: BlockStore
    queue: JobQueue
    place_repo: PlaceBlockRepository
    content_repo: ContentBlockRepository
    stats_repo: BlockStatsRepository
    pipeline: DataBlockPipeline
    scheduler: CrawlScheduler
    optimizer: BlockOptimizer
    monitor: BlockMonitor
    executor: CrawlJobExecutor
    cache: BlockCache | None = None

    def build_worker_pool(self) -> WorkerPool:
        return WorkerPool(
            self.queue,
            self.executor,
            concurrency=self.settings.worker_concurrency,
            worker_id=self.settings.worker_id,
            poll_interval_seconds=self.settings.poll_interval_seconds,
            max_backoff_seconds=self.settings.max_backoff_seconds,
            lease_seconds=self.settings.claim_lease_seconds,
            lease_reaper_interval_seconds=self.settings.lease_reaper_interval_seconds,
            lease_reaper_batch_size=self.settings.lease_reaper_batch_size,
            keep_completed_jobs=self.settings.job_retention_completed,
            keep_failed_jobs=self.settings.job_retention_failed,
        )

    def build_migrator(self, config: MigrationConfig | None = None) -> BlockMigrator:
        resolved = config or MigrationConfig(
            target=self.settings.migration_target,
            batch_size=self.settings.migration_batch_size,
        )
        resolved.validate()
        return BlockMigrator(self.place_repo, self.content_repo, build_migration_target(self.settings, resolved.target), resolved)

    async def ensure_schema(self) -> None:
        for component in (self.store, self.queue):
            ensure = getattr(component, "ensure_schema", None)
            if ensure is not None:
                await ensure()

    async def close(self) -> None:
        await self.queue.close()
        await self.store.close()
        if self.cache is not None:
            await self.cache.close()


def build_extractors(settings: Settings) -> dict[str, Extractor[Any]]:
    extractors: dict[str, Extractor[Any]] = {}
    common = {
        "timeout_seconds": settings.source_request_timeout_seconds,
        "max_retries": settings.source_max_retries,
    }
    if settings.tour_api_key:
        extractors["TOUR_API"] = Extractor(
            TourApiAdapter(settings.tour_api_base_url, settings.tour_api_key), NormalizedPlace, **common
        )
    if settings.naver_client_id and settings.naver_client_secret:
        extractors["NAVER_BLOG"] = Extractor(
            NaverBlogAdapter(settings.naver_base_url, settings.naver_client_id, settings.naver_client_secret),
            NormalizedContent,
            **common,
        )
    return extractors


def build_migration_target(settings: Settings, target: str) -> MigrationTarget:
    if target == "object_storage":
        return ObjectStorageTarget(
            settings.object_storage_endpoint,
            settings.object_storage_bucket,
            token=settings.object_storage_token,
            prefix=settings.object_storage_prefix,
        )
    if target == "postgres":
        if not settings.migration_database_url:
            raise ConfigurationError("PB_MIGRATION_DATABASE_URL is required for postgres migrations")
        return PostgresMigrationTarget(settings.migration_database_url)
    raise ConfigurationError(f"unknown migration target {target!r}")


def build_services(
    settings: Settings,
    *,
    store: BlockStore | None = None,
    queue: JobQueue | None = None,
    extractors: dict[str, Extractor[Any]] | None = None,
    cache: BlockCache | None = None,
) -> Services:
    if store is None or queue is None:
        if settings.database_url:
            store = store or PostgresBlockStore(
                settings.database_url, settings.database_pool_min_size, settings.database_pool_max_size
            )
            queue = queue or PostgresJobQueue(
                settings.database_url, settings.database_pool_min_size, settings.database_pool_max_size
            )
        else:
            logger.warning("PB_DATABASE_URL not set, blocks and jobs are kept in process memory")
            store = store or InMemoryBlockStore()
            queue = queue or InMemoryJobQueue()

    if cache is None and settings.redis_url:
        cache = BlockCache.from_url(
            settings.redis_url,
            ttl_seconds=settings.cache_ttl_seconds,
            key_prefix=settings.cache_key_prefix,
        )

    place_repo = PlaceBlockRepository(store)
    content_repo = ContentBlockRepository(store)
    stats_repo = BlockStatsRepository(store)
    pipeline = DataBlockPipeline(
        place_repo,
        content_repo,
        stats_repo,
        PipelineConfig(batch_size=settings.pipeline_batch_size, concurrency=settings.pipeline_concurrency),
    )
    optimizer = BlockOptimizer(place_repo, content_repo, store, cache)
    executor = CrawlJobExecutor(
        extractors if extractors is not None else build_extractors(settings),
        pipeline,
        optimizer,
        queue,
        lease_seconds=settings.claim_lease_seconds,
    )
    return Services(
        settings=settings,
        store=store,
        queue=queue,
        place_repo=place_repo,
        content_repo=content_repo,
        stats_repo=stats_repo,
        pipeline=pipeline,
        scheduler=CrawlScheduler(queue),
        optimizer=optimizer,
        monitor=BlockMonitor(
            stats_repo,
            queue,
            MonitorThresholds(
                min_avg_quality=settings.monitor_min_avg_quality,
                max_stale_ratio=settings.monitor_max_stale_ratio,
                max_recent_errors=settings.monitor_max_recent_errors,
            ),
        ),
        executor=executor,
        cache=cache,
    )
