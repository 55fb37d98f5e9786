from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from placeblocks.schemas.blocks import QualityGrade
from placeblocks.schemas.places import PlaceCategory

CrawlJobType = Literal[
    "FULL_CRAWL",
    "INCREMENTAL",
    "REGION_CRAWL",
    "CATEGORY_CRAWL",
    "CONTENT_REFRESH",
    "QUALITY_CHECK",
    "DEDUP_SCAN",
]
CrawlJobStatus = Literal["pending", "running", "completed", "failed", "cancelled", "paused"]
CrawlSourceName = Literal["TOUR_API", "PLAYGROUND_API", "KAKAO_LOCAL", "YOUTUBE", "NAVER_BLOG", "NAVER_CLIP"]

CRAWL_JOB_TYPES: tuple[str, ...] = (
    "FULL_CRAWL",
    "INCREMENTAL",
    "REGION_CRAWL",
    "CATEGORY_CRAWL",
    "CONTENT_REFRESH",
    "QUALITY_CHECK",
    "DEDUP_SCAN",
)
CRAWL_JOB_STATUSES: tuple[str, ...] = ("pending", "running", "completed", "failed", "cancelled", "paused")
PLACE_CRAWL_TYPES = {"FULL_CRAWL", "INCREMENTAL", "REGION_CRAWL", "CATEGORY_CRAWL"}
PLACE_SOURCE_NAMES = {"TOUR_API", "PLAYGROUND_API", "KAKAO_LOCAL"}
CONTENT_SOURCE_NAMES = {"YOUTUBE", "NAVER_BLOG", "NAVER_CLIP"}

DEFAULT_PRIORITY_BY_TYPE: dict[str, int] = {
    "FULL_CRAWL": 3,
    "INCREMENTAL": 4,
    "REGION_CRAWL": 5,
    "CATEGORY_CRAWL": 5,
    "CONTENT_REFRESH": 6,
    "QUALITY_CHECK": 2,
    "DEDUP_SCAN": 2,
}


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay_seconds: float = Field(default=5.0, ge=0)
    max_delay_seconds: float = Field(default=600.0, ge=0)


class CrawlJobConfig(BaseModel):
    sources: list[CrawlSourceName] = Field(default_factory=lambda: ["TOUR_API", "PLAYGROUND_API"])
    region_codes: list[str] = Field(default_factory=list)
    categories: list[PlaceCategory] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    page_size: int = Field(default=50, ge=1, le=500)
    max_pages: int = Field(default=100, ge=1, le=10_000)
    request_delay_ms: int = Field(default=500, ge=0, le=60_000)
    concurrency: int = Field(default=2, ge=1, le=32)
    retry_on_fail: bool = True
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    skip_duplicates: bool = True
    update_existing: bool = False
    quality_threshold: QualityGrade = "F"
    archive_grades: list[QualityGrade] = Field(default_factory=list)
    dry_run: bool = False

    def problems_for(self, job_type: str) -> list[str]:
        problems: list[str] = []
        place_sources = [source for source in self.sources if source in PLACE_SOURCE_NAMES]
        content_sources = [source for source in self.sources if source in CONTENT_SOURCE_NAMES]
        if job_type in PLACE_CRAWL_TYPES and not place_sources:
            problems.append(f"{job_type} requires at least one place source")
        if job_type == "REGION_CRAWL" and not self.region_codes:
            problems.append("REGION_CRAWL requires region_codes")
        if job_type == "CATEGORY_CRAWL" and not self.categories:
            problems.append("CATEGORY_CRAWL requires categories")
        if job_type == "CONTENT_REFRESH" and not content_sources:
            problems.append("CONTENT_REFRESH requires at least one content source")
        if any(not code.strip() for code in self.region_codes):
            problems.append("region_codes must not contain blank values")
        return problems


class CrawlProgress(BaseModel):
    total_estimated: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    current_source: str | None = None
    current_page: int | None = None
    percentage: float = 0.0


class SourceStats(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0
    rejected: int = 0


class CrawlResult(BaseModel):
    new_blocks: int = 0
    updated_blocks: int = 0
    deleted_blocks: int = 0
    archived_blocks: int = 0
    duplicates_skipped: int = 0
    rejected_records: int = 0
    source_stats: dict[str, SourceStats] = Field(default_factory=dict)
    duration_ms: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class CrawlError(BaseModel):
    code: str
    message: str
    retryable: bool = False
    failed_items: list[dict[str, Any]] = Field(default_factory=list)


class CrawlJob(BaseModel):
    id: str
    type: CrawlJobType
    status: CrawlJobStatus = "pending"
    priority: int = Field(default=5, ge=1, le=10)
    config: CrawlJobConfig
    progress: CrawlProgress = Field(default_factory=CrawlProgress)
    result: CrawlResult | None = None
    error: CrawlError | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    scheduled_at: datetime | None = None
    next_run_at: datetime
    lease_expires_at: datetime | None = None
    worker_id: str | None = None
    retry_count: int = 0
    max_retries: int = 3


class QueueStats(BaseModel):
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    paused: int = 0
    due: int = 0


class JobOutcomes(BaseModel):
    completed: int = 0
    failed: int = 0
    error_count: int = 0
    last_completed_at: datetime | None = None


class ScheduleRequest(BaseModel):
    type: CrawlJobType
    config: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = Field(default=None, ge=1, le=10)
    delay_seconds: float | None = Field(default=None, ge=0)


class ScheduleResponse(BaseModel):
    job_id: str
    status: CrawlJobStatus
