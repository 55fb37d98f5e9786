from __future__ import annotations

from datetime import datetime
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, Field, model_validator

from placeblocks.schemas.places import (
    ContentSource,
    NormalizedContent,
    NormalizedPlace,
    PlaceCategory,
    PlaceSource,
)

BlockStatus = Literal["draft", "active", "archived", "deleted"]
QualityGrade = Literal["A", "B", "C", "D", "F"]
FreshnessLevel = Literal["fresh", "recent", "stale", "outdated"]
PlaceSortBy = Literal["created_at", "updated_at", "completeness", "quality_grade", "name"]
ContentSortBy = Literal["created_at", "published_at", "view_count", "like_count"]
SortDir = Literal["asc", "desc"]

BLOCK_STATUSES: tuple[str, ...] = ("draft", "active", "archived", "deleted")
QUALITY_GRADES: tuple[str, ...] = ("A", "B", "C", "D", "F")
FRESHNESS_LEVELS: tuple[str, ...] = ("fresh", "recent", "stale", "outdated")

T = TypeVar("T")


class PlaceBlockMetadata(BaseModel):
    source: PlaceSource
    source_id: str
    version: int = 1
    verified: bool = False
    verified_by: str | None = None
    verified_at: datetime | None = None
    enriched_from: list[str] = Field(default_factory=list)


class ContentAutoLink(BaseModel):
    place_id: str
    confidence: float
    method: Literal["keyword", "location", "manual"]


class ContentBlockMetadata(BaseModel):
    source: ContentSource
    source_id: str
    version: int = 1
    auto_linked_place: ContentAutoLink | None = None


class ContentAnalysis(BaseModel):
    sentiment: Literal["positive", "negative", "neutral"] | None = None
    sentiment_score: float | None = None
    extracted_keywords: list[str] = Field(default_factory=list)
    mentioned_places: list[str] = Field(default_factory=list)
    kids_friendly_score: int | None = None
    model_version: str | None = None
    analyzed_at: datetime | None = None


class PlaceBlock(BaseModel):
    id: str
    data: NormalizedPlace
    status: BlockStatus = "active"
    quality_grade: QualityGrade
    freshness: FreshnessLevel = "fresh"
    completeness: int = Field(ge=0, le=100)
    dedupe_hash: str
    related_content_ids: list[str] = Field(default_factory=list)
    search_keywords: list[str] = Field(default_factory=list)
    region_code: str = "99"
    metadata: PlaceBlockMetadata
    created_at: datetime
    updated_at: datetime
    last_crawled_at: datetime
    crawl_count: int = 1


class ContentBlock(BaseModel):
    id: str
    data: NormalizedContent
    status: BlockStatus = "active"
    quality_grade: QualityGrade
    freshness: FreshnessLevel = "fresh"
    completeness: int = Field(ge=0, le=100)
    related_place_id: str | None = None
    dedupe_hash: str
    analysis: ContentAnalysis | None = None
    metadata: ContentBlockMetadata
    created_at: datetime
    updated_at: datetime
    last_crawled_at: datetime
    crawl_count: int = 1


class GeoRadius(BaseModel):
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    radius_km: float = Field(gt=0)


class NumericRange(BaseModel):
    min: float = 0
    max: float = 100

    @model_validator(mode="after")
    def _ordered(self) -> "NumericRange":
        if self.min > self.max:
            raise ValueError("range min must not exceed max")
        return self


class DateRange(BaseModel):
    start: datetime
    end: datetime


class PlaceBlockFilter(BaseModel):
    status: list[BlockStatus] = Field(default_factory=list)
    categories: list[PlaceCategory] = Field(default_factory=list)
    region_codes: list[str] = Field(default_factory=list)
    quality_grades: list[QualityGrade] = Field(default_factory=list)
    freshness: list[FreshnessLevel] = Field(default_factory=list)
    sources: list[PlaceSource] = Field(default_factory=list)
    keyword: str | None = None
    location: GeoRadius | None = None
    completeness_range: NumericRange | None = None
    crawled_at_range: DateRange | None = None
    sort_by: PlaceSortBy = "updated_at"
    sort_dir: SortDir = "desc"
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=1000)

    def effective_statuses(self) -> list[str]:
        return list(self.status) if self.status else ["active"]


class ContentBlockFilter(BaseModel):
    status: list[BlockStatus] = Field(default_factory=list)
    sources: list[ContentSource] = Field(default_factory=list)
    related_place_id: str | None = None
    quality_grades: list[QualityGrade] = Field(default_factory=list)
    freshness: list[FreshnessLevel] = Field(default_factory=list)
    keyword: str | None = None
    sort_by: ContentSortBy = "published_at"
    sort_dir: SortDir = "desc"
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=1000)

    def effective_statuses(self) -> list[str]:
        return list(self.status) if self.status else ["active"]


class Page(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, items: list[T], *, total: int, page: int, page_size: int) -> "Page[T]":
        total_pages = (total + page_size - 1) // page_size if page_size > 0 else 0
        return cls(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class BulkUpsertResult(BaseModel):
    created: int = 0
    updated: int = 0
    skipped: int = 0


class BlockStats(BaseModel):
    total_places: int = 0
    total_contents: int = 0
    places_by_status: dict[str, int] = Field(default_factory=dict)
    contents_by_status: dict[str, int] = Field(default_factory=dict)
    places_by_category: dict[str, int] = Field(default_factory=dict)
    places_by_region: dict[str, int] = Field(default_factory=dict)
    contents_by_source: dict[str, int] = Field(default_factory=dict)
    quality_distribution: dict[str, int] = Field(default_factory=dict)
    freshness_distribution: dict[str, int] = Field(default_factory=dict)
    average_completeness: float = 0.0
    last_crawled_at: datetime | None = None
    last_updated: datetime
