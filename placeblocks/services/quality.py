"""Identity, completeness and grading for normalized records.

Everything here is pure: no network, no database, no clock unless one is passed in.
"""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from placeblocks.schemas.places import NormalizedContent, NormalizedPlace

DEDUPE_HASH_LENGTH = 64
HASH_SEPARATOR = "|"
KM_PER_DEGREE = 111.0

_WHITESPACE_RE = re.compile(r"\s+")
_REGION_TOKEN_RE = re.compile(r"[가-힣]+[시도군구]")
_PROVINCE_PREFIX_RE = re.compile(r"^([가-힣]+[시도])")

PLACE_FIELD_WEIGHTS: tuple[tuple[str, int], ...] = (
    ("name", 15),
    ("address", 15),
    ("latitude", 10),
    ("longitude", 10),
    ("description", 10),
    ("tel", 5),
    ("homepage", 5),
    ("image_url", 10),
    ("operating_hours", 10),
    ("admission_fee", 5),
    ("recommended_ages", 5),
)

CONTENT_FIELD_WEIGHTS: tuple[tuple[str, int], ...] = (
    ("title", 25),
    ("source_url", 15),
    ("description", 15),
    ("thumbnail_url", 15),
    ("author", 10),
    ("published_at", 10),
    ("view_count", 5),
    ("tags", 5),
)

GRADE_ORDER: tuple[str, ...] = ("A", "B", "C", "D", "F")
GRADE_SCORES: dict[str, int] = {"A": 5, "B": 4, "C": 3, "D": 2, "F": 1}

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "amusement_park": ("놀이공원", "테마파크", "어트랙션"),
    "zoo_aquarium": ("동물원", "수족관", "아쿠아리움"),
    "kids_cafe": ("키즈카페", "실내놀이터", "키즈존"),
    "museum": ("박물관", "체험관", "전시관"),
    "nature_park": ("공원", "자연", "산책"),
}

PROVINCE_REGION_CODES: dict[str, str] = {
    "서울시": "1",
    "서울특별시": "1",
    "인천시": "2",
    "인천광역시": "2",
    "대전시": "3",
    "대전광역시": "3",
    "대구시": "4",
    "대구광역시": "4",
    "광주시": "5",
    "광주광역시": "5",
    "부산시": "6",
    "부산광역시": "6",
    "울산시": "7",
    "울산광역시": "7",
    "세종시": "8",
    "세종특별자치시": "8",
    "경기도": "31",
    "강원도": "32",
    "충청북도": "33",
    "충청남도": "34",
    "경상북도": "35",
    "경상남도": "36",
    "전라북도": "37",
    "전라남도": "38",
    "제주도": "39",
    "제주특별자치도": "39",
}
UNKNOWN_REGION_CODE = "99"

FRESH_WITHIN = timedelta(days=7)
RECENT_WITHIN = timedelta(days=30)
STALE_WITHIN = timedelta(days=90)


@dataclass(slots=True, frozen=True)
class BoundingBox:
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    def contains(self, latitude: float | None, longitude: float | None) -> bool:
        if latitude is None or longitude is None:
            return False
        return (
            self.min_latitude <= latitude <= self.max_latitude
            and self.min_longitude <= longitude <= self.max_longitude
        )


def _normalize_text(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value).strip().lower()


def _coordinate(value: float | None) -> str:
    if value is None:
        return ""
    # + 0.0 folds -0.0 into 0.0 so both render the same
    return f"{round(value, 6) + 0.0:.6f}"


def _digest(parts: list[str]) -> str:
    joined = HASH_SEPARATOR.join(parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:DEDUPE_HASH_LENGTH]


def place_dedupe_hash(place: NormalizedPlace) -> str:
    return _digest(
        [
            _normalize_text(place.name),
            _normalize_text(place.address),
            _coordinate(place.latitude),
            _coordinate(place.longitude),
        ]
    )


def content_dedupe_hash(content: NormalizedContent) -> str:
    return _digest([content.source, content.source_url.strip()])


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) > 0
    is_empty = getattr(value, "is_empty", None)
    if callable(is_empty):
        return not is_empty()
    return True


def _weighted_presence(record: Any, weights: tuple[tuple[str, int], ...]) -> int:
    score = sum(weight for field, weight in weights if _is_present(getattr(record, field, None)))
    return min(100, score)


def place_completeness(place: NormalizedPlace) -> int:
    return _weighted_presence(place, PLACE_FIELD_WEIGHTS)


def content_completeness(content: NormalizedContent) -> int:
    return _weighted_presence(content, CONTENT_FIELD_WEIGHTS)


def quality_grade(completeness: int, has_image: bool) -> str:
    if completeness >= 90 and has_image:
        return "A"
    if completeness >= 70 and has_image:
        return "B"
    if completeness >= 50:
        return "C"
    if completeness >= 30:
        return "D"
    return "F"


def place_quality(place: NormalizedPlace) -> tuple[int, str]:
    completeness = place_completeness(place)
    return completeness, quality_grade(completeness, _is_present(place.image_url))


def content_quality(content: NormalizedContent) -> tuple[int, str]:
    completeness = content_completeness(content)
    return completeness, quality_grade(completeness, _is_present(content.thumbnail_url))


def grade_rank(grade: str) -> int:
    return GRADE_ORDER.index(grade)


def grade_at_or_above(grade: str, threshold: str) -> bool:
    return grade_rank(grade) <= grade_rank(threshold)


def place_search_keywords(place: NormalizedPlace) -> list[str]:
    keywords: dict[str, None] = {}
    for token in place.name.split():
        if len(token) >= 2:
            keywords[token] = None
    if place.address:
        for region in _REGION_TOKEN_RE.findall(place.address):
            keywords[region] = None
    for keyword in CATEGORY_KEYWORDS.get(place.category, ()):
        keywords[keyword] = None
    return list(keywords)


def place_region_code(place: NormalizedPlace) -> str:
    if place.area_code:
        return place.area_code
    match = _PROVINCE_PREFIX_RE.match(place.address.strip()) if place.address else None
    if match:
        return PROVINCE_REGION_CODES.get(match.group(1), UNKNOWN_REGION_CODE)
    return UNKNOWN_REGION_CODE


def freshness_for(last_crawled_at: datetime, now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    if last_crawled_at.tzinfo is None:
        last_crawled_at = last_crawled_at.replace(tzinfo=timezone.utc)
    age = current - last_crawled_at
    if age < FRESH_WITHIN:
        return "fresh"
    if age < RECENT_WITHIN:
        return "recent"
    if age < STALE_WITHIN:
        return "stale"
    return "outdated"


def bounding_box(latitude: float, longitude: float, radius_km: float) -> BoundingBox:
    """Approximate a radius search with a lat/lng box.

    Uses a flat degrees-per-km conversion scaled by cos(latitude). This is not
    geodesically exact and widens badly near the poles; callers get a superset
    of the true circle at Korean latitudes.
    """
    latitude_delta = radius_km / KM_PER_DEGREE
    cos_lat = math.cos(math.radians(latitude))
    longitude_delta = radius_km / (KM_PER_DEGREE * cos_lat) if cos_lat > 1e-9 else 180.0
    return BoundingBox(
        min_latitude=latitude - latitude_delta,
        max_latitude=latitude + latitude_delta,
        min_longitude=longitude - longitude_delta,
        max_longitude=longitude + longitude_delta,
    )
