"""Normalized place and content payloads.

Payloads are stored as JSON inside blocks. Every payload carries a
``schema_version``; stored JSON is only turned back into models through
``load_place_payload`` / ``load_content_payload``, which walk the migration
table up to ``CURRENT_SCHEMA_VERSION`` before validating.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from placeblocks.core.errors import PayloadSchemaError

CURRENT_SCHEMA_VERSION = 2

PlaceCategory = Literal["amusement_park", "zoo_aquarium", "kids_cafe", "museum", "nature_park", "other"]
PlaceSource = Literal["TOUR_API", "PLAYGROUND_API", "KAKAO_LOCAL", "MANUAL"]
ContentSource = Literal["YOUTUBE", "NAVER_BLOG", "NAVER_CLIP"]
ContentType = Literal["video", "blog_post", "short_video"]
AgeGroup = Literal["infant", "toddler", "child", "elementary"]

PLACE_CATEGORIES: tuple[str, ...] = ("amusement_park", "zoo_aquarium", "kids_cafe", "museum", "nature_park", "other")
PLACE_SOURCES: tuple[str, ...] = ("TOUR_API", "PLAYGROUND_API", "KAKAO_LOCAL", "MANUAL")
CONTENT_SOURCES: tuple[str, ...] = ("YOUTUBE", "NAVER_BLOG", "NAVER_CLIP")

CONTENT_TYPE_BY_SOURCE: dict[str, str] = {
    "YOUTUBE": "video",
    "NAVER_BLOG": "blog_post",
    "NAVER_CLIP": "short_video",
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


class Amenities(BaseModel):
    stroller_access: bool | None = None
    nursing_room: bool | None = None
    parking: bool | None = None
    restaurant: bool | None = None
    restroom: bool | None = None
    wheelchair_access: bool | None = None

    def is_empty(self) -> bool:
        return all(value is None for value in self.model_dump().values())


class OperatingHours(BaseModel):
    weekday: str | None = None
    saturday: str | None = None
    sunday: str | None = None
    closed_days: str | None = None

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())


class AdmissionFee(BaseModel):
    is_free: bool
    adult: int | None = None
    child: int | None = None
    infant: int | None = None
    description: str | None = None


class NormalizedPlace(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: Literal[2] = CURRENT_SCHEMA_VERSION
    id: str = Field(min_length=1)
    source: PlaceSource
    source_url: str = ""
    fetched_at: str | None = None
    name: str
    category: PlaceCategory = "other"
    address: str = ""
    address_detail: str | None = None
    latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, ge=-180.0, le=180.0)
    area_code: str | None = None
    sigungu_code: str | None = None
    tel: str | None = None
    homepage: str | None = None
    description: str | None = None
    image_url: str | None = None
    thumbnail_url: str | None = None
    recommended_ages: list[AgeGroup] = Field(default_factory=list)
    amenities: Amenities | None = None
    operating_hours: OperatingHours | None = None
    admission_fee: AdmissionFee | None = None
    raw_data: Any = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped

    @field_validator("area_code", "sigungu_code", mode="before")
    @classmethod
    def _codes_as_text(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class NormalizedContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: Literal[2] = CURRENT_SCHEMA_VERSION
    id: str = Field(min_length=1)
    source: ContentSource
    type: ContentType
    source_url: str = Field(min_length=1)
    fetched_at: str | None = None
    title: str
    description: str | None = None
    thumbnail_url: str | None = None
    author: str | None = None
    author_url: str | None = None
    published_at: str | None = None
    view_count: int | None = Field(default=None, ge=0)
    like_count: int | None = Field(default=None, ge=0)
    duration: int | None = None
    tags: list[str] = Field(default_factory=list)
    raw_data: Any = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("title must not be blank")
        return stripped

    @model_validator(mode="after")
    def _type_matches_source(self) -> "NormalizedContent":
        expected = CONTENT_TYPE_BY_SOURCE[self.source]
        if self.type != expected:
            raise ValueError(f"{self.source} content must have type {expected}, got {self.type}")
        return self


def _snake_keys(value: Any) -> Any:
    if isinstance(value, dict):
        converted: dict[str, Any] = {}
        for key, item in value.items():
            snake = _CAMEL_RE.sub("_", key).lower() if isinstance(key, str) else key
            # raw_data is the untouched source record and keeps its own keys
            converted[snake] = item if snake == "raw_data" else _snake_keys(item)
        return converted
    if isinstance(value, list):
        return [_snake_keys(item) for item in value]
    return value


def _place_v1_to_v2(payload: dict[str, Any]) -> dict[str, Any]:
    upgraded = _snake_keys(payload)
    if upgraded.get("recommended_ages") is None:
        upgraded["recommended_ages"] = []
    upgraded["schema_version"] = 2
    return upgraded


def _content_v1_to_v2(payload: dict[str, Any]) -> dict[str, Any]:
    upgraded = _snake_keys(payload)
    if upgraded.get("tags") is None:
        upgraded["tags"] = []
    upgraded["schema_version"] = 2
    return upgraded


PLACE_PAYLOAD_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {1: _place_v1_to_v2}
CONTENT_PAYLOAD_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {1: _content_v1_to_v2}


def _payload_version(payload: dict[str, Any]) -> int:
    raw = payload.get("schema_version", payload.get("schemaVersion"))
    if raw is None:
        return 1
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise PayloadSchemaError(f"invalid schema_version: {raw!r}") from exc


def _upgrade(
    payload: dict[str, Any],
    migrations: dict[int, Callable[[dict[str, Any]], dict[str, Any]]],
) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise PayloadSchemaError("payload must be a JSON object")
    version = _payload_version(payload)
    if version > CURRENT_SCHEMA_VERSION:
        raise PayloadSchemaError(f"unsupported schema_version {version}")
    upgraded = dict(payload)
    while version < CURRENT_SCHEMA_VERSION:
        migrate = migrations.get(version)
        if migrate is None:
            raise PayloadSchemaError(f"no migration from schema_version {version}")
        upgraded = migrate(upgraded)
        version = _payload_version(upgraded)
    return upgraded


def upgrade_place_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return _upgrade(payload, PLACE_PAYLOAD_MIGRATIONS)


def upgrade_content_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return _upgrade(payload, CONTENT_PAYLOAD_MIGRATIONS)


def load_place_payload(payload: dict[str, Any]) -> NormalizedPlace:
    try:
        return NormalizedPlace.model_validate(upgrade_place_payload(payload))
    except PydanticValidationError as exc:
        raise PayloadSchemaError(str(exc)) from exc


def load_content_payload(payload: dict[str, Any]) -> NormalizedContent:
    try:
        return NormalizedContent.model_validate(upgrade_content_payload(payload))
    except PydanticValidationError as exc:
        raise PayloadSchemaError(str(exc)) from exc
