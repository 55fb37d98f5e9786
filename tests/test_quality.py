from __future__ import annotations

from datetime import datetime, timedelta, timezone

from placeblocks.schemas.places import NormalizedContent, NormalizedPlace
from placeblocks.services.quality import (
    DEDUPE_HASH_LENGTH,
    bounding_box,
    content_dedupe_hash,
    content_quality,
    freshness_for,
    grade_at_or_above,
    place_completeness,
    place_dedupe_hash,
    place_quality,
    place_region_code,
    place_search_keywords,
    quality_grade,
)


def _place(**overrides: object) -> NormalizedPlace:
    payload: dict[str, object] = {
        "id": "tour-1",
        "source": "TOUR_API",
        "name": "Kids Cafe A",
        "address": "서울특별시 강남구 테헤란로 1",
        "latitude": 37.5,
        "longitude": 127.03,
        "category": "kids_cafe",
    }
    payload.update(overrides)
    return NormalizedPlace.model_validate(payload)


def _full_place() -> NormalizedPlace:
    return _place(
        description="실내 놀이터",
        tel="02-000-0000",
        homepage="https://example.com",
        image_url="https://example.com/a.jpg",
        operating_hours={"weekday": "10:00-20:00"},
        admission_fee={"is_free": False, "child": 15000},
        recommended_ages=["toddler"],
    )


def test_place_hash_ignores_case_and_whitespace() -> None:
    first = _place(name="Kids Cafe A", address="서울특별시  강남구 테헤란로 1 ")
    second = _place(id="tour-2", name="  kids   cafe a", address="서울특별시 강남구 테헤란로 1")

    assert place_dedupe_hash(first) == place_dedupe_hash(second)
    assert len(place_dedupe_hash(first)) == DEDUPE_HASH_LENGTH


def test_place_hash_changes_with_coordinates() -> None:
    assert place_dedupe_hash(_place(latitude=37.5)) != place_dedupe_hash(_place(latitude=37.500002))
    assert place_dedupe_hash(_place(latitude=None)) != place_dedupe_hash(_place())


def test_place_hash_is_stable_for_rounding_noise() -> None:
    assert place_dedupe_hash(_place(latitude=37.5000000001)) == place_dedupe_hash(_place(latitude=37.5))


def test_content_hash_uses_source_and_url() -> None:
    base = {"id": "n-1", "source": "NAVER_BLOG", "type": "blog_post", "title": "후기", "source_url": "https://blog/1"}
    first = NormalizedContent.model_validate(base)
    renamed = NormalizedContent.model_validate({**base, "id": "n-2", "title": "다른 제목"})
    other_url = NormalizedContent.model_validate({**base, "source_url": "https://blog/2"})

    assert content_dedupe_hash(first) == content_dedupe_hash(renamed)
    assert content_dedupe_hash(first) != content_dedupe_hash(other_url)


def test_full_place_is_grade_a() -> None:
    place = _full_place()
    assert place_completeness(place) == 100
    assert place_quality(place) == (100, "A")


def test_missing_image_caps_grade_at_c() -> None:
    place = _full_place().model_copy(update={"image_url": None})
    completeness, grade = place_quality(place)
    assert completeness == 90
    assert grade == "C"


def test_empty_values_count_as_absent() -> None:
    place = _place(description="   ", recommended_ages=[], operating_hours={})
    assert place_completeness(place) == 50


def test_quality_grade_is_monotonic_in_completeness() -> None:
    order = "ABCDF"
    for has_image in (True, False):
        previous = None
        for completeness in range(0, 101):
            grade = quality_grade(completeness, has_image)
            if previous is not None:
                assert order.index(grade) <= order.index(previous)
            previous = grade


def test_grade_thresholds() -> None:
    assert grade_at_or_above("A", "C")
    assert grade_at_or_above("C", "C")
    assert not grade_at_or_above("D", "C")
    assert grade_at_or_above("F", "F")


def test_content_quality_uses_thumbnail_as_image() -> None:
    content = NormalizedContent.model_validate(
        {
            "id": "n-1",
            "source": "NAVER_BLOG",
            "type": "blog_post",
            "title": "키즈카페 후기",
            "source_url": "https://blog/1",
            "description": "좋아요",
            "thumbnail_url": "https://img/1.jpg",
            "author": "mom",
            "published_at": "2026-01-01T00:00:00+00:00",
            "view_count": 10,
            "tags": ["키즈카페"],
        }
    )
    assert content_quality(content) == (100, "A")


def test_region_code_prefers_area_code_then_address() -> None:
    assert place_region_code(_place(area_code="31")) == "31"
    assert place_region_code(_place()) == "1"
    assert place_region_code(_place(address="경기도 성남시 분당구")) == "31"
    assert place_region_code(_place(address="unknown street")) == "99"


def test_search_keywords_include_name_region_and_category() -> None:
    keywords = place_search_keywords(_place())
    assert "Kids" in keywords
    assert "Cafe" in keywords
    assert "A" not in keywords
    assert "강남구" in keywords
    assert "키즈카페" in keywords


def test_freshness_boundaries() -> None:
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert freshness_for(now - timedelta(days=6), now) == "fresh"
    assert freshness_for(now - timedelta(days=7), now) == "recent"
    assert freshness_for(now - timedelta(days=30), now) == "stale"
    assert freshness_for(now - timedelta(days=90), now) == "outdated"


def test_bounding_box_contains_center_and_scales_with_radius() -> None:
    small = bounding_box(37.5, 127.0, 1.0)
    large = bounding_box(37.5, 127.0, 10.0)

    assert small.contains(37.5, 127.0)
    assert not small.contains(37.6, 127.0)
    assert large.contains(37.55, 127.05)
    assert not small.contains(None, 127.0)
