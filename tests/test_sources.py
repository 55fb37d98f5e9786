from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from placeblocks.core.errors import TransientNetworkError
from placeblocks.schemas.places import NormalizedContent, NormalizedPlace
from placeblocks.services.naver_blog import NaverBlogAdapter, content_id_for, parse_naver_date
from placeblocks.services.sources import Extractor, SourceApiError, SourceQuery, strip_html
from placeblocks.services.tour_api import TourApiAdapter, extract_url, infer_age_groups

TOUR_BASE = "https://tour.test/B551011/KorService1"
NAVER_BASE = "https://naver.test/v1/search"


def _tour_body(items: Any, *, total: int | None = None, code: str = "0000") -> dict[str, Any]:
    return {
        "response": {
            "header": {"resultCode": code, "resultMsg": "OK" if code == "0000" else "SERVICE_KEY_IS_NOT_REGISTERED"},
            "body": {"items": items, "numOfRows": 50, "pageNo": 1, "totalCount": total if total is not None else 0},
        }
    }


def _tour_item(content_id: str, **overrides: Any) -> dict[str, Any]:
    item = {
        "contentid": content_id,
        "title": f"어린이 체험관 {content_id}",
        "addr1": "서울특별시 종로구 세종대로 1",
        "mapx": "126.9780",
        "mapy": "37.5665",
        "areacode": "1",
        "cat2": "A0201",
    }
    item.update(overrides)
    return item


async def _no_sleep(_: float) -> None:
    return None


def _tour_extractor(handler, **kwargs: Any) -> Extractor[NormalizedPlace]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Extractor(
        TourApiAdapter(TOUR_BASE, "test-key"),
        NormalizedPlace,
        client=client,
        sleep=_no_sleep,
        **kwargs,
    )


def test_tour_normalize_maps_fields() -> None:
    adapter = TourApiAdapter(TOUR_BASE, "key")
    record = _tour_item(
        "1001",
        tel="02-111-2222",
        homepage='<a href="https://museum.example" target="_blank">museum</a>',
        overview="<p>유아&amp;어린이 전시</p>",
        firstimage="https://img.example/1.jpg",
        chkbabycarriage="대여 가능",
        parking="없음",
        usetime="09:00~18:00",
        restdate="매주 월요일",
        usefee="무료",
    )
    place = NormalizedPlace.model_validate(adapter.normalize(record, "2026-01-01T00:00:00+00:00"))

    assert place.id == "tour-1001"
    assert place.category == "museum"
    assert place.latitude == pytest.approx(37.5665)
    assert place.longitude == pytest.approx(126.978)
    assert place.homepage == "https://museum.example"
    assert place.description == "유아&어린이 전시"
    assert place.recommended_ages == ["toddler"]
    assert place.amenities is not None
    assert place.amenities.stroller_access is True
    assert place.amenities.parking is False
    assert place.operating_hours is not None
    assert place.operating_hours.closed_days == "매주 월요일"
    assert place.admission_fee is not None
    assert place.admission_fee.is_free is True
    assert place.raw_data["contentid"] == "1001"


def test_helpers() -> None:
    assert extract_url("https://plain.example") == "https://plain.example"
    assert extract_url("   ") is None
    assert infer_age_groups(None) == ["toddler", "child", "elementary"]
    assert infer_age_groups("영아 수유실") == ["infant"]
    assert strip_html("<b>키즈</b>&nbsp;카페") == "키즈 카페"


def test_extract_rejects_malformed_records_and_keeps_the_rest() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["serviceKey"] == "test-key"
        assert request.url.params["areaCode"] == "1"
        assert request.url.params["cat2"] == "A0201"
        items = [_tour_item("1"), _tour_item("2", mapy="north"), {"title": "no id"}, _tour_item("3", title="  ")]
        return httpx.Response(200, json=_tour_body({"item": items}, total=4))

    async def scenario() -> None:
        extractor = _tour_extractor(handler)
        page = await extractor.extract(SourceQuery(page=1, page_size=50, region_code="1", category="museum"))
        await extractor.client.aclose()

        assert [item.id for item in page.items] == ["tour-1"]
        assert page.fetched == 4
        assert page.rejected == 3
        assert page.total_count == 4
        assert not page.has_more

    asyncio.run(scenario())


def test_extract_wraps_single_item_and_handles_empty_page() -> None:
    bodies = [_tour_body({"item": _tour_item("9")}, total=1), _tour_body("", total=1)]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=bodies.pop(0))

    async def scenario() -> None:
        extractor = _tour_extractor(handler)
        first = await extractor.extract(SourceQuery(page=1))
        second = await extractor.extract(SourceQuery(page=2))
        await extractor.client.aclose()

        assert [item.id for item in first.items] == ["tour-9"]
        assert second.items == []
        assert second.fetched == 0

    asyncio.run(scenario())


def test_malformed_page_is_skipped_not_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    async def scenario() -> None:
        extractor = _tour_extractor(handler)
        page = await extractor.extract(SourceQuery(page=3))
        await extractor.client.aclose()

        assert page.malformed
        assert page.items == []
        assert page.has_more

    asyncio.run(scenario())


def test_api_error_code_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_tour_body("", code="0030"))

    async def scenario() -> None:
        extractor = _tour_extractor(handler)
        with pytest.raises(SourceApiError) as excinfo:
            await extractor.extract(SourceQuery())
        await extractor.client.aclose()
        assert excinfo.value.code == "0030"

    asyncio.run(scenario())


def test_retryable_status_is_retried_then_succeeds() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, json=_tour_body({"item": [_tour_item("1")]}, total=1))

    async def scenario() -> None:
        extractor = _tour_extractor(handler, max_retries=2)
        page = await extractor.extract(SourceQuery())
        await extractor.client.aclose()
        assert len(page.items) == 1

    asyncio.run(scenario())
    assert calls["count"] == 3


def test_exhausted_retries_raise_transient_error() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ConnectTimeout("timed out", request=request)

    async def scenario() -> None:
        extractor = _tour_extractor(handler, max_retries=2)
        with pytest.raises(TransientNetworkError):
            await extractor.extract(SourceQuery())
        await extractor.client.aclose()

    asyncio.run(scenario())
    assert calls["count"] == 3


def test_client_errors_are_not_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(401)

    async def scenario() -> None:
        extractor = _tour_extractor(handler, max_retries=2)
        with pytest.raises(httpx.HTTPStatusError):
            await extractor.extract(SourceQuery())
        await extractor.client.aclose()

    asyncio.run(scenario())
    assert calls["count"] == 1


def test_request_delay_is_applied_between_requests() -> None:
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_tour_body("", total=0))

    async def scenario() -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        extractor = Extractor(TourApiAdapter(TOUR_BASE, "k"), NormalizedPlace, client=client, sleep=record_sleep)
        await extractor.extract(SourceQuery(), request_delay_ms=500)
        await extractor.extract(SourceQuery(page=2), request_delay_ms=500)
        await client.aclose()

    asyncio.run(scenario())
    assert len(sleeps) == 1
    assert 0 < sleeps[0] <= 0.5


def test_naver_blog_search_and_normalize() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        seen["client_id"] = request.headers["X-Naver-Client-Id"]
        return httpx.Response(
            200,
            json={
                "total": 2,
                "items": [
                    {
                        "title": "<b>키즈카페</b> 다녀온 &quot;후기&quot;",
                        "link": "https://blog.naver.com/mom/1",
                        "description": "아이가 <b>좋아해요</b>",
                        "bloggername": "mom",
                        "bloggerlink": "https://blog.naver.com/mom",
                        "postdate": "20260105",
                    },
                    {"title": "링크 없음"},
                ],
            },
        )

    async def scenario() -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        extractor = Extractor(
            NaverBlogAdapter(NAVER_BASE, "id-1", "secret-1"), NormalizedContent, client=client, sleep=_no_sleep
        )
        page = await extractor.extract(SourceQuery(page=2, page_size=10, keyword="키즈카페 후기"))
        await client.aclose()

        assert seen["params"] == {"query": "키즈카페 후기", "display": "10", "start": "11", "sort": "sim"}
        assert seen["client_id"] == "id-1"
        (content,) = page.items
        assert content.title == '키즈카페 다녀온 "후기"'
        assert content.description == "아이가 좋아해요"
        assert content.published_at == "2026-01-05T00:00:00+00:00"
        assert content.id == content_id_for("https://blog.naver.com/mom/1")
        assert content.type == "blog_post"
        assert page.rejected == 1

    asyncio.run(scenario())


def test_naver_date_falls_back_to_now() -> None:
    assert parse_naver_date("20261301").endswith("+00:00")
    assert parse_naver_date(None).endswith("+00:00")
    assert content_id_for("https://a").startswith("naver-blog-")
