from __future__ import annotations

import asyncio
from typing import Any

import httpx

from placeblocks.container import Services, build_services
from placeblocks.core.config import Settings
from placeblocks.schemas.places import NormalizedContent, NormalizedPlace
from placeblocks.services.naver_blog import NaverBlogAdapter
from placeblocks.services.sources import Extractor
from placeblocks.services.tour_api import TourApiAdapter

VALID_PER_PAGE = 40
MALFORMED_PER_PAGE = 10
TOTAL_RECORDS = 2 * (VALID_PER_PAGE + MALFORMED_PER_PAGE)


async def _no_sleep(_: float) -> None:
    return None


def _settings() -> Settings:
    return Settings(database_url=None, redis_url=None, otel_enabled=False)


def _tour_page(page: int) -> dict[str, Any]:
    items: list[dict[str, Any]] = [
        {
            "contentid": f"{page}-{index}",
            "title": f"Play Place {page}-{index}",
            "addr1": f"서울특별시 마포구 월드컵로 {page * 100 + index}",
            "mapx": "126.9",
            "mapy": "37.55",
            "areacode": "1",
            "cat2": "A0205" if index % 2 else "A0201",
        }
        for index in range(VALID_PER_PAGE)
    ]
    items += [{"contentid": f"bad-{page}-{index}", "title": "broken", "mapy": "??"} for index in range(MALFORMED_PER_PAGE)]
    return {
        "response": {
            "header": {"resultCode": "0000", "resultMsg": "OK"},
            "body": {"items": {"item": items}, "totalCount": TOTAL_RECORDS, "pageNo": page},
        }
    }


class TourStub:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        page = int(request.url.params["pageNo"])
        if page > 2:
            return httpx.Response(200, json={"response": {"header": {"resultCode": "0000"}, "body": {"items": "", "totalCount": TOTAL_RECORDS}}})
        return httpx.Response(200, json=_tour_page(page))


def _services(handler) -> Services:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    extractor = Extractor(TourApiAdapter("https://tour.test", "key"), NormalizedPlace, client=client, sleep=_no_sleep)
    return build_services(_settings(), extractors={"TOUR_API": extractor})


def _place(name: str, **overrides: Any) -> NormalizedPlace:
    payload: dict[str, Any] = {"id": f"manual-{name}", "source": "MANUAL", "name": name}
    payload.update(overrides)
    return NormalizedPlace.model_validate(payload)


def test_region_crawl_rejects_malformed_records_without_failing() -> None:
    stub = TourStub()

    async def scenario() -> None:
        services = _services(stub)
        job_id = await services.scheduler.schedule_region_crawl(["1"], page_size=50)
        job = await services.build_worker_pool().run_once()

        assert job is not None and job.id == job_id
        assert job.status == "completed"
        assert job.progress.succeeded == 2 * VALID_PER_PAGE
        assert job.progress.failed == 0
        assert job.progress.percentage == 100.0
        assert job.result.new_blocks == 2 * VALID_PER_PAGE
        assert job.result.rejected_records == 2 * MALFORMED_PER_PAGE
        assert job.result.source_stats["TOUR_API"].total == TOTAL_RECORDS
        assert job.result.source_stats["TOUR_API"].rejected == 2 * MALFORMED_PER_PAGE
        assert job.result.details["unavailable_sources"] == ["PLAYGROUND_API"]
        assert len(services.store.places) == 2 * VALID_PER_PAGE

    asyncio.run(scenario())
    assert [request.url.params["pageNo"] for request in stub.requests] == ["1", "2"]
    assert all(request.url.params["areaCode"] == "1" for request in stub.requests)


def test_rerun_of_same_crawl_is_idempotent() -> None:
    async def scenario() -> None:
        services = _services(TourStub())
        pool = services.build_worker_pool()
        await services.scheduler.schedule_region_crawl(["1"], sources=["TOUR_API"])
        await pool.run_once()
        await services.scheduler.schedule_region_crawl(["1"], sources=["TOUR_API"])
        second = await pool.run_once()

        assert second.status == "completed"
        assert second.result.new_blocks == 0
        assert second.result.duplicates_skipped == 2 * VALID_PER_PAGE
        assert len(services.store.places) == 2 * VALID_PER_PAGE

    asyncio.run(scenario())


def test_incremental_crawl_stops_on_first_page_without_changes() -> None:
    stub = TourStub()

    async def scenario() -> None:
        services = _services(stub)
        pool = services.build_worker_pool()
        await services.scheduler.schedule_full_crawl(sources=["TOUR_API"])
        await pool.run_once()
        stub.requests.clear()

        await services.scheduler.schedule("INCREMENTAL", {"sources": ["TOUR_API"]})
        job = await pool.run_once()

        assert job.status == "completed"
        assert job.result.new_blocks == 0
        assert job.result.updated_blocks == 0
        assert job.result.duplicates_skipped == VALID_PER_PAGE

    asyncio.run(scenario())
    assert len(stub.requests) == 1


def test_category_crawl_filters_other_categories() -> None:
    async def scenario() -> None:
        services = _services(TourStub())
        await services.scheduler.schedule("CATEGORY_CRAWL", {"sources": ["TOUR_API"], "categories": ["amusement_park"]})
        job = await services.build_worker_pool().run_once()

        assert job.status == "completed"
        assert job.result.new_blocks == VALID_PER_PAGE
        assert job.result.details["filtered_out"] == VALID_PER_PAGE
        assert {block.data.category for block in services.store.places.values()} == {"amusement_park"}

    asyncio.run(scenario())


def test_dry_run_crawl_writes_nothing() -> None:
    async def scenario() -> None:
        services = _services(TourStub())
        await services.scheduler.schedule_full_crawl(sources=["TOUR_API"], dry_run=True)
        job = await services.build_worker_pool().run_once()

        assert job.result.new_blocks == 2 * VALID_PER_PAGE
        assert services.store.places == {}

    asyncio.run(scenario())


def test_cancel_during_fetch_stops_cooperatively() -> None:
    holder: dict[str, Any] = {}
    requests: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        await holder["services"].scheduler.cancel(holder["job_id"])
        return httpx.Response(200, json=_tour_page(int(request.url.params["pageNo"])))

    async def scenario() -> None:
        services = _services(handler)
        holder["services"] = services
        holder["job_id"] = await services.scheduler.schedule_full_crawl(sources=["TOUR_API"])
        job = await services.build_worker_pool().run_once()

        assert job.status == "cancelled"
        assert job.result is None
        assert services.store.places == {}

    asyncio.run(scenario())
    assert len(requests) == 1


def test_content_refresh_collects_blog_posts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        keyword = request.url.params["query"]
        return httpx.Response(
            200,
            json={
                "total": 2,
                "items": [
                    {"title": f"{keyword} 후기 {index}", "link": f"https://blog.naver.com/{keyword}/{index}", "postdate": "20260110"}
                    for index in range(2)
                ],
            },
        )

    async def scenario() -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        extractor = Extractor(NaverBlogAdapter("https://naver.test", "id", "secret"), NormalizedContent, client=client, sleep=_no_sleep)
        services = build_services(_settings(), extractors={"NAVER_BLOG": extractor})
        await services.scheduler.schedule_content_refresh(["키즈카페", "동물원"])
        job = await services.build_worker_pool().run_once()

        assert job.status == "completed"
        assert job.result.new_blocks == 4
        assert job.result.source_stats["NAVER_BLOG"].success == 4
        assert len(services.store.contents) == 4

    asyncio.run(scenario())


def test_quality_check_archives_listed_grades() -> None:
    async def scenario() -> None:
        services = build_services(_settings(), extractors={})
        for index in range(5):
            await services.place_repo.create(
                _place(f"Good {index}", address=f"서울특별시 중구 {index}", latitude=37.5, longitude=127.0)
            )
        for index in range(3):
            await services.place_repo.create(_place(f"Partial {index}", address=f"서울특별시 중구 {index + 10}"))
        for index in range(2):
            await services.place_repo.create(_place(f"Bare {index}"))

        await services.scheduler.schedule("QUALITY_CHECK", {"archive_grades": ["D", "F"]})
        job = await services.build_worker_pool().run_once()

        assert job.status == "completed"
        assert job.result.archived_blocks == 5
        remaining = await services.place_repo.search()
        assert remaining.total == 5
        assert {block.quality_grade for block in remaining.items} == {"C"}

    asyncio.run(scenario())


def test_dedup_scan_merges_blocks_with_legacy_hashes() -> None:
    async def scenario() -> None:
        services = build_services(_settings(), extractors={})
        keeper = await services.place_repo.create(_place("Kids Cafe A", address="서울특별시 강남구 1"))
        legacy = keeper.model_copy(
            update={
                "id": "legacy-1",
                "dedupe_hash": "0" * 64,
                "completeness": 15,
                "related_content_ids": ["content-9"],
            }
        )
        services.store.places[legacy.id] = legacy

        await services.scheduler.schedule("DEDUP_SCAN")
        job = await services.build_worker_pool().run_once()

        assert job.status == "completed"
        assert job.result.deleted_blocks == 1
        assert job.result.details["merged_groups"] == 1
        assert services.store.places["legacy-1"].status == "deleted"
        assert services.store.places[keeper.id].related_content_ids == ["content-9"]

    asyncio.run(scenario())
