from __future__ import annotations

import re
from typing import Any

import httpx

from placeblocks.services.sources import (
    MalformedPageError,
    RawPage,
    SourceApiError,
    SourceQuery,
    as_text,
    strip_html,
)

AREA_BASED_LIST_PATH = "/areaBasedList1"
DETAIL_URL_TEMPLATE = "https://www.visitkorea.or.kr/kfes/detail/detailL.do?cid={content_id}"
SUCCESS_CODE = "0000"

AREA_CODES: dict[str, str] = {
    "1": "서울",
    "2": "인천",
    "3": "대전",
    "4": "대구",
    "5": "광주",
    "6": "부산",
    "7": "울산",
    "8": "세종",
    "31": "경기",
    "32": "강원",
    "33": "충북",
    "34": "충남",
    "35": "경북",
    "36": "경남",
    "37": "전북",
    "38": "전남",
    "39": "제주",
}

CATEGORY_BY_CAT2: dict[str, str] = {
    "A0101": "nature_park",
    "A0102": "nature_park",
    "A0103": "nature_park",
    "A0104": "zoo_aquarium",
    "A0201": "museum",
    "A0202": "museum",
    "A0203": "museum",
    "A0204": "museum",
    "A0205": "amusement_park",
    "A0301": "amusement_park",
}

# cat2 code requested when a crawl is narrowed to one category
CATEGORY_QUERY_CODES: dict[str, str] = {
    "amusement_park": "A0205",
    "zoo_aquarium": "A0104",
    "museum": "A0201",
    "nature_park": "A0103",
}

DEFAULT_AGE_GROUPS = ["toddler", "child", "elementary"]

_HREF_RE = re.compile(r'href="([^"]+)"')


def category_for(cat2: Any) -> str:
    return CATEGORY_BY_CAT2.get(str(cat2 or ""), "other")


def extract_url(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    match = _HREF_RE.search(value)
    if match:
        return match.group(1)
    return strip_html(value)


def infer_age_groups(text: str | None) -> list[str]:
    if not text:
        return list(DEFAULT_AGE_GROUPS)
    ages: list[str] = []
    if any(marker in text for marker in ("영아", "0세", "1세", "2세")):
        ages.append("infant")
    if any(marker in text for marker in ("유아", "3세", "4세", "5세", "어린이")):
        ages.append("toddler")
    if any(marker in text for marker in ("아동", "초등", "키즈")):
        ages.extend(["child", "elementary"])
    return ages or list(DEFAULT_AGE_GROUPS)


def _available(value: Any) -> bool | None:
    text = as_text(value)
    if text is None:
        return None
    return "가능" in text or "있음" in text


def _coordinate(value: Any) -> float | None:
    text = as_text(value)
    if text is None:
        return None
    return float(text)


class TourApiAdapter:
    """Korea Tourism Organization area-based list endpoint."""

    name = "TOUR_API"

    def __init__(self, base_url: str, service_key: str | None, *, mobile_app: str = "placeblocks") -> None:
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.mobile_app = mobile_app

    async def fetch(self, client: httpx.AsyncClient, query: SourceQuery) -> Any:
        params: dict[str, Any] = {
            "serviceKey": self.service_key or "",
            "MobileOS": "ETC",
            "MobileApp": self.mobile_app,
            "_type": "json",
            "pageNo": query.page,
            "numOfRows": query.page_size,
            "arrange": "C",
        }
        if query.region_code:
            params["areaCode"] = query.region_code
        if query.category and query.category in CATEGORY_QUERY_CODES:
            params["cat2"] = CATEGORY_QUERY_CODES[query.category]

        response = await client.get(f"{self.base_url}{AREA_BASED_LIST_PATH}", params=params)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedPageError("response body is not JSON") from exc

    def parse_page(self, payload: Any) -> RawPage:
        if not isinstance(payload, dict) or not isinstance(payload.get("response"), dict):
            raise MalformedPageError("missing response envelope")
        envelope = payload["response"]
        header = envelope.get("header") or {}
        code = str(header.get("resultCode", "")) if isinstance(header, dict) else ""
        if code != SUCCESS_CODE:
            message = header.get("resultMsg", "unknown error") if isinstance(header, dict) else "unknown error"
            raise SourceApiError(self.name, code or None, str(message))

        body = envelope.get("body")
        if not isinstance(body, dict):
            raise MalformedPageError("missing response body")
        total_count = _as_int(body.get("totalCount"))

        items = body.get("items")
        # an empty page comes back as an empty string instead of an object
        if items in ("", None):
            return RawPage(records=[], total_count=total_count)
        if not isinstance(items, dict):
            raise MalformedPageError("items is not an object")
        records = items.get("item", [])
        if isinstance(records, dict):
            records = [records]
        if not isinstance(records, list):
            raise MalformedPageError("items.item is not a list")
        return RawPage(records=records, total_count=total_count)

    def normalize(self, record: Any, fetched_at: str) -> dict[str, Any]:
        content_id = as_text(record["contentid"])
        if content_id is None:
            raise ValueError("contentid is required")
        overview = strip_html(record.get("overview"))
        title = as_text(record.get("title")) or ""

        place: dict[str, Any] = {
            "id": f"tour-{content_id}",
            "source": self.name,
            "source_url": DETAIL_URL_TEMPLATE.format(content_id=content_id),
            "fetched_at": fetched_at,
            "name": title,
            "category": category_for(record.get("cat2")),
            "address": as_text(record.get("addr1")) or "",
            "address_detail": as_text(record.get("addr2")),
            "latitude": _coordinate(record.get("mapy")),
            "longitude": _coordinate(record.get("mapx")),
            "area_code": as_text(record.get("areacode")),
            "sigungu_code": as_text(record.get("sigungucode")),
            "tel": as_text(record.get("tel")),
            "homepage": extract_url(record.get("homepage")),
            "description": overview,
            "image_url": as_text(record.get("firstimage")),
            "thumbnail_url": as_text(record.get("firstimage2")),
            "recommended_ages": infer_age_groups(" ".join(filter(None, [title, overview]))),
            "raw_data": record,
        }

        stroller = _available(record.get("chkbabycarriage"))
        parking = _available(record.get("parking"))
        if stroller is not None or parking is not None:
            place["amenities"] = {"stroller_access": stroller, "parking": parking}

        usetime = as_text(record.get("usetime"))
        restdate = as_text(record.get("restdate"))
        if usetime or restdate:
            place["operating_hours"] = {"weekday": usetime, "closed_days": restdate}

        usefee = as_text(record.get("usefee"))
        if usefee:
            place["admission_fee"] = {"is_free": "무료" in usefee, "description": strip_html(usefee)}
        return place


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
