from __future__ import annotations

import base64
import re
from datetime import datetime, timezone
from typing import Any

import httpx

from placeblocks.services.sources import MalformedPageError, RawPage, SourceQuery, as_text, strip_html

BLOG_SEARCH_PATH = "/blog.json"
MAX_DISPLAY = 100
MAX_START = 1000

KEYWORD_PRESETS: dict[str, str] = {
    "kids_cafe": "키즈카페 후기",
    "amusement_park": "놀이공원 아이 후기",
    "zoo": "동물원 아이랑",
    "museum": "어린이박물관 후기",
    "park": "아이랑 공원 나들이",
}

_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")


def parse_naver_date(value: Any) -> str:
    """Turn Naver's ``YYYYMMDD`` postdate into an ISO timestamp, falling back to now."""
    text = as_text(value)
    match = _DATE_RE.match(text or "")
    if match:
        try:
            year, month, day = (int(part) for part in match.groups())
            return datetime(year, month, day, tzinfo=timezone.utc).isoformat()
        except ValueError:
            pass
    return datetime.now(timezone.utc).isoformat()


def content_id_for(link: str) -> str:
    encoded = base64.b64encode(link.encode("utf-8")).decode("ascii")
    return f"naver-blog-{encoded[:20]}"


class NaverBlogAdapter:
    name = "NAVER_BLOG"

    def __init__(self, base_url: str, client_id: str | None, client_secret: str | None) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret

    async def fetch(self, client: httpx.AsyncClient, query: SourceQuery) -> Any:
        if not query.keyword:
            raise ValueError("Naver blog search requires a keyword")
        display = max(1, min(query.page_size, MAX_DISPLAY))
        start = min((query.page - 1) * display + 1, MAX_START)
        response = await client.get(
            f"{self.base_url}{BLOG_SEARCH_PATH}",
            params={"query": query.keyword, "display": display, "start": start, "sort": "sim"},
            headers={
                "X-Naver-Client-Id": self.client_id or "",
                "X-Naver-Client-Secret": self.client_secret or "",
            },
        )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedPageError("response body is not JSON") from exc

    def parse_page(self, payload: Any) -> RawPage:
        if not isinstance(payload, dict):
            raise MalformedPageError("response is not an object")
        items = payload.get("items")
        if not isinstance(items, list):
            raise MalformedPageError("items is not a list")
        total = payload.get("total")
        return RawPage(records=items, total_count=int(total) if isinstance(total, int) else None)

    def normalize(self, record: Any, fetched_at: str) -> dict[str, Any]:
        link = as_text(record["link"])
        if link is None:
            raise ValueError("link is required")
        return {
            "id": content_id_for(link),
            "source": self.name,
            "type": "blog_post",
            "source_url": link,
            "fetched_at": fetched_at,
            "title": strip_html(record.get("title")) or "",
            "description": strip_html(record.get("description")),
            "author": as_text(record.get("bloggername")),
            "author_url": as_text(record.get("bloggerlink")),
            "published_at": parse_naver_date(record.get("postdate")),
            "raw_data": record,
        }
