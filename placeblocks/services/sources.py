"""Extract boundary for external place and content sources.

Adapters know a source's wire format; ``Extractor`` owns everything around
them: the inter-request delay, bounded retry of network failures, and the
strict parse that turns each raw record into a validated model or rejects it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html import unescape
from typing import Any, Generic, Protocol, TypeVar

import httpx
from pydantic import BaseModel

from placeblocks.core.errors import PlaceBlocksError, TransientNetworkError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

_TAG_RE = re.compile(r"<[^>]*>")

RecordT = TypeVar("RecordT", bound=BaseModel)


class MalformedPageError(ValueError):
    """Raised by adapters when a response body does not have the expected shape."""


class SourceApiError(PlaceBlocksError):
    """Raised when a source answers with an application-level error code."""

    def __init__(self, source: str, code: str | None, message: str) -> None:
        super().__init__(f"{source} returned error {code}: {message}")
        self.source = source
        self.code = code


@dataclass(slots=True)
class SourceQuery:
    page: int = 1
    page_size: int = 50
    region_code: str | None = None
    category: str | None = None
    keyword: str | None = None


@dataclass(slots=True)
class RawPage:
    records: list[Any]
    total_count: int | None = None


@dataclass(slots=True)
class SourcePage(Generic[RecordT]):
    source: str
    page: int
    page_size: int
    items: list[RecordT] = field(default_factory=list)
    fetched: int = 0
    rejected: int = 0
    total_count: int | None = None
    malformed: bool = False

    @property
    def has_more(self) -> bool:
        if self.malformed:
            return True
        if self.total_count is not None:
            return self.page * self.page_size < self.total_count
        return self.fetched >= self.page_size


class SourceAdapter(Protocol):
    name: str

    async def fetch(self, client: httpx.AsyncClient, query: SourceQuery) -> Any: ...

    def parse_page(self, payload: Any) -> RawPage: ...

    def normalize(self, record: Any, fetched_at: str) -> dict[str, Any]: ...


def strip_html(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = unescape(_TAG_RE.sub("", value)).replace("\xa0", " ").strip()
    return cleaned or None


def as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


class Extractor(Generic[RecordT]):
    def __init__(
        self,
        adapter: SourceAdapter,
        model: type[RecordT],
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.adapter = adapter
        self.model = model
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, max_retries)
        self.retry_delay_seconds = max(0.0, retry_delay_seconds)
        self._sleep = sleep
        self._last_request_at: float | None = None

    @property
    def name(self) -> str:
        return self.adapter.name

    async def extract(self, query: SourceQuery, *, request_delay_ms: int = 0) -> SourcePage[RecordT]:
        await self._respect_delay(request_delay_ms)
        payload = await self._fetch_with_retry(query)
        page: SourcePage[RecordT] = SourcePage(source=self.name, page=query.page, page_size=query.page_size)
        try:
            raw = self.adapter.parse_page(payload)
        except MalformedPageError as exc:
            logger.warning("skipping malformed %s page=%s: %s", self.name, query.page, exc)
            page.malformed = True
            return page

        page.total_count = raw.total_count
        page.fetched = len(raw.records)
        fetched_at = datetime.now(timezone.utc).isoformat()
        for record in raw.records:
            try:
                page.items.append(self.model.model_validate(self.adapter.normalize(record, fetched_at)))
            except (ValueError, TypeError, KeyError, AttributeError) as exc:
                page.rejected += 1
                logger.warning("rejected malformed %s record on page=%s: %s", self.name, query.page, _short(exc))
        return page

    async def _respect_delay(self, request_delay_ms: int) -> None:
        now = time.monotonic()
        if self._last_request_at is not None and request_delay_ms > 0:
            remaining = request_delay_ms / 1000.0 - (now - self._last_request_at)
            if remaining > 0:
                await self._sleep(remaining)
        self._last_request_at = time.monotonic()

    async def _fetch_with_retry(self, query: SourceQuery) -> Any:
        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 2):
            try:
                if self.client is not None:
                    return await self.adapter.fetch(self.client, query)
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                    return await self.adapter.fetch(temp_client, query)
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code not in RETRYABLE_STATUS_CODES:
                    raise
                last_error = exc
            except httpx.TransportError as exc:
                last_error = exc
            logger.warning("%s request attempt=%s failed: %s", self.name, attempt, last_error)
            if attempt <= self.max_retries and self.retry_delay_seconds > 0:
                await self._sleep(self.retry_delay_seconds * attempt)
        raise TransientNetworkError(
            f"{self.name} unreachable after {self.max_retries + 1} attempts: {last_error}"
        ) from last_error


def _short(exc: Exception) -> str:
    text = str(exc).splitlines()
    return text[0] if text else exc.__class__.__name__
