from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from placeblocks.services.quality import freshness_for

REFRESH_LEVELS = {"stale", "outdated"}


def refresh_recommendation(block: Any, *, now: datetime | None = None) -> dict[str, Any]:
    """Describe whether an active block is due for a re-crawl based on its last crawl time."""
    current = now or datetime.now(timezone.utc)
    last_crawled_at = _parse_timestamp(getattr(block, "last_crawled_at", None))
    status = getattr(block, "status", None)

    if last_crawled_at is None:
        return {
            "block_id": getattr(block, "id", None),
            "needs_refresh": False,
            "freshness": None,
            "reason": "missing_or_invalid_last_crawled_at",
        }

    freshness = freshness_for(last_crawled_at, current)
    needs_refresh = status == "active" and freshness in REFRESH_LEVELS
    if status != "active":
        reason = "block_not_active"
    elif needs_refresh:
        reason = f"{freshness}_threshold_exceeded"
    else:
        reason = "freshness_within_window"

    return {
        "block_id": getattr(block, "id", None),
        "needs_refresh": needs_refresh,
        "freshness": freshness,
        "reason": reason,
        "age_days": round(max(0.0, (current - last_crawled_at).total_seconds() / 86400.0), 3),
    }


def refresh_candidates(blocks: Iterable[Any], *, now: datetime | None = None) -> list[str]:
    current = now or datetime.now(timezone.utc)
    return [
        block.id
        for block in blocks
        if refresh_recommendation(block, now=current)["needs_refresh"]
    ]


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
