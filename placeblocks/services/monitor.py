from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

from placeblocks.jobs.queue import JobQueue
from placeblocks.schemas.blocks import FRESHNESS_LEVELS, BlockStats
from placeblocks.services.quality import GRADE_SCORES
from placeblocks.services.repository import BlockStatsRepository

logger = logging.getLogger(__name__)

AlertLevel = Literal["info", "warning", "critical"]

RECENT_WINDOW = timedelta(hours=24)
REPORT_TOP_REGIONS = 10


@dataclass(slots=True)
class MonitorThresholds:
    min_avg_quality: float = 2.5
    max_stale_ratio: float = 0.3
    max_recent_errors: int = 100


@dataclass(slots=True)
class MonitoringMetrics:
    total_blocks: int = 0
    active_blocks: int = 0
    avg_quality_score: float = 0.0
    freshness_distribution: dict[str, int] = field(default_factory=dict)
    stale_ratio: float = 0.0
    crawl_success_rate: float | None = None
    last_crawl_at: datetime | None = None
    recent_errors: int = 0


@dataclass(slots=True)
class Alert:
    level: AlertLevel
    code: str
    message: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def average_quality_score(quality_distribution: dict[str, int]) -> float:
    total = sum(quality_distribution.values())
    if total == 0:
        return 0.0
    weighted = sum(GRADE_SCORES.get(grade, 0) * count for grade, count in quality_distribution.items())
    return round(weighted / total, 2)


def stale_ratio(stats: BlockStats) -> float:
    if stats.total_places == 0:
        return 0.0
    aged = stats.freshness_distribution.get("stale", 0) + stats.freshness_distribution.get("outdated", 0)
    return round(aged / stats.total_places, 4)


class BlockMonitor:
    def __init__(
        self,
        stats_repo: BlockStatsRepository,
        job_queue: JobQueue | None = None,
        thresholds: MonitorThresholds | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.stats_repo = stats_repo
        self.job_queue = job_queue
        self.thresholds = thresholds or MonitorThresholds()
        self._clock = clock or _utcnow

    async def get_metrics(self) -> MonitoringMetrics:
        stats = await self.stats_repo.get_stats(refresh=True)
        metrics = MonitoringMetrics(
            total_blocks=sum(stats.places_by_status.values()) + sum(stats.contents_by_status.values()),
            active_blocks=stats.total_places + stats.total_contents,
            avg_quality_score=average_quality_score(stats.quality_distribution),
            freshness_distribution={level: stats.freshness_distribution.get(level, 0) for level in FRESHNESS_LEVELS},
            stale_ratio=stale_ratio(stats),
            last_crawl_at=stats.last_crawled_at,
        )
        if self.job_queue is not None:
            outcomes = await self.job_queue.recent_outcomes(self._clock() - RECENT_WINDOW)
            finished = outcomes.completed + outcomes.failed
            metrics.crawl_success_rate = round(outcomes.completed / finished, 4) if finished else None
            metrics.recent_errors = outcomes.error_count
            if outcomes.last_completed_at is not None and (
                metrics.last_crawl_at is None or outcomes.last_completed_at > metrics.last_crawl_at
            ):
                metrics.last_crawl_at = outcomes.last_completed_at
        return metrics

    async def check_alerts(self) -> list[Alert]:
        return self.alerts_for(await self.get_metrics())

    def alerts_for(self, metrics: MonitoringMetrics) -> list[Alert]:
        alerts: list[Alert] = []
        if metrics.active_blocks and metrics.avg_quality_score < self.thresholds.min_avg_quality:
            alerts.append(
                Alert(
                    level="warning",
                    code="low_quality",
                    message=(
                        f"average quality score {metrics.avg_quality_score:.2f} is below "
                        f"{self.thresholds.min_avg_quality:.1f}"
                    ),
                )
            )
        if metrics.stale_ratio > self.thresholds.max_stale_ratio:
            alerts.append(
                Alert(
                    level="warning",
                    code="stale_blocks",
                    message=(
                        f"{metrics.stale_ratio:.0%} of active places are stale or outdated "
                        f"(limit {self.thresholds.max_stale_ratio:.0%})"
                    ),
                )
            )
        if metrics.recent_errors > self.thresholds.max_recent_errors:
            alerts.append(
                Alert(
                    level="critical",
                    code="crawl_errors",
                    message=(
                        f"{metrics.recent_errors} crawl errors in the last 24h "
                        f"(limit {self.thresholds.max_recent_errors})"
                    ),
                )
            )
        for alert in alerts:
            logger.warning("monitor alert level=%s code=%s: %s", alert.level, alert.code, alert.message)
        return alerts

    async def generate_report(self) -> str:
        stats = await self.stats_repo.get_stats()
        metrics = await self.get_metrics()
        alerts = self.alerts_for(metrics)

        lines = [
            "# Place block status report",
            "",
            f"Generated: {self._clock().isoformat()}",
            "",
            "## Overview",
            "",
            f"- Total blocks: {metrics.total_blocks}",
            f"- Active blocks: {metrics.active_blocks}",
            f"- Average quality: {metrics.avg_quality_score:.1f}/5.0",
            f"- Last crawl: {metrics.last_crawl_at.isoformat() if metrics.last_crawl_at else 'never'}",
        ]
        if metrics.crawl_success_rate is not None:
            lines.append(f"- Crawl success rate (24h): {metrics.crawl_success_rate:.0%}")

        lines += ["", "## Freshness", ""]
        lines += [f"- {level}: {count}" for level, count in metrics.freshness_distribution.items()]

        lines += ["", "## Categories", ""]
        categories = sorted(stats.places_by_category.items(), key=lambda item: (-item[1], item[0]))
        lines += [f"- {category}: {count}" for category, count in categories] or ["- none"]

        lines += ["", f"## Regions (top {REPORT_TOP_REGIONS})", ""]
        regions = sorted(stats.places_by_region.items(), key=lambda item: (-item[1], item[0]))[:REPORT_TOP_REGIONS]
        lines += [f"- {region}: {count}" for region, count in regions] or ["- none"]

        lines += ["", "## Alerts", ""]
        lines += [f"- [{alert.level.upper()}] {alert.message}" for alert in alerts] or ["- none"]
        return "\n".join(lines) + "\n"
