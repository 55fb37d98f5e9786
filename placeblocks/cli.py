#!/usr/bin/env python3
"""Operator commands for the place block pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from dataclasses import asdict
from typing import Any

from placeblocks.container import Services, build_services
from placeblocks.core.config import get_settings
from placeblocks.core.errors import PlaceBlocksError, ValidationError
from placeblocks.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from placeblocks.schemas.jobs import CRAWL_JOB_TYPES
from placeblocks.services.migrator import MigrationConfig


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


async def _schedule(services: Services, args: argparse.Namespace) -> int:
    try:
        config: dict[str, Any] = json.loads(args.config) if args.config else {}
    except json.JSONDecodeError as exc:
        raise ValidationError(f"--config is not valid JSON: {exc}") from exc
    if args.regions:
        config["region_codes"] = _split(args.regions)
    if args.keywords:
        config["keywords"] = _split(args.keywords)
    if args.sources:
        config["sources"] = _split(args.sources)
    job_id = await services.scheduler.schedule(args.type, config, priority=args.priority, delay_seconds=args.delay)
    _emit({"job_id": job_id, "status": "pending"})
    return 0


async def _status(services: Services, args: argparse.Namespace) -> int:
    job = await services.scheduler.status(args.job_id)
    _emit(job.model_dump(mode="json"))
    return 0


async def _cancel(services: Services, args: argparse.Namespace) -> int:
    job = await services.scheduler.cancel(args.job_id)
    _emit({"job_id": job.id, "status": job.status})
    return 0


async def _stats(services: Services, args: argparse.Namespace) -> int:
    blocks = await services.stats_repo.refresh_stats()
    queue = await services.scheduler.queue_stats()
    _emit({"blocks": blocks.model_dump(mode="json"), "queue": queue.model_dump()})
    return 0


async def _optimize(services: Services, args: argparse.Namespace) -> int:
    report: dict[str, Any] = {}
    quality = await services.optimizer.optimize_by_quality(_split(args.archive_grades), refresh_stale=args.refresh_stale)
    report["quality"] = asdict(quality)
    if args.dedup:
        report["dedup"] = asdict(await services.optimizer.deduplicate_blocks())
    if args.analyze:
        report["indexes"] = asdict(await services.optimizer.optimize_indexes())
    if args.warm_cache:
        report["cache"] = asdict(await services.optimizer.warm_cache())
    _emit(report)
    return 0


async def _migrate(services: Services, args: argparse.Namespace) -> int:
    migrator = services.build_migrator(
        MigrationConfig(
            target=args.target or services.settings.migration_target,
            batch_size=args.batch_size or services.settings.migration_batch_size,
            validate_after_migration=not args.no_validate,
            create_rollback_point=not args.no_checkpoint,
            dry_run=not args.execute,
        )
    )
    try:
        if args.kind == "places":
            result = await migrator.migrate_places(_split(args.regions) or None, _split(args.categories) or None)
        else:
            result = await migrator.migrate_contents(_split(args.sources) or None)
    finally:
        await migrator.target.close()
    _emit(result.as_dict())
    return 0 if result.error is None and (result.validated or result.dry_run or args.no_validate) else 1


async def _rollback(services: Services, args: argparse.Namespace) -> int:
    migrator = services.build_migrator(MigrationConfig(target=args.target or services.settings.migration_target))
    try:
        result = await migrator.rollback(args.checkpoint_id)
    finally:
        await migrator.target.close()
    _emit(asdict(result))
    return 0 if result.error is None else 1


async def _report(services: Services, args: argparse.Namespace) -> int:
    print(await services.monitor.generate_report(), end="")
    return 0


async def _init_db(services: Services, args: argparse.Namespace) -> int:
    await services.ensure_schema()
    _emit({"status": "ok"})
    return 0


COMMANDS = {
    "schedule": _schedule,
    "status": _status,
    "cancel": _cancel,
    "stats": _stats,
    "optimize": _optimize,
    "migrate": _migrate,
    "rollback": _rollback,
    "report": _report,
    "init-db": _init_db,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="placeblocks", description="Operate the place block pipeline.")
    commands = parser.add_subparsers(dest="command", required=True)

    schedule = commands.add_parser("schedule", help="Enqueue a crawl job")
    schedule.add_argument("type", choices=CRAWL_JOB_TYPES)
    schedule.add_argument("--config", help="Job config as a JSON object")
    schedule.add_argument("--regions", help="Comma separated region codes")
    schedule.add_argument("--keywords", help="Comma separated search keywords")
    schedule.add_argument("--sources", help="Comma separated source names")
    schedule.add_argument("--priority", type=int)
    schedule.add_argument("--delay", type=float, help="Seconds before the job becomes due")

    for name in ("status", "cancel"):
        command = commands.add_parser(name, help=f"{name.capitalize()} a job")
        command.add_argument("job_id")

    commands.add_parser("stats", help="Print block and queue statistics")

    optimize = commands.add_parser("optimize", help="Run optimizer passes")
    optimize.add_argument("--archive-grades", help="Comma separated grades to archive, e.g. D,F")
    optimize.add_argument("--refresh-stale", action="store_true")
    optimize.add_argument("--dedup", action="store_true")
    optimize.add_argument("--analyze", action="store_true")
    optimize.add_argument("--warm-cache", action="store_true")

    migrate = commands.add_parser("migrate", help="Copy blocks to the migration target (dry run unless --execute)")
    migrate.add_argument("kind", choices=["places", "contents"])
    migrate.add_argument("--target", choices=["object_storage", "postgres"])
    migrate.add_argument("--batch-size", type=int)
    migrate.add_argument("--regions")
    migrate.add_argument("--categories")
    migrate.add_argument("--sources")
    migrate.add_argument("--execute", action="store_true")
    migrate.add_argument("--no-validate", action="store_true")
    migrate.add_argument("--no-checkpoint", action="store_true")

    rollback = commands.add_parser("rollback", help="Remove everything a migration checkpoint wrote")
    rollback.add_argument("checkpoint_id")
    rollback.add_argument("--target", choices=["object_storage", "postgres"])

    commands.add_parser("report", help="Print the markdown status report")
    commands.add_parser("init-db", help="Create tables and indexes")
    return parser


async def run(argv: Sequence[str] | None = None, *, services: Services | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    owned = services is None
    resolved = services or build_services(settings)
    try:
        return await COMMANDS[args.command](resolved, args)
    except PlaceBlocksError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    finally:
        if owned:
            await resolved.close()


def main() -> None:
    configure_logging()
    runtime = setup_telemetry(get_settings(), component="cli")
    try:
        code = asyncio.run(run())
    finally:
        shutdown_telemetry(runtime)
    sys.exit(code)


if __name__ == "__main__":
    main()
