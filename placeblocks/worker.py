from __future__ import annotations

import asyncio
import logging
import signal

from placeblocks.container import build_services
from placeblocks.core.config import get_settings
from placeblocks.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, component="worker")
    services = build_services(settings)
    pool = services.build_worker_pool()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(pool.stop()))
        except NotImplementedError:  # pragma: no cover - platform specific
            pass

    logger.info(
        "worker pool starting id=%s concurrency=%s sources=%s",
        settings.worker_id,
        settings.worker_concurrency,
        ",".join(sorted(services.executor.extractors)) or "-",
    )
    try:
        await pool.run()
    finally:
        await services.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
