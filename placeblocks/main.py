from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from placeblocks.api.router import api_router
from placeblocks.container import Services, build_services
from placeblocks.core.config import get_settings
from placeblocks.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry

logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or build_services(settings)
        try:
            yield
        finally:
            shutdown_telemetry(telemetry_runtime)
            if owned:
                # pools and the redis client belong to this app only when it built them
                await app.state.services.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, component="api", app=app)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    app.include_router(api_router)
    return app


app = create_app()
