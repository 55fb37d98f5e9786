from fastapi import APIRouter, Depends

from placeblocks.api.deps import get_services
from placeblocks.container import Services

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(services: Services = Depends(get_services)) -> dict[str, object]:
    stats = await services.queue.stats()
    return {"status": "ok", "queue": stats.model_dump()}
