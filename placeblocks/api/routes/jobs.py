from fastapi import APIRouter, Depends, HTTPException, status

from placeblocks.api.deps import get_services
from placeblocks.container import Services
from placeblocks.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PlaceBlocksError,
    StoreUnavailableError,
    ValidationError,
)
from placeblocks.schemas.jobs import CrawlJob, QueueStats, ScheduleRequest, ScheduleResponse

router = APIRouter()


def _http_error(exc: PlaceBlocksError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "errors": exc.errors},
        )
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post("", response_model=ScheduleResponse, status_code=status.HTTP_202_ACCEPTED)
async def schedule_job(payload: ScheduleRequest, services: Services = Depends(get_services)) -> ScheduleResponse:
    try:
        job_id = await services.scheduler.schedule(
            payload.type,
            payload.config,
            priority=payload.priority,
            delay_seconds=payload.delay_seconds,
        )
    except PlaceBlocksError as exc:
        raise _http_error(exc) from exc
    return ScheduleResponse(job_id=job_id, status="pending")


@router.get("/stats", response_model=QueueStats)
async def queue_stats(services: Services = Depends(get_services)) -> QueueStats:
    try:
        return await services.scheduler.queue_stats()
    except PlaceBlocksError as exc:
        raise _http_error(exc) from exc


@router.get("/{job_id}", response_model=CrawlJob)
async def get_job(job_id: str, services: Services = Depends(get_services)) -> CrawlJob:
    try:
        return await services.scheduler.status(job_id)
    except PlaceBlocksError as exc:
        raise _http_error(exc) from exc


@router.post("/{job_id}/cancel", response_model=CrawlJob)
async def cancel_job(job_id: str, services: Services = Depends(get_services)) -> CrawlJob:
    try:
        return await services.scheduler.cancel(job_id)
    except PlaceBlocksError as exc:
        raise _http_error(exc) from exc


@router.post("/{job_id}/pause", response_model=CrawlJob)
async def pause_job(job_id: str, services: Services = Depends(get_services)) -> CrawlJob:
    try:
        return await services.scheduler.pause(job_id)
    except PlaceBlocksError as exc:
        raise _http_error(exc) from exc


@router.post("/{job_id}/resume", response_model=CrawlJob)
async def resume_job(job_id: str, services: Services = Depends(get_services)) -> CrawlJob:
    try:
        return await services.scheduler.resume(job_id)
    except PlaceBlocksError as exc:
        raise _http_error(exc) from exc


@router.post("/{job_id}/retry", response_model=CrawlJob)
async def retry_job(job_id: str, services: Services = Depends(get_services)) -> CrawlJob:
    try:
        return await services.scheduler.retry(job_id)
    except PlaceBlocksError as exc:
        raise _http_error(exc) from exc
