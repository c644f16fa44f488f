from fastapi import APIRouter, Depends, HTTPException, Query, status

from underwater_jobs.api.deps import get_producer
from underwater_jobs.api.errors import to_http_error
from underwater_jobs.core.config import Settings, get_settings
from underwater_jobs.core.security import require_ops_key
from underwater_jobs.schemas.jobs import (
    CleanupRequest,
    CleanupResult,
    DeadLetterEntry,
    EnqueueRequest,
    EnqueueResponse,
    Job,
    QueueMetrics,
)
from underwater_jobs.services.job_store import JobStore, RepositoryError, get_job_store
from underwater_jobs.services.producer import JobProducer

router = APIRouter()


@router.get("/metrics", response_model=QueueMetrics)
async def queue_metrics(store: JobStore = Depends(get_job_store)) -> QueueMetrics:
    try:
        return await store.metrics()
    except RepositoryError as exc:
        raise to_http_error(exc) from exc


@router.post(
    "/jobs",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_ops_key)],
)
async def enqueue_job(payload: EnqueueRequest, producer: JobProducer = Depends(get_producer)) -> EnqueueResponse:
    try:
        job_id = await producer.enqueue(
            payload.type,
            payload.payload,
            priority=payload.priority,
            max_retries=payload.max_retries,
            retry_delay_ms=payload.retry_delay_ms,
            timeout_ms=payload.timeout_ms,
            delay_ms=payload.delay_ms,
            job_id=payload.id,
        )
    except RepositoryError as exc:
        raise to_http_error(exc) from exc
    return EnqueueResponse(job_id=job_id)


@router.get("/jobs/{job_id}", response_model=Job)
async def get_job(job_id: str, store: JobStore = Depends(get_job_store)) -> Job:
    try:
        job = await store.get(job_id)
    except RepositoryError as exc:
        raise to_http_error(exc) from exc
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    return job


@router.post("/jobs/{job_id}/cancel", response_model=Job, dependencies=[Depends(require_ops_key)])
async def cancel_job(job_id: str, store: JobStore = Depends(get_job_store)) -> Job:
    try:
        cancelled = await store.cancel(job_id)
        job = await store.get(job_id)
    except RepositoryError as exc:
        raise to_http_error(exc) from exc

    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"job is {job.state.value} and can no longer be cancelled",
        )
    return job


@router.get("/dead-letters", response_model=list[DeadLetterEntry])
async def list_dead_letters(
    limit: int = Query(default=100, ge=1, le=1000),
    job_type: str | None = Query(default=None, alias="type"),
    store: JobStore = Depends(get_job_store),
) -> list[DeadLetterEntry]:
    try:
        return await store.list_dead_letters(limit=limit, job_type=job_type)
    except RepositoryError as exc:
        raise to_http_error(exc) from exc


@router.post("/cleanup", response_model=CleanupResult, dependencies=[Depends(require_ops_key)])
async def cleanup_queue(
    payload: CleanupRequest | None = None,
    settings: Settings = Depends(get_settings),
    store: JobStore = Depends(get_job_store),
) -> CleanupResult:
    request = payload or CleanupRequest()
    try:
        return await store.cleanup(
            completed_retention_days=(
                request.completed_retention_days
                if request.completed_retention_days is not None
                else settings.completed_retention_days
            ),
            dead_letter_retention_days=(
                request.dead_letter_retention_days
                if request.dead_letter_retention_days is not None
                else settings.dead_letter_retention_days
            ),
        )
    except RepositoryError as exc:
        raise to_http_error(exc) from exc
