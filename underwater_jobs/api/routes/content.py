from fastapi import APIRouter, Depends, status

from underwater_jobs.api.deps import get_producer
from underwater_jobs.api.errors import to_http_error
from underwater_jobs.core.security import require_ops_key
from underwater_jobs.schemas.jobs import ContentEnqueueRequest, ContentQueueItem
from underwater_jobs.services.content_queue import ContentQueue, get_content_queue
from underwater_jobs.services.job_store import RepositoryError
from underwater_jobs.services.producer import JobProducer

router = APIRouter()


@router.post(
    "",
    response_model=ContentQueueItem,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_ops_key)],
)
async def enqueue_content(
    payload: ContentEnqueueRequest,
    producer: JobProducer = Depends(get_producer),
) -> ContentQueueItem:
    try:
        return await producer.enqueue_content_job(payload.raw_event_id, payload.priority)
    except RepositoryError as exc:
        raise to_http_error(exc) from exc


@router.get("/metrics")
async def content_metrics(content_queue: ContentQueue = Depends(get_content_queue)) -> dict[str, int]:
    try:
        return await content_queue.metrics()
    except RepositoryError as exc:
        raise to_http_error(exc) from exc
