from fastapi import Depends

from underwater_jobs.jobs.social import SOCIAL_JOB_DEFAULTS
from underwater_jobs.services.content_queue import ContentQueue, get_content_queue
from underwater_jobs.services.job_store import JobStore, get_job_store
from underwater_jobs.services.producer import JobProducer


def social_handler_defaults(job_type: str) -> dict[str, int]:
    return SOCIAL_JOB_DEFAULTS.get(job_type, {})


def get_producer(
    store: JobStore = Depends(get_job_store),
    content_queue: ContentQueue = Depends(get_content_queue),
) -> JobProducer:
    return JobProducer(store, content_queue, handler_defaults=social_handler_defaults)
