from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from underwater_jobs.api.router import api_router
from underwater_jobs.core.config import get_settings
from underwater_jobs.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from underwater_jobs.services.content_queue import get_content_queue
from underwater_jobs.services.job_store import get_job_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings, component="api")
    try:
        yield
    finally:
        shutdown_telemetry(telemetry_runtime)
        # both stores own an asyncpg pool
        await get_job_store().close()
        await get_content_queue().close()
        get_job_store.cache_clear()
        get_content_queue.cache_clear()


app = FastAPI(title="underwater-jobs ops", lifespan=lifespan)


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
