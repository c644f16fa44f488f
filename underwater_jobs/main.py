from __future__ import annotations

import asyncio
import importlib
import logging
import signal
from typing import Any

from underwater_jobs.core.config import Settings, get_settings
from underwater_jobs.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from underwater_jobs.jobs.content import ContentProcessor
from underwater_jobs.jobs.social import HttpNotifier, register_social_handlers
from underwater_jobs.jobs.worker import QueueWorker, WorkerOptions
from underwater_jobs.services.content_queue import ContentQueue, get_content_queue
from underwater_jobs.services.job_store import JobStore, get_job_store
from underwater_jobs.services.producer import JobProducer

logger = logging.getLogger(__name__)


def load_content_pipeline(path: str) -> tuple[Any, Any]:
    """Resolve ``module:factory`` to an ``(event_source, article_generator)`` pair."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"content pipeline must look like 'package.module:factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attribute)
    events, generator = factory()
    return events, generator


def build_worker(settings: Settings, store: JobStore) -> QueueWorker:
    worker = QueueWorker(
        store,
        WorkerOptions(
            poll_interval_seconds=settings.poll_interval_seconds,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            job_types=settings.job_type_filter(),
            shutdown_timeout_seconds=settings.shutdown_timeout_seconds,
            default_timeout_ms=settings.default_timeout_ms,
        ),
        worker_id=settings.worker_id,
    )
    register_social_handlers(worker, HttpNotifier.from_settings(settings))
    return worker


def build_content_processor(
    settings: Settings,
    content_queue: ContentQueue,
    producer: JobProducer,
) -> ContentProcessor | None:
    if not settings.content_pipeline:
        logger.info("UWJ_CONTENT_PIPELINE not set; content queue drain disabled")
        return None
    events, generator = load_content_pipeline(settings.content_pipeline)
    return ContentProcessor(
        content_queue,
        events,
        generator,
        producer=producer,
        social_enabled=settings.social_automation_enabled,
        site_url=settings.site_url,
        batch_size=settings.content_queue_batch_size,
    )


async def run_worker(settings: Settings | None = None, *, stop_event: asyncio.Event | None = None) -> None:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings, component="worker")
    store = get_job_store()
    content_queue = get_content_queue()
    stop = stop_event or asyncio.Event()
    _install_signal_handlers(stop)

    worker = build_worker(settings, store)
    producer = JobProducer(store, content_queue, handler_defaults=worker.handler_defaults)

    try:
        processor = build_content_processor(settings, content_queue, producer)
        await worker.start()
        if processor is not None:
            await content_queue.ensure_schema()
        await _run_until_stopped(settings, stop, processor)
    finally:
        await worker.stop()
        await store.close()
        await content_queue.close()
        shutdown_telemetry(telemetry_runtime)


async def _run_until_stopped(
    settings: Settings,
    stop: asyncio.Event,
    processor: ContentProcessor | None,
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.max_run_seconds if settings.max_run_seconds else None
    next_drain_at = loop.time()

    while not stop.is_set():
        now = loop.time()
        if deadline is not None and now >= deadline:
            logger.info("max run time of %.0fs reached, shutting down", settings.max_run_seconds)
            return

        if processor is not None and now >= next_drain_at:
            try:
                report = await processor.process_batch()
                if report.claimed:
                    logger.info(
                        "content batch: claimed=%s completed=%s skipped=%s retried=%s failed=%s",
                        report.claimed,
                        report.completed,
                        report.skipped,
                        report.retried,
                        report.failed,
                    )
            except Exception:
                logger.exception("content queue drain failed")
            next_drain_at = loop.time() + settings.content_queue_interval_seconds

        waits = [settings.content_queue_interval_seconds if processor is None else next_drain_at - loop.time()]
        if deadline is not None:
            waits.append(deadline - loop.time())
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(0.0, min(waits)))
        except asyncio.TimeoutError:
            pass

    logger.info("shutdown requested")


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform dependent
            logger.debug("signal handler for %s not supported on this platform", signum)


if __name__ == "__main__":
    asyncio.run(run_worker())
