from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence
from uuid import uuid4

from opentelemetry import trace

from underwater_jobs.jobs.errors import is_retryable_error
from underwater_jobs.jobs.executor import Handler, JobResult, run_handler
from underwater_jobs.schemas.jobs import Job
from underwater_jobs.services.job_store import JobStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SHUTDOWN_CHECK_INTERVAL_SECONDS = 0.5


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class HandlerRegistration:
    type: str
    handler: Handler
    timeout_ms: int | None = None
    max_retries: int | None = None
    retry_delay_ms: int | None = None
    priority: int | None = None

    def enqueue_defaults(self) -> dict[str, int]:
        values = {
            "priority": self.priority,
            "max_retries": self.max_retries,
            "retry_delay_ms": self.retry_delay_ms,
            "timeout_ms": self.timeout_ms,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass(slots=True)
class WorkerOptions:
    poll_interval_seconds: float = 1.0
    max_concurrent_jobs: int = 3
    job_types: Sequence[str] | None = None
    shutdown_timeout_seconds: float = 30.0
    default_timeout_ms: int = 60000
    max_backoff_seconds: float = 30.0


@dataclass(slots=True)
class WorkerContext:
    worker_id: str
    active_jobs: dict[str, Job] = field(default_factory=dict)
    processed_count: int = 0
    failed_count: int = 0
    start_time: datetime | None = None


class QueueWorker:
    """Polls a ``JobStore`` and runs claimed jobs as asyncio tasks.

    At most ``max_concurrent_jobs`` run at once. Every claimed job ends in
    exactly one ``complete`` or ``fail`` call unless the process dies first, in
    which case the claim lapses and ``release_stale`` hands it to another worker.
    """

    def __init__(
        self,
        store: JobStore,
        options: WorkerOptions | None = None,
        *,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.options = options or WorkerOptions()
        self.worker_id = worker_id or default_worker_id()
        self._handlers: dict[str, HandlerRegistration] = {}
        self._active: dict[str, tuple[Job, asyncio.Task[None]]] = {}
        self._poll_task: asyncio.Task[None] | None = None
        self._stopping: asyncio.Event | None = None
        self._processed_count = 0
        self._failed_count = 0
        self._start_time: datetime | None = None

    @property
    def running(self) -> bool:
        return self._poll_task is not None

    def register_handler(self, registration: HandlerRegistration) -> None:
        if registration.type in self._handlers:
            logger.warning("replacing handler for job type %s", registration.type)
        self._handlers[registration.type] = registration

    def handler_defaults(self, job_type: str) -> dict[str, int]:
        registration = self._handlers.get(job_type)
        return registration.enqueue_defaults() if registration else {}

    def get_context(self) -> WorkerContext:
        return WorkerContext(
            worker_id=self.worker_id,
            active_jobs={job_id: job for job_id, (job, _) in self._active.items()},
            processed_count=self._processed_count,
            failed_count=self._failed_count,
            start_time=self._start_time,
        )

    async def start(self) -> None:
        if self._poll_task is not None:
            logger.warning("worker %s is already running", self.worker_id)
            return

        await self.store.ensure_schema()
        self._stopping = asyncio.Event()
        self._start_time = datetime.now(timezone.utc)
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"poll-{self.worker_id}")
        logger.info(
            "worker %s started: handlers=%s max_concurrent_jobs=%s",
            self.worker_id,
            sorted(self._handlers),
            self.options.max_concurrent_jobs,
        )

    async def stop(self) -> None:
        if self._poll_task is None or self._stopping is None:
            return

        logger.info("worker %s stopping with %s active jobs", self.worker_id, len(self._active))
        self._stopping.set()
        await self._poll_task

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.options.shutdown_timeout_seconds
        while self._active:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(SHUTDOWN_CHECK_INTERVAL_SECONDS, remaining))

        if self._active:
            logger.warning(
                "worker %s stopped with %s jobs still active: %s",
                self.worker_id,
                len(self._active),
                sorted(self._active),
            )
        self._poll_task = None
        logger.info(
            "worker %s stopped: processed=%s failed=%s",
            self.worker_id,
            self._processed_count,
            self._failed_count,
        )

    async def poll_once(self) -> int:
        """Claim jobs until every slot is busy or nothing is ready; return how many were claimed."""
        claimed = 0
        while len(self._active) < self.options.max_concurrent_jobs:
            if self._stopping is not None and self._stopping.is_set():
                break
            job = await self.store.claim(self.worker_id, self.options.job_types)
            if job is None:
                break
            task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
            self._active[job.id] = (job, task)
            task.add_done_callback(lambda _task, job_id=job.id: self._active.pop(job_id, None))
            claimed += 1
        return claimed

    async def drain(self) -> None:
        """Wait for every job started by this worker to settle."""
        while self._active:
            await asyncio.gather(*(task for _, task in list(self._active.values())), return_exceptions=True)

    async def _poll_loop(self) -> None:
        assert self._stopping is not None
        backoff = self.options.poll_interval_seconds

        while not self._stopping.is_set():
            try:
                with tracer.start_as_current_span("worker.poll_cycle") as span:
                    span.set_attribute("worker.id", self.worker_id)
                    claimed = await self.poll_once()
                    span.set_attribute("worker.claimed", claimed)
                delay = self.options.poll_interval_seconds
                backoff = delay
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                delay = min(backoff * (2.0 + jitter), self.options.max_backoff_seconds)
                logger.exception("poll cycle failed: %s; retry in %.1fs", exc, delay)
                backoff = delay

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _run_job(self, job: Job) -> None:
        with tracer.start_as_current_span("worker.process_job") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.type", job.type)
            span.set_attribute("job.attempt", job.attempts)
            try:
                await self._execute(job)
            except Exception:
                # the claim lapses and release_stale recovers the job
                logger.exception("could not record outcome for job id=%s", job.id)

    async def _execute(self, job: Job) -> None:
        registration = self._handlers.get(job.type)
        if registration is None:
            self._failed_count += 1
            logger.error("no handler registered for job type %s (job id=%s)", job.type, job.id)
            await self.store.fail(
                job.id,
                f"No handler registered for job type: {job.type}",
                retryable=False,
                worker_id=self.worker_id,
            )
            return

        timeout_ms = job.timeout_ms or registration.timeout_ms or self.options.default_timeout_ms
        try:
            result = await run_handler(registration.handler, job.payload, timeout_ms)
        except Exception as exc:
            result = JobResult.failed(str(exc) or type(exc).__name__, retryable=is_retryable_error(exc))
            logger.warning("job id=%s type=%s attempt=%s raised: %s", job.id, job.type, job.attempts, exc)

        if result.success:
            await self.store.complete(job.id, result.data, worker_id=self.worker_id)
            self._processed_count += 1
            logger.info("job id=%s type=%s completed on attempt %s", job.id, job.type, job.attempts)
            return

        self._failed_count += 1
        retryable = True if result.retryable is None else result.retryable
        state = await self.store.fail(
            job.id,
            result.error or "Unknown error",
            retryable=retryable,
            worker_id=self.worker_id,
        )
        logger.info(
            "job id=%s type=%s failed on attempt %s: %s (now %s)",
            job.id,
            job.type,
            job.attempts,
            result.error,
            state.value if state is not None else "not held",
        )
