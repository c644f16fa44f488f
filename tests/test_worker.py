from __future__ import annotations

import asyncio
import random
from typing import Any

from underwater_jobs.jobs.errors import PermanentInputError
from underwater_jobs.jobs.executor import JobResult
from underwater_jobs.jobs.worker import HandlerRegistration, QueueWorker, WorkerOptions
from underwater_jobs.schemas.jobs import JobState
from underwater_jobs.services.store import InMemoryJobStore


def _worker(store: InMemoryJobStore, **options: Any) -> QueueWorker:
    return QueueWorker(store, WorkerOptions(poll_interval_seconds=0.01, **options), worker_id="worker-test")


def test_poll_once_runs_handler_and_completes_job(clock) -> None:
    seen: list[dict[str, Any]] = []

    async def handler(payload: dict[str, Any]) -> JobResult:
        seen.append(payload)
        return JobResult.ok({"posted": True})

    async def run():
        store = InMemoryJobStore(clock=clock)
        worker = _worker(store)
        worker.register_handler(HandlerRegistration(type="post_webhook", handler=handler))
        job_id = await store.enqueue("post_webhook", {"slug": "flood"})
        claimed = await worker.poll_once()
        await worker.drain()
        return claimed, await store.get(job_id), worker.get_context()

    claimed, job, context = asyncio.run(run())
    assert claimed == 1
    assert seen == [{"slug": "flood"}]
    assert job.state == JobState.COMPLETED
    assert job.result == {"posted": True}
    assert context.processed_count == 1
    assert context.failed_count == 0
    assert context.active_jobs == {}


def test_poll_once_respects_concurrency_limit(clock) -> None:
    release = asyncio.Event()

    async def handler(payload: dict[str, Any]) -> None:
        await release.wait()

    async def run():
        store = InMemoryJobStore(clock=clock)
        worker = _worker(store, max_concurrent_jobs=2)
        worker.register_handler(HandlerRegistration(type="a", handler=handler))
        for index in range(5):
            await store.enqueue("a", job_id=f"job-{index}")
        first = await worker.poll_once()
        again = await worker.poll_once()
        active = len(worker.get_context().active_jobs)
        release.set()
        await worker.drain()
        return first, again, active, await store.metrics()

    first, again, active, metrics = asyncio.run(run())
    assert (first, again, active) == (2, 0, 2)
    assert metrics.completed == 2
    assert metrics.pending == 3


def test_failed_result_is_retried_with_flag(clock) -> None:
    async def handler(payload: dict[str, Any]) -> JobResult:
        return JobResult.failed("rate limit")

    async def run():
        store = InMemoryJobStore(clock=clock, rng=random.Random(1))
        worker = _worker(store)
        worker.register_handler(HandlerRegistration(type="a", handler=handler))
        job_id = await store.enqueue("a")
        await worker.poll_once()
        await worker.drain()
        return await store.get(job_id), worker.get_context()

    job, context = asyncio.run(run())
    assert job.state == JobState.PENDING
    assert job.error == "rate limit"
    assert job.next_retry_at is not None
    assert context.failed_count == 1


def test_raised_permanent_error_dead_letters(clock) -> None:
    async def handler(payload: dict[str, Any]) -> None:
        raise PermanentInputError("Invalid payload: missing required fields")

    async def run():
        store = InMemoryJobStore(clock=clock)
        worker = _worker(store)
        worker.register_handler(HandlerRegistration(type="a", handler=handler))
        job_id = await store.enqueue("a")
        await worker.poll_once()
        await worker.drain()
        return await store.get(job_id), store.dead_letters

    job, dead = asyncio.run(run())
    assert job.state == JobState.FAILED
    assert len(dead) == 1
    assert dead[0].error == "Invalid payload: missing required fields"


def test_tagged_failure_mapping_dead_letters(clock) -> None:
    async def handler(payload: dict[str, Any]) -> dict[str, Any]:
        return {"success": False, "error": "bad payload", "retryable": False}

    async def run():
        store = InMemoryJobStore(clock=clock)
        worker = _worker(store)
        worker.register_handler(HandlerRegistration(type="a", handler=handler))
        await store.enqueue("a", job_id="J1")
        await worker.poll_once()
        await worker.drain()
        return await store.get("J1"), store.dead_letters, worker.get_context()

    job, dead, context = asyncio.run(run())
    assert job.state == JobState.FAILED
    assert job.result is None
    assert [entry.error for entry in dead] == ["bad payload"]
    assert context.failed_count == 1
    assert context.processed_count == 0


def test_tagged_retryable_failure_mapping_is_retried(clock) -> None:
    async def handler(payload: dict[str, Any]) -> dict[str, Any]:
        return {"success": False, "error": "upstream 503"}

    async def run():
        store = InMemoryJobStore(clock=clock, rng=random.Random(1))
        worker = _worker(store)
        worker.register_handler(HandlerRegistration(type="a", handler=handler))
        await store.enqueue("a", job_id="J1")
        await worker.poll_once()
        await worker.drain()
        return await store.get("J1")

    job = asyncio.run(run())
    assert job.state == JobState.PENDING
    assert job.error == "upstream 503"


def test_timeout_fails_job_as_retryable(clock) -> None:
    async def handler(payload: dict[str, Any]) -> None:
        await asyncio.sleep(0.2)

    async def run():
        store = InMemoryJobStore(clock=clock)
        worker = _worker(store)
        worker.register_handler(HandlerRegistration(type="a", handler=handler))
        job_id = await store.enqueue("a", timeout_ms=10)
        await worker.poll_once()
        await worker.drain()
        return await store.get(job_id)

    job = asyncio.run(run())
    assert job.state == JobState.PENDING
    assert job.error == "Job timed out after 10ms"


def test_missing_handler_is_permanent_failure(clock) -> None:
    async def run():
        store = InMemoryJobStore(clock=clock)
        worker = _worker(store)
        job_id = await store.enqueue("unknown_type")
        await worker.poll_once()
        await worker.drain()
        return await store.get(job_id)

    job = asyncio.run(run())
    assert job.state == JobState.FAILED
    assert job.error == "No handler registered for job type: unknown_type"


def test_j1_scenario_runs_three_attempts_then_dead_letters(clock) -> None:
    calls = 0

    async def handler(payload: dict[str, Any]) -> JobResult:
        nonlocal calls
        calls += 1
        return JobResult.failed("boom", retryable=True)

    async def run():
        store = InMemoryJobStore(clock=clock)
        worker = _worker(store)
        worker.register_handler(HandlerRegistration(type="a", handler=handler))
        await store.enqueue("a", priority=5, max_retries=2, retry_delay_ms=100, job_id="J1")
        for _ in range(5):
            await worker.poll_once()
            await worker.drain()
            clock.advance(hours=1)
        return store, await store.claim("another-worker")

    store, fourth = asyncio.run(run())
    assert calls == 3
    assert store.jobs["J1"].state == JobState.FAILED
    assert [entry.attempts for entry in store.dead_letters] == [3]
    assert fourth is None


def test_start_and_stop_process_jobs_in_background(clock) -> None:
    async def handler(payload: dict[str, Any]) -> dict[str, Any]:
        return {"done": payload["n"]}

    async def run():
        store = InMemoryJobStore(clock=clock)
        worker = _worker(store)
        worker.register_handler(HandlerRegistration(type="a", handler=handler))
        for n in range(3):
            await store.enqueue("a", {"n": n})
        await worker.start()
        await worker.start()
        for _ in range(100):
            if (await store.metrics()).completed == 3:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        return await store.metrics(), worker

    metrics, worker = asyncio.run(run())
    assert metrics.completed == 3
    assert worker.running is False
    assert worker.get_context().start_time is not None


def test_stop_gives_up_on_stuck_jobs_after_timeout(clock) -> None:
    async def handler(payload: dict[str, Any]) -> None:
        await asyncio.sleep(5)

    async def run():
        store = InMemoryJobStore(clock=clock)
        worker = QueueWorker(
            store,
            WorkerOptions(poll_interval_seconds=0.01, shutdown_timeout_seconds=0.05),
            worker_id="stuck",
        )
        worker.register_handler(HandlerRegistration(type="a", handler=handler))
        job_id = await store.enqueue("a")
        await worker.start()
        for _ in range(100):
            if worker.get_context().active_jobs:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        still_active = list(worker.get_context().active_jobs)
        return job_id, still_active, await store.get(job_id)

    job_id, still_active, job = asyncio.run(run())
    assert still_active == [job_id]
    assert job.state == JobState.PROCESSING


def test_handler_defaults_expose_registration_options() -> None:
    async def handler(payload: dict[str, Any]) -> None:
        return None

    worker = QueueWorker(InMemoryJobStore(), worker_id="w")
    worker.register_handler(HandlerRegistration(type="a", handler=handler, max_retries=1, timeout_ms=5000))
    assert worker.handler_defaults("a") == {"max_retries": 1, "timeout_ms": 5000}
    assert worker.handler_defaults("b") == {}
