from __future__ import annotations

import asyncio

from underwater_jobs.schemas.jobs import ContentStatus
from underwater_jobs.services.store import InMemoryContentQueue


def test_enqueue_is_idempotent_and_keeps_highest_priority(clock) -> None:
    async def run():
        queue = InMemoryContentQueue(clock=clock)
        first = await queue.enqueue("event-1", 40)
        second = await queue.enqueue("event-1", 70)
        third = await queue.enqueue("event-1", 10)
        return queue, first, second, third

    queue, first, second, third = asyncio.run(run())
    assert len(queue.items) == 1
    assert first.id == second.id == third.id
    assert (first.priority, second.priority, third.priority) == (40, 70, 70)
    assert third.status == ContentStatus.PENDING


def test_enqueue_uses_default_priority_and_attempt_budget(clock) -> None:
    item = asyncio.run(InMemoryContentQueue(clock=clock, default_priority=50, max_attempts=4).enqueue("event-1"))
    assert item.priority == 50
    assert item.max_attempts == 4
    assert item.attempts == 0


def test_enqueue_does_not_reset_completed_items(clock) -> None:
    async def run():
        queue = InMemoryContentQueue(clock=clock)
        item = await queue.enqueue("event-1")
        await queue.claim(1, "content-a")
        await queue.mark_completed(item.id, "article-9")
        return await queue.enqueue("event-1", 99)

    item = asyncio.run(run())
    assert item.status == ContentStatus.COMPLETED
    assert item.article_id == "article-9"
    assert item.priority == 99


def test_enqueue_revives_failed_and_skipped_items(clock) -> None:
    async def run():
        queue = InMemoryContentQueue(clock=clock, max_attempts=1)
        failed = await queue.enqueue("event-failed")
        skipped = await queue.enqueue("event-skipped")
        await queue.claim(2, "content-a")
        await queue.mark_failed(failed.id, "generator down", retryable=True)
        await queue.mark_skipped(skipped.id, "Raw event not found")
        return await queue.enqueue("event-failed"), await queue.enqueue("event-skipped")

    revived_failed, revived_skipped = asyncio.run(run())
    for item in (revived_failed, revived_skipped):
        assert item.status == ContentStatus.PENDING
        assert item.attempts == 0
        assert item.error_message is None
        assert item.processed_at is None


def test_claim_returns_batch_in_priority_order(clock) -> None:
    async def run():
        queue = InMemoryContentQueue(clock=clock)
        await queue.enqueue("low", 10)
        clock.advance(seconds=1)
        await queue.enqueue("high", 90)
        clock.advance(seconds=1)
        await queue.enqueue("mid", 50)
        return await queue.claim(2, "content-a"), queue

    claimed, queue = asyncio.run(run())
    assert [item.raw_event_id for item in claimed] == ["high", "mid"]
    assert all(item.status == ContentStatus.PROCESSING for item in claimed)
    assert all(item.worker_id == "content-a" and item.attempts == 1 for item in claimed)
    assert asyncio.run(queue.metrics())["processing"] == 2


def test_concurrent_batches_do_not_overlap(clock) -> None:
    async def run():
        queue = InMemoryContentQueue(clock=clock)
        for index in range(7):
            await queue.enqueue(f"event-{index}")
        batches = await asyncio.gather(*(queue.claim(3, f"content-{n}") for n in range(4)))
        return [item.raw_event_id for batch in batches for item in batch]

    claimed = asyncio.run(run())
    assert len(claimed) == 7
    assert len(set(claimed)) == 7


def test_mark_failed_retries_until_budget_is_spent(clock) -> None:
    async def run():
        queue = InMemoryContentQueue(clock=clock, max_attempts=2)
        item = await queue.enqueue("event-1")
        await queue.claim(1, "c")
        first = await queue.mark_failed(item.id, "ETIMEDOUT", retryable=True)
        await queue.claim(1, "c")
        second = await queue.mark_failed(item.id, "ETIMEDOUT", retryable=True)
        return first, second, await queue.get(item.id), await queue.claim(1, "c")

    first, second, item, nothing = asyncio.run(run())
    assert first == ContentStatus.PENDING
    assert second == ContentStatus.FAILED
    assert item.status == ContentStatus.FAILED
    assert item.error_message == "ETIMEDOUT"
    assert item.processed_at is not None
    assert nothing == []


def test_permanent_failure_is_terminal(clock) -> None:
    async def run():
        queue = InMemoryContentQueue(clock=clock, max_attempts=5)
        item = await queue.enqueue("event-1")
        await queue.claim(1, "c")
        return await queue.mark_failed(item.id, "bad event", retryable=False)

    assert asyncio.run(run()) == ContentStatus.FAILED


def test_stale_assignment_returns_to_pending_then_fails_when_spent(clock) -> None:
    async def run():
        queue = InMemoryContentQueue(clock=clock, claim_timeout_seconds=900, max_attempts=2)
        item = await queue.enqueue("event-1")
        await queue.claim(1, "crashed-a")
        clock.advance(seconds=901)
        reclaimed = await queue.claim(1, "content-b")
        clock.advance(seconds=901)
        released = await queue.release_stale()
        return reclaimed, released, await queue.get_by_event("event-1")

    reclaimed, released, item = asyncio.run(run())
    assert [entry.worker_id for entry in reclaimed] == ["content-b"]
    assert reclaimed[0].attempts == 2
    assert released == 1
    assert item.status == ContentStatus.FAILED
    assert item.error_message == "claim expired"


def test_settling_requires_the_current_owner(clock) -> None:
    async def run():
        queue = InMemoryContentQueue(clock=clock, claim_timeout_seconds=900)
        item = await queue.enqueue("event-1")
        await queue.claim(1, "content-a")
        clock.advance(seconds=901)
        await queue.claim(1, "content-b")
        late = (
            await queue.mark_completed(item.id, "article-a", worker_id="content-a"),
            await queue.mark_failed(item.id, "boom", worker_id="content-a"),
            await queue.mark_skipped(item.id, "dup", worker_id="content-a"),
        )
        held = await queue.get(item.id)
        owner = await queue.mark_completed(item.id, "article-b", worker_id="content-b")
        return late, held, owner, await queue.get(item.id)

    late, held, owner, item = asyncio.run(run())
    assert late == (False, None, False)
    assert held.status == ContentStatus.PROCESSING
    assert held.worker_id == "content-b"
    assert owner is True
    assert item.article_id == "article-b"


def test_metrics_report_every_status(clock) -> None:
    async def run():
        queue = InMemoryContentQueue(clock=clock)
        await queue.enqueue("a")
        await queue.enqueue("b")
        return await queue.metrics()

    metrics = asyncio.run(run())
    assert metrics == {
        "pending": 2,
        "processing": 0,
        "completed": 0,
        "failed": 0,
        "skipped": 0,
        "total": 2,
    }
