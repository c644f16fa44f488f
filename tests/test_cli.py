from __future__ import annotations

import asyncio
import json

import pytest

import underwater_jobs.cli as cli
from underwater_jobs.services.store import InMemoryContentQueue, InMemoryJobStore


@pytest.fixture
def stores(monkeypatch, clock) -> tuple[InMemoryJobStore, InMemoryContentQueue]:
    store = InMemoryJobStore(clock=clock)
    content_queue = InMemoryContentQueue(clock=clock)
    monkeypatch.setattr(cli, "get_job_store", lambda: store)
    monkeypatch.setattr(cli, "get_content_queue", lambda: content_queue)
    return store, content_queue


def test_enqueue_command_prints_job_id(stores, capsys) -> None:
    store, _ = stores
    code = cli.main(["enqueue", "post_webhook", "--payload", '{"slug": "a"}', "--id", "job-cli"])

    assert code == 0
    assert json.loads(capsys.readouterr().out) == {"job_id": "job-cli"}
    assert store.jobs["job-cli"].max_retries == 2
    assert store.jobs["job-cli"].payload == {"slug": "a"}


def test_enqueue_rejects_non_object_payload(stores) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["enqueue", "a", "--payload", "[1, 2]"])
    assert excinfo.value.code == 2


def test_metrics_command_includes_content_counts(stores, capsys) -> None:
    store, content_queue = stores
    asyncio.run(store.enqueue("a"))
    asyncio.run(content_queue.enqueue("event-1"))

    assert cli.main(["metrics", "--content"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["jobs"]["pending"] == 1
    assert report["content"]["pending"] == 1


def test_dead_letters_command(stores, capsys) -> None:
    store, _ = stores

    async def seed() -> None:
        job_id = await store.enqueue("post_twitter")
        await store.claim("w")
        await store.fail(job_id, "Invalid payload", retryable=False)

    asyncio.run(seed())
    assert cli.main(["dead-letters", "--type", "post_twitter"]) == 0
    [entry] = json.loads(capsys.readouterr().out)
    assert entry["error"] == "Invalid payload"
    assert entry["attempts"] == 1


def test_drain_content_without_pipeline_exits_2(stores, monkeypatch, capsys) -> None:
    monkeypatch.delenv("UWJ_CONTENT_PIPELINE", raising=False)
    cli.get_settings.cache_clear()
    try:
        assert cli.main(["drain-content"]) == 2
    finally:
        cli.get_settings.cache_clear()
    assert "UWJ_CONTENT_PIPELINE" in capsys.readouterr().err
