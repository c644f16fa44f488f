from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from underwater_jobs.api.main import app
from underwater_jobs.core.config import Settings, get_settings
from underwater_jobs.services.content_queue import get_content_queue
from underwater_jobs.services.job_store import RepositoryUnavailableError, get_job_store
from underwater_jobs.services.store import InMemoryContentQueue, InMemoryJobStore

HEADERS = {"X-API-Key": "ops-secret"}


class UnavailableStore(InMemoryJobStore):
    async def metrics(self):
        raise RepositoryUnavailableError("database unavailable")


@pytest.fixture
def store(clock) -> InMemoryJobStore:
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def content_queue(clock) -> InMemoryContentQueue:
    return InMemoryContentQueue(clock=clock)


@pytest.fixture
def api_client(store: InMemoryJobStore, content_queue: InMemoryContentQueue) -> Iterator[TestClient]:
    app.dependency_overrides[get_job_store] = lambda: store
    app.dependency_overrides[get_content_queue] = lambda: content_queue
    app.dependency_overrides[get_settings] = lambda: Settings(ops_api_key="ops-secret", otel_enabled=False)
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthz(api_client: TestClient) -> None:
    response = api_client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_enqueue_requires_api_key(api_client: TestClient) -> None:
    missing = api_client.post("/queue/jobs", json={"type": "post_webhook"})
    wrong = api_client.post("/queue/jobs", json={"type": "post_webhook"}, headers={"X-API-Key": "nope"})
    assert missing.status_code == 401
    assert wrong.status_code == 401


def test_mutations_are_disabled_without_configured_key(api_client: TestClient) -> None:
    app.dependency_overrides[get_settings] = lambda: Settings(ops_api_key=None, otel_enabled=False)
    response = api_client.post("/queue/jobs", json={"type": "post_webhook"}, headers=HEADERS)
    assert response.status_code == 503
    assert api_client.get("/queue/metrics").status_code == 200


def test_enqueue_and_fetch_job(api_client: TestClient, store: InMemoryJobStore) -> None:
    response = api_client.post(
        "/queue/jobs",
        json={"type": "post_webhook", "payload": {"slug": "flood"}, "id": "job-api-1"},
        headers=HEADERS,
    )
    assert response.status_code == 202
    assert response.json() == {"job_id": "job-api-1"}

    job = api_client.get("/queue/jobs/job-api-1").json()
    assert job["state"] == "pending"
    assert job["priority"] == 3
    assert job["max_retries"] == 2
    assert job["payload"] == {"slug": "flood"}
    assert api_client.get("/queue/metrics").json()["pending"] == 1


def test_duplicate_job_id_is_conflict(api_client: TestClient) -> None:
    body = {"type": "a", "id": "dup"}
    assert api_client.post("/queue/jobs", json=body, headers=HEADERS).status_code == 202
    assert api_client.post("/queue/jobs", json=body, headers=HEADERS).status_code == 409


def test_enqueue_validates_options(api_client: TestClient) -> None:
    response = api_client.post("/queue/jobs", json={"type": "a", "retry_delay_ms": 0}, headers=HEADERS)
    assert response.status_code == 422


def test_unknown_job_is_404(api_client: TestClient) -> None:
    assert api_client.get("/queue/jobs/missing").status_code == 404
    assert api_client.post("/queue/jobs/missing/cancel", headers=HEADERS).status_code == 404


def test_cancel_pending_then_conflict(api_client: TestClient, store: InMemoryJobStore) -> None:
    asyncio.run(store.enqueue("a", job_id="c1"))
    first = api_client.post("/queue/jobs/c1/cancel", headers=HEADERS)
    second = api_client.post("/queue/jobs/c1/cancel", headers=HEADERS)
    assert first.status_code == 200
    assert first.json()["state"] == "cancelled"
    assert second.status_code == 409


def test_dead_letters_and_cleanup(api_client: TestClient, store: InMemoryJobStore, clock) -> None:
    async def seed() -> None:
        job_id = await store.enqueue("post_twitter", {"slug": "x"})
        await store.claim("w")
        await store.fail(job_id, "Invalid payload", retryable=False)

    asyncio.run(seed())
    entries = api_client.get("/queue/dead-letters", params={"type": "post_twitter"}).json()
    assert [entry["error"] for entry in entries] == ["Invalid payload"]
    assert api_client.get("/queue/dead-letters", params={"type": "post_webhook"}).json() == []

    clock.advance(days=31)
    response = api_client.post("/queue/cleanup", headers=HEADERS)
    assert response.status_code == 200
    assert response.json() == {"completed_deleted": 0, "dead_letter_deleted": 1}


def test_store_unavailable_maps_to_503(api_client: TestClient, clock) -> None:
    app.dependency_overrides[get_job_store] = lambda: UnavailableStore(clock=clock)
    response = api_client.get("/queue/metrics")
    assert response.status_code == 503


def test_content_enqueue_and_metrics(api_client: TestClient) -> None:
    first = api_client.post("/content-queue", json={"raw_event_id": "event-1", "priority": 60}, headers=HEADERS)
    again = api_client.post("/content-queue", json={"raw_event_id": "event-1"}, headers=HEADERS)
    assert first.status_code == 202
    assert first.json()["status"] == "pending"
    assert again.json()["priority"] == 60
    assert api_client.get("/content-queue/metrics").json()["pending"] == 1
