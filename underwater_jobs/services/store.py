from __future__ import annotations

import asyncio
import itertools
import random
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence

from underwater_jobs.schemas.jobs import (
    CleanupResult,
    ContentQueueItem,
    ContentStatus,
    DeadLetterEntry,
    Job,
    JobState,
    QueueMetrics,
)
from underwater_jobs.services.backoff import next_delay_ms, should_retry
from underwater_jobs.services.content_queue import (
    REVIVABLE_STATUSES,
    STALE_ASSIGNMENT_ERROR,
    ContentQueue,
    status_counts,
)
from underwater_jobs.services.job_store import (
    STALE_CLAIM_ERROR,
    JobDefaults,
    JobStore,
    RepositoryConflictError,
    RepositoryNotFoundError,
    metrics_from_counts,
    new_job_id,
)
from underwater_jobs.services.schema import CONTENT_QUEUE_TABLE, JOB_QUEUE_TABLE

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobStore(JobStore):
    """Single-process job store for tests and local runs.

    Claims are serialized by one ``asyncio.Lock``; every other contract matches
    the Postgres store. Callers get copies, never the stored rows.
    """

    table = JOB_QUEUE_TABLE

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        claim_timeout_seconds: float = 300.0,
        defaults: JobDefaults | None = None,
        stale_batch_size: int = 100,
    ) -> None:
        super().__init__(
            claim_timeout_seconds=claim_timeout_seconds,
            defaults=defaults,
            stale_batch_size=stale_batch_size,
        )
        self.jobs: dict[str, Job] = {}
        self.dead_letters: list[DeadLetterEntry] = []
        self._clock = clock or utcnow
        self._rng = rng
        self._lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        await self.release_stale()

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        priority: int | None = None,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
        timeout_ms: int | None = None,
        delay_ms: int | None = None,
        job_id: str | None = None,
    ) -> str:
        async with self._lock:
            resolved_id = job_id or new_job_id()
            if resolved_id in self.jobs:
                raise RepositoryConflictError(f"job {resolved_id} already exists")

            now = self._clock()
            self.jobs[resolved_id] = Job(
                id=resolved_id,
                type=job_type,
                priority=self.defaults.priority if priority is None else priority,
                payload=deepcopy(payload or {}),
                max_retries=self.defaults.max_retries if max_retries is None else max_retries,
                retry_delay_ms=self.defaults.retry_delay_ms if retry_delay_ms is None else retry_delay_ms,
                timeout_ms=self.defaults.timeout_ms if timeout_ms is None else timeout_ms,
                next_retry_at=now + timedelta(milliseconds=delay_ms) if delay_ms else None,
                created_at=now,
                updated_at=now,
            )
            return resolved_id

    async def claim(self, worker_id: str, job_types: Sequence[str] | None = None) -> Job | None:
        async with self._lock:
            now = self._clock()
            self._release_stale(self.claim_timeout_seconds, now)
            allowed = set(job_types) if job_types else None

            def ready(job: Job) -> bool:
                if allowed is not None and job.type not in allowed:
                    return False
                return job.next_retry_at is None or job.next_retry_at <= now

            picked = self.table.pick(self.jobs.values(), 1, ready=ready)
            if not picked:
                return None
            job = picked[0]
            self.table.mark_claimed(job, worker_id, now)
            return job.model_copy(deep=True)

    async def complete(self, job_id: str, result: Any = None, *, worker_id: str | None = None) -> bool:
        async with self._lock:
            job = self._held(job_id, worker_id)
            if job is None:
                return False
            now = self._clock()
            job.state = JobState.COMPLETED
            job.completed_at = now
            job.result = deepcopy(result)
            job.worker_id = None
            job.updated_at = now
            return True

    async def fail(
        self,
        job_id: str,
        error: str,
        retryable: bool = True,
        *,
        worker_id: str | None = None,
    ) -> JobState | None:
        async with self._lock:
            job = self._held(job_id, worker_id)
            if job is None:
                return None

            now = self._clock()
            if should_retry(attempts=job.attempts, max_retries=job.max_retries, retryable=retryable):
                delay_ms = next_delay_ms(job.attempts - 1, job.retry_delay_ms, rng=self._rng)
                job.state = JobState.PENDING
                job.error = error
                job.next_retry_at = now + timedelta(milliseconds=delay_ms)
                job.worker_id = None
                job.started_at = None
                job.updated_at = now
                return JobState.PENDING

            self._dead_letter(job, error, now)
            return JobState.FAILED

    async def release_stale(self, claim_timeout_seconds: float | None = None) -> int:
        async with self._lock:
            return self._release_stale(self._resolve_claim_timeout(claim_timeout_seconds), self._clock())

    async def get(self, job_id: str) -> Job | None:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def cancel(self, job_id: str) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError("job not found")
            if job.state != JobState.PENDING:
                return False
            job.state = JobState.CANCELLED
            job.updated_at = self._clock()
            return True

    async def metrics(self) -> QueueMetrics:
        counts: dict[str, int] = {}
        for job in self.jobs.values():
            counts[job.state.value] = counts.get(job.state.value, 0) + 1
        return metrics_from_counts(counts, len(self.dead_letters))

    async def list_dead_letters(self, limit: int = 100, job_type: str | None = None) -> list[DeadLetterEntry]:
        rows = [entry for entry in self.dead_letters if job_type is None or entry.type == job_type]
        rows.sort(key=lambda entry: entry.failed_at, reverse=True)
        return [entry.model_copy(deep=True) for entry in rows[: max(1, min(limit, 1000))]]

    async def cleanup(
        self,
        completed_retention_days: int = 7,
        dead_letter_retention_days: int = 30,
    ) -> CleanupResult:
        async with self._lock:
            now = self._clock()
            completed_cutoff = now - timedelta(days=completed_retention_days)
            dead_letter_cutoff = now - timedelta(days=dead_letter_retention_days)

            expired = [
                job.id
                for job in self.jobs.values()
                if job.state == JobState.COMPLETED
                and job.completed_at is not None
                and job.completed_at < completed_cutoff
            ]
            for job_id in expired:
                del self.jobs[job_id]

            kept = [entry for entry in self.dead_letters if entry.created_at >= dead_letter_cutoff]
            dead_letter_deleted = len(self.dead_letters) - len(kept)
            self.dead_letters = kept

            return CleanupResult(completed_deleted=len(expired), dead_letter_deleted=dead_letter_deleted)

    def _held(self, job_id: str, worker_id: str | None) -> Job | None:
        job = self.jobs.get(job_id)
        if job is None or job.state != JobState.PROCESSING:
            return None
        if worker_id is not None and job.worker_id != worker_id:
            return None
        return job

    def _release_stale(self, claim_timeout_seconds: float, now: datetime) -> int:
        stale = self.table.stale(self.jobs.values(), claim_timeout_seconds, now)[: self.stale_batch_size]
        for job in stale:
            if should_retry(attempts=job.attempts, max_retries=job.max_retries, retryable=True):
                self.table.mark_requeued(job, now)
            else:
                self._dead_letter(job, STALE_CLAIM_ERROR, now)
        return len(stale)

    def _dead_letter(self, job: Job, error: str, now: datetime) -> None:
        self.dead_letters.append(
            DeadLetterEntry(
                id=new_job_id(),
                original_job_id=job.id,
                type=job.type,
                payload=deepcopy(job.payload),
                error=error,
                attempts=job.attempts,
                failed_at=now,
                created_at=now,
            )
        )
        job.state = JobState.FAILED
        job.failed_at = now
        job.error = error
        job.worker_id = None
        job.updated_at = now


class InMemoryContentQueue(ContentQueue):
    table = CONTENT_QUEUE_TABLE

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        claim_timeout_seconds: float = 900.0,
        default_priority: int = 50,
        max_attempts: int = 3,
    ) -> None:
        super().__init__(
            claim_timeout_seconds=claim_timeout_seconds,
            default_priority=default_priority,
            max_attempts=max_attempts,
        )
        self.items: dict[int, ContentQueueItem] = {}
        self._ids = itertools.count(1)
        self._clock = clock or utcnow
        self._lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        await self.release_stale()

    async def enqueue(self, raw_event_id: str, priority: int | None = None) -> ContentQueueItem:
        resolved_priority = self.default_priority if priority is None else priority
        async with self._lock:
            item = self._find(raw_event_id)
            if item is None:
                item = ContentQueueItem(
                    id=next(self._ids),
                    raw_event_id=raw_event_id,
                    priority=resolved_priority,
                    max_attempts=self.max_attempts,
                    created_at=self._clock(),
                )
                self.items[item.id] = item
                return item.model_copy()

            item.priority = max(item.priority, resolved_priority)
            if item.status in REVIVABLE_STATUSES:
                item.status = ContentStatus.PENDING
                item.attempts = 0
                item.error_message = None
                item.processed_at = None
            return item.model_copy()

    async def claim(self, limit: int, worker_id: str) -> list[ContentQueueItem]:
        if limit <= 0:
            return []
        async with self._lock:
            now = self._clock()
            self._release_stale(self.claim_timeout_seconds, now)
            picked = self.table.pick(self.items.values(), limit, ready=lambda item: item.attempts < item.max_attempts)
            for item in picked:
                self.table.mark_claimed(item, worker_id, now)
            return [item.model_copy() for item in picked]

    async def release_stale(self, claim_timeout_seconds: float | None = None) -> int:
        async with self._lock:
            return self._release_stale(self._resolve_claim_timeout(claim_timeout_seconds), self._clock())

    async def mark_completed(
        self,
        item_id: int,
        article_id: str | None = None,
        *,
        worker_id: str | None = None,
    ) -> bool:
        async with self._lock:
            item = self._processing(item_id, worker_id)
            if item is None:
                return False
            item.status = ContentStatus.COMPLETED
            item.article_id = article_id
            item.error_message = None
            item.worker_id = None
            item.processed_at = self._clock()
            return True

    async def mark_failed(
        self,
        item_id: int,
        error: str,
        retryable: bool = True,
        *,
        worker_id: str | None = None,
    ) -> ContentStatus | None:
        async with self._lock:
            item = self._processing(item_id, worker_id)
            if item is None:
                return None
            item.error_message = error
            item.worker_id = None
            if retryable and item.attempts < item.max_attempts:
                item.status = ContentStatus.PENDING
                item.assigned_at = None
                return ContentStatus.PENDING
            item.status = ContentStatus.FAILED
            item.processed_at = self._clock()
            return ContentStatus.FAILED

    async def mark_skipped(self, item_id: int, reason: str, *, worker_id: str | None = None) -> bool:
        async with self._lock:
            item = self._processing(item_id, worker_id)
            if item is None:
                return False
            item.status = ContentStatus.SKIPPED
            item.error_message = reason
            item.worker_id = None
            item.processed_at = self._clock()
            return True

    async def get(self, item_id: int) -> ContentQueueItem | None:
        item = self.items.get(item_id)
        return item.model_copy() if item else None

    async def get_by_event(self, raw_event_id: str) -> ContentQueueItem | None:
        item = self._find(raw_event_id)
        return item.model_copy() if item else None

    async def metrics(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.items.values():
            counts[item.status.value] = counts.get(item.status.value, 0) + 1
        return status_counts(counts)

    def _find(self, raw_event_id: str) -> ContentQueueItem | None:
        for item in self.items.values():
            if item.raw_event_id == raw_event_id:
                return item
        return None

    def _processing(self, item_id: int, worker_id: str | None) -> ContentQueueItem | None:
        item = self.items.get(item_id)
        if item is None or item.status != ContentStatus.PROCESSING:
            return None
        if worker_id is not None and item.worker_id != worker_id:
            return None
        return item

    def _release_stale(self, claim_timeout_seconds: float, now: datetime) -> int:
        stale = self.table.stale(self.items.values(), claim_timeout_seconds, now)[: self.stale_batch_size]
        for item in stale:
            if item.attempts < item.max_attempts:
                self.table.mark_requeued(item, now)
            else:
                item.status = ContentStatus.FAILED
                item.error_message = STALE_ASSIGNMENT_ERROR
                item.worker_id = None
                item.processed_at = now
        return len(stale)
