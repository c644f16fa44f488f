from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Sequence
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from underwater_jobs.core.config import get_settings
from underwater_jobs.schemas.jobs import CleanupResult, DeadLetterEntry, Job, JobState, QueueMetrics
from underwater_jobs.services.backoff import next_delay_ms, should_retry
from underwater_jobs.services.schema import JOB_QUEUE_DDL, JOB_QUEUE_TABLE, apply_ddl

logger = logging.getLogger(__name__)

STALE_CLAIM_ERROR = "claim expired"


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates uniqueness or state transition rules."""


@dataclass(slots=True)
class JobDefaults:
    priority: int = 5
    max_retries: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 60000


def new_job_id() -> str:
    return f"job-{uuid4().hex}"


class JobStore(ABC):
    """Durable job table plus its dead-letter mirror.

    ``claim`` is the only operation whose atomicity is load-bearing: any number
    of workers may call it concurrently and each pending job is handed to at
    most one of them. Attempts are counted when a job is claimed.
    """

    def __init__(
        self,
        *,
        claim_timeout_seconds: float = 300.0,
        defaults: JobDefaults | None = None,
        stale_batch_size: int = 100,
    ) -> None:
        self.claim_timeout_seconds = max(0.0, claim_timeout_seconds)
        self.defaults = defaults or JobDefaults()
        self.stale_batch_size = max(1, stale_batch_size)

    @abstractmethod
    async def ensure_schema(self) -> None: ...

    @abstractmethod
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
    ) -> str: ...

    @abstractmethod
    async def claim(self, worker_id: str, job_types: Sequence[str] | None = None) -> Job | None: ...

    @abstractmethod
    async def complete(self, job_id: str, result: Any = None, *, worker_id: str | None = None) -> bool: ...

    @abstractmethod
    async def fail(
        self,
        job_id: str,
        error: str,
        retryable: bool = True,
        *,
        worker_id: str | None = None,
    ) -> JobState | None: ...

    @abstractmethod
    async def release_stale(self, claim_timeout_seconds: float | None = None) -> int: ...

    @abstractmethod
    async def get(self, job_id: str) -> Job | None: ...

    @abstractmethod
    async def cancel(self, job_id: str) -> bool: ...

    @abstractmethod
    async def metrics(self) -> QueueMetrics: ...

    @abstractmethod
    async def list_dead_letters(self, limit: int = 100, job_type: str | None = None) -> list[DeadLetterEntry]: ...

    @abstractmethod
    async def cleanup(
        self,
        completed_retention_days: int = 7,
        dead_letter_retention_days: int = 30,
    ) -> CleanupResult: ...

    async def close(self) -> None:
        return None

    def _resolve_claim_timeout(self, claim_timeout_seconds: float | None) -> float:
        if claim_timeout_seconds is None:
            return self.claim_timeout_seconds
        return max(0.0, claim_timeout_seconds)


class PostgresJobStore(JobStore):
    table = JOB_QUEUE_TABLE

    def __init__(
        self,
        database_url: str | None,
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
        claim_timeout_seconds: float = 300.0,
        defaults: JobDefaults | None = None,
        stale_batch_size: int = 100,
    ) -> None:
        super().__init__(
            claim_timeout_seconds=claim_timeout_seconds,
            defaults=defaults,
            stale_batch_size=stale_batch_size,
        )
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        await apply_ddl(pool, JOB_QUEUE_DDL)
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
        pool = await self._get_pool()
        resolved_id = job_id or new_job_id()

        try:
            await pool.execute(
                """
                insert into job_queue (
                  id,
                  type,
                  state,
                  priority,
                  payload,
                  max_retries,
                  retry_delay_ms,
                  timeout_ms,
                  next_retry_at
                )
                values (
                  $1, $2, 'pending', $3, $4::jsonb, $5, $6, $7,
                  case when $8::bigint is null then null else now() + ($8::bigint * interval '1 millisecond') end
                )
                """,
                resolved_id,
                job_type,
                self.defaults.priority if priority is None else priority,
                json.dumps(payload or {}),
                self.defaults.max_retries if max_retries is None else max_retries,
                self.defaults.retry_delay_ms if retry_delay_ms is None else retry_delay_ms,
                self.defaults.timeout_ms if timeout_ms is None else timeout_ms,
                delay_ms or None,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"job {resolved_id} already exists") from exc

        logger.debug("enqueued job id=%s type=%s", resolved_id, job_type)
        return resolved_id

    async def claim(self, worker_id: str, job_types: Sequence[str] | None = None) -> Job | None:
        await self.release_stale()
        pool = await self._get_pool()

        if job_types:
            row = await pool.fetchrow(self.table.claim_sql("type = any($3::text[])"), worker_id, 1, list(job_types))
        else:
            row = await pool.fetchrow(self.table.claim_sql(), worker_id, 1)

        if row is None:
            return None
        job = self._job_row_to_model(row)
        logger.debug("worker %s claimed job id=%s attempt=%s", worker_id, job.id, job.attempts)
        return job

    async def complete(self, job_id: str, result: Any = None, *, worker_id: str | None = None) -> bool:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update job_queue
            set
              state = 'completed',
              completed_at = now(),
              result = $2::jsonb,
              worker_id = null,
              updated_at = now()
            where id = $1
              and state = 'processing'
              and ($3::text is null or worker_id = $3)
            returning id
            """,
            job_id,
            json.dumps(result) if result is not None else None,
            worker_id,
        )
        if updated is None:
            logger.info("complete ignored for job id=%s: not held by %s", job_id, worker_id or "any worker")
            return False
        return True

    async def fail(
        self,
        job_id: str,
        error: str,
        retryable: bool = True,
        *,
        worker_id: str | None = None,
    ) -> JobState | None:
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow("select * from job_queue where id = $1 for update", job_id)
                if row is None:
                    logger.warning("fail ignored for unknown job id=%s", job_id)
                    return None
                if row["state"] != JobState.PROCESSING.value or (worker_id and row["worker_id"] != worker_id):
                    logger.warning("fail ignored for job id=%s in state=%s", job_id, row["state"])
                    return None

                attempts = int(row["attempts"])
                if should_retry(attempts=attempts, max_retries=int(row["max_retries"]), retryable=retryable):
                    delay_ms = next_delay_ms(attempts - 1, int(row["retry_delay_ms"]))
                    await conn.execute(
                        """
                        update job_queue
                        set
                          state = 'pending',
                          error = $2,
                          next_retry_at = now() + ($3::bigint * interval '1 millisecond'),
                          worker_id = null,
                          started_at = null,
                          updated_at = now()
                        where id = $1
                        """,
                        job_id,
                        error,
                        delay_ms,
                    )
                    logger.info("retry scheduled for job id=%s attempt=%s delay_ms=%s", job_id, attempts, delay_ms)
                    return JobState.PENDING

                await self._dead_letter(conn, row, error)
                return JobState.FAILED

    async def release_stale(self, claim_timeout_seconds: float | None = None) -> int:
        timeout = self._resolve_claim_timeout(claim_timeout_seconds)
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(self.table.select_stale_sql(), timeout, self.stale_batch_size)
                if not rows:
                    return 0

                requeue_ids: list[str] = []
                for row in rows:
                    if should_retry(attempts=int(row["attempts"]), max_retries=int(row["max_retries"]), retryable=True):
                        requeue_ids.append(row["id"])
                    else:
                        await self._dead_letter(conn, row, STALE_CLAIM_ERROR)
                if requeue_ids:
                    await conn.execute(self.table.requeue_sql(), requeue_ids)

        logger.info(
            "released stale claims: requeued=%s dead_lettered=%s",
            len(requeue_ids),
            len(rows) - len(requeue_ids),
        )
        return len(rows)

    async def get(self, job_id: str) -> Job | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("select * from job_queue where id = $1", job_id)
        return self._job_row_to_model(row) if row else None

    async def cancel(self, job_id: str) -> bool:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update job_queue
            set state = 'cancelled', updated_at = now()
            where id = $1 and state = 'pending'
            returning id
            """,
            job_id,
        )
        if updated is not None:
            return True
        exists = await pool.fetchval("select 1 from job_queue where id = $1", job_id)
        if not exists:
            raise RepositoryNotFoundError("job not found")
        return False

    async def metrics(self) -> QueueMetrics:
        pool = await self._get_pool()
        rows = await pool.fetch("select state, count(*)::bigint as count from job_queue group by state")
        dead_letters = await pool.fetchval("select count(*)::bigint from dead_letter_queue")
        return metrics_from_counts({row["state"]: int(row["count"]) for row in rows}, int(dead_letters or 0))

    async def list_dead_letters(self, limit: int = 100, job_type: str | None = None) -> list[DeadLetterEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select *
            from dead_letter_queue
            where ($2::text is null or type = $2)
            order by failed_at desc, created_at desc
            limit $1
            """,
            max(1, min(limit, 1000)),
            job_type,
        )
        return [self._dead_letter_row_to_model(row) for row in rows]

    async def cleanup(
        self,
        completed_retention_days: int = 7,
        dead_letter_retention_days: int = 30,
    ) -> CleanupResult:
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                completed_deleted = await conn.fetchval(
                    """
                    with deleted as (
                      delete from job_queue
                      where state = 'completed'
                        and completed_at < now() - ($1::int * interval '1 day')
                      returning 1
                    )
                    select count(*)::bigint from deleted
                    """,
                    completed_retention_days,
                )
                dead_letter_deleted = await conn.fetchval(
                    """
                    with deleted as (
                      delete from dead_letter_queue
                      where created_at < now() - ($1::int * interval '1 day')
                      returning 1
                    )
                    select count(*)::bigint from deleted
                    """,
                    dead_letter_retention_days,
                )

        result = CleanupResult(
            completed_deleted=int(completed_deleted or 0),
            dead_letter_deleted=int(dead_letter_deleted or 0),
        )
        logger.info(
            "queue cleanup removed completed=%s dead_letters=%s",
            result.completed_deleted,
            result.dead_letter_deleted,
        )
        return result

    async def _dead_letter(self, conn: asyncpg.Connection, row: asyncpg.Record, error: str) -> None:
        payload = row["payload"]
        await conn.execute(
            """
            insert into dead_letter_queue (id, original_job_id, type, payload, error, attempts)
            values ($1, $2, $3, $4::jsonb, $5, $6)
            """,
            new_job_id(),
            row["id"],
            row["type"],
            payload if isinstance(payload, str) else json.dumps(payload or {}),
            error,
            int(row["attempts"]),
        )
        await conn.execute(
            """
            update job_queue
            set
              state = 'failed',
              failed_at = now(),
              error = $2,
              worker_id = null,
              updated_at = now()
            where id = $1
            """,
            row["id"],
            error,
        )
        logger.warning(
            "job id=%s type=%s dead-lettered after %s attempts: %s",
            row["id"],
            row["type"],
            row["attempts"],
            error,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("UWJ_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_model(row: asyncpg.Record) -> Job:
        return Job(
            id=row["id"],
            type=row["type"],
            state=row["state"],
            priority=row["priority"],
            payload=_coerce_json_dict(row["payload"]),
            attempts=row["attempts"],
            max_retries=row["max_retries"],
            retry_delay_ms=row["retry_delay_ms"],
            timeout_ms=row["timeout_ms"],
            result=_coerce_json(row["result"]),
            error=row["error"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
            next_retry_at=row["next_retry_at"],
            worker_id=row["worker_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _dead_letter_row_to_model(row: asyncpg.Record) -> DeadLetterEntry:
        return DeadLetterEntry(
            id=row["id"],
            original_job_id=row["original_job_id"],
            type=row["type"],
            payload=_coerce_json_dict(row["payload"]),
            error=row["error"],
            attempts=row["attempts"],
            failed_at=row["failed_at"],
            created_at=row["created_at"],
        )


def metrics_from_counts(counts: dict[str, int], dead_letters: int) -> QueueMetrics:
    return QueueMetrics(
        pending=counts.get(JobState.PENDING.value, 0),
        processing=counts.get(JobState.PROCESSING.value, 0),
        completed=counts.get(JobState.COMPLETED.value, 0),
        failed=counts.get(JobState.FAILED.value, 0),
        cancelled=counts.get(JobState.CANCELLED.value, 0),
        total=sum(counts.values()),
        dead_letters=dead_letters,
    )


def _coerce_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    decoded = _coerce_json(value)
    if isinstance(decoded, dict):
        return decoded
    return {}


@lru_cache
def get_job_store() -> PostgresJobStore:
    settings = get_settings()
    return PostgresJobStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        claim_timeout_seconds=settings.job_claim_timeout_seconds,
        defaults=JobDefaults(
            priority=settings.default_priority,
            max_retries=settings.default_max_retries,
            retry_delay_ms=settings.default_retry_delay_ms,
            timeout_ms=settings.default_timeout_ms,
        ),
    )
