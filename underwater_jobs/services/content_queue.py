from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from functools import lru_cache

import asyncpg  # type: ignore[import-untyped]

from underwater_jobs.core.config import get_settings
from underwater_jobs.schemas.jobs import ContentQueueItem, ContentStatus
from underwater_jobs.services.job_store import RepositoryUnavailableError
from underwater_jobs.services.schema import CONTENT_QUEUE_DDL, CONTENT_QUEUE_TABLE, apply_ddl

logger = logging.getLogger(__name__)

STALE_ASSIGNMENT_ERROR = "claim expired"
REVIVABLE_STATUSES = (ContentStatus.FAILED, ContentStatus.SKIPPED)


class ContentQueue(ABC):
    """Work list of raw events waiting for article generation.

    One row per raw event. Re-enqueueing an event that already finished
    unsuccessfully revives it with a fresh attempt budget; anything else only
    raises its priority.
    """

    def __init__(
        self,
        *,
        claim_timeout_seconds: float = 900.0,
        default_priority: int = 50,
        max_attempts: int = 3,
        stale_batch_size: int = 100,
    ) -> None:
        self.claim_timeout_seconds = max(0.0, claim_timeout_seconds)
        self.default_priority = default_priority
        self.max_attempts = max(1, max_attempts)
        self.stale_batch_size = max(1, stale_batch_size)

    @abstractmethod
    async def ensure_schema(self) -> None: ...

    @abstractmethod
    async def enqueue(self, raw_event_id: str, priority: int | None = None) -> ContentQueueItem: ...

    @abstractmethod
    async def claim(self, limit: int, worker_id: str) -> list[ContentQueueItem]: ...

    @abstractmethod
    async def release_stale(self, claim_timeout_seconds: float | None = None) -> int: ...

    @abstractmethod
    async def mark_completed(
        self,
        item_id: int,
        article_id: str | None = None,
        *,
        worker_id: str | None = None,
    ) -> bool: ...

    @abstractmethod
    async def mark_failed(
        self,
        item_id: int,
        error: str,
        retryable: bool = True,
        *,
        worker_id: str | None = None,
    ) -> ContentStatus | None: ...

    @abstractmethod
    async def mark_skipped(self, item_id: int, reason: str, *, worker_id: str | None = None) -> bool: ...

    @abstractmethod
    async def get(self, item_id: int) -> ContentQueueItem | None: ...

    @abstractmethod
    async def get_by_event(self, raw_event_id: str) -> ContentQueueItem | None: ...

    @abstractmethod
    async def metrics(self) -> dict[str, int]: ...

    async def close(self) -> None:
        return None

    def _resolve_claim_timeout(self, claim_timeout_seconds: float | None) -> float:
        if claim_timeout_seconds is None:
            return self.claim_timeout_seconds
        return max(0.0, claim_timeout_seconds)


class PostgresContentQueue(ContentQueue):
    table = CONTENT_QUEUE_TABLE

    def __init__(
        self,
        database_url: str | None,
        *,
        pool: asyncpg.Pool | None = None,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
        claim_timeout_seconds: float = 900.0,
        default_priority: int = 50,
        max_attempts: int = 3,
    ) -> None:
        super().__init__(
            claim_timeout_seconds=claim_timeout_seconds,
            default_priority=default_priority,
            max_attempts=max_attempts,
        )
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool = pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        await apply_ddl(pool, CONTENT_QUEUE_DDL)
        await self.release_stale()

    async def enqueue(self, raw_event_id: str, priority: int | None = None) -> ContentQueueItem:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into content_queue (raw_event_id, status, priority, max_attempts)
            values ($1, 'pending', $2, $3)
            on conflict (raw_event_id) do update
            set
              priority = greatest(content_queue.priority, excluded.priority),
              status = case
                when content_queue.status in ('failed', 'skipped') then 'pending'
                else content_queue.status
              end,
              attempts = case
                when content_queue.status in ('failed', 'skipped') then 0
                else content_queue.attempts
              end,
              error_message = case
                when content_queue.status in ('failed', 'skipped') then null
                else content_queue.error_message
              end,
              processed_at = case
                when content_queue.status in ('failed', 'skipped') then null
                else content_queue.processed_at
              end
            returning *
            """,
            raw_event_id,
            self.default_priority if priority is None else priority,
            self.max_attempts,
        )
        item = ContentQueueItem(**dict(row))
        logger.debug("content item id=%s event=%s status=%s", item.id, raw_event_id, item.status.value)
        return item

    async def claim(self, limit: int, worker_id: str) -> list[ContentQueueItem]:
        if limit <= 0:
            return []
        await self.release_stale()
        pool = await self._get_pool()
        rows = await pool.fetch(self.table.claim_sql(), worker_id, limit)
        items = [ContentQueueItem(**dict(row)) for row in rows]
        # returning order is unspecified
        items.sort(key=lambda item: (-item.priority, item.created_at))
        return items

    async def release_stale(self, claim_timeout_seconds: float | None = None) -> int:
        timeout = self._resolve_claim_timeout(claim_timeout_seconds)
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(self.table.select_stale_sql(), timeout, self.stale_batch_size)
                if not rows:
                    return 0

                requeue_ids = [row["id"] for row in rows if row["attempts"] < row["max_attempts"]]
                exhausted_ids = [row["id"] for row in rows if row["attempts"] >= row["max_attempts"]]
                if requeue_ids:
                    await conn.execute(self.table.requeue_sql(), requeue_ids)
                if exhausted_ids:
                    await conn.execute(
                        """
                        update content_queue
                        set
                          status = 'failed',
                          error_message = $2,
                          worker_id = null,
                          processed_at = now()
                        where id = any($1::bigint[])
                        """,
                        exhausted_ids,
                        STALE_ASSIGNMENT_ERROR,
                    )

        logger.info("released stale content items: requeued=%s failed=%s", len(requeue_ids), len(exhausted_ids))
        return len(rows)

    async def mark_completed(
        self,
        item_id: int,
        article_id: str | None = None,
        *,
        worker_id: str | None = None,
    ) -> bool:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update content_queue
            set
              status = 'completed',
              article_id = $2,
              error_message = null,
              worker_id = null,
              processed_at = now()
            where id = $1
              and status = 'processing'
              and ($3::text is null or worker_id = $3)
            returning id
            """,
            item_id,
            article_id,
            worker_id,
        )
        if updated is None:
            logger.info("mark_completed ignored for content item id=%s: not held by %s", item_id, worker_id)
        return updated is not None

    async def mark_failed(
        self,
        item_id: int,
        error: str,
        retryable: bool = True,
        *,
        worker_id: str | None = None,
    ) -> ContentStatus | None:
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow("select * from content_queue where id = $1 for update", item_id)
                if (
                    row is None
                    or row["status"] != ContentStatus.PROCESSING.value
                    or (worker_id and row["worker_id"] != worker_id)
                ):
                    logger.warning("mark_failed ignored for content item id=%s", item_id)
                    return None

                if retryable and row["attempts"] < row["max_attempts"]:
                    await conn.execute(
                        """
                        update content_queue
                        set status = 'pending', error_message = $2, worker_id = null, assigned_at = null
                        where id = $1
                        """,
                        item_id,
                        error,
                    )
                    return ContentStatus.PENDING

                await conn.execute(
                    """
                    update content_queue
                    set status = 'failed', error_message = $2, worker_id = null, processed_at = now()
                    where id = $1
                    """,
                    item_id,
                    error,
                )
                logger.warning("content item id=%s failed after %s attempts: %s", item_id, row["attempts"], error)
                return ContentStatus.FAILED

    async def mark_skipped(self, item_id: int, reason: str, *, worker_id: str | None = None) -> bool:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update content_queue
            set status = 'skipped', error_message = $2, worker_id = null, processed_at = now()
            where id = $1
              and status = 'processing'
              and ($3::text is null or worker_id = $3)
            returning id
            """,
            item_id,
            reason,
            worker_id,
        )
        return updated is not None

    async def get(self, item_id: int) -> ContentQueueItem | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("select * from content_queue where id = $1", item_id)
        return ContentQueueItem(**dict(row)) if row else None

    async def get_by_event(self, raw_event_id: str) -> ContentQueueItem | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("select * from content_queue where raw_event_id = $1", raw_event_id)
        return ContentQueueItem(**dict(row)) if row else None

    async def metrics(self) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch("select status, count(*)::bigint as count from content_queue group by status")
        return status_counts({row["status"]: int(row["count"]) for row in rows})

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool

        if not self.database_url:
            raise RepositoryUnavailableError("UWJ_DATABASE_URL is required")

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


def status_counts(counts: dict[str, int]) -> dict[str, int]:
    metrics = {status.value: counts.get(status.value, 0) for status in ContentStatus}
    metrics["total"] = sum(counts.values())
    return metrics


@lru_cache
def get_content_queue() -> PostgresContentQueue:
    settings = get_settings()
    return PostgresContentQueue(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        claim_timeout_seconds=settings.content_queue_claim_timeout_seconds,
        default_priority=settings.content_queue_default_priority,
        max_attempts=settings.content_queue_max_attempts,
    )
