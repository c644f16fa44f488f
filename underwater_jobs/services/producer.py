from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from underwater_jobs.schemas.jobs import ContentQueueItem
from underwater_jobs.services.content_queue import ContentQueue
from underwater_jobs.services.job_store import JobStore, RepositoryError

logger = logging.getLogger(__name__)

HandlerDefaults = Callable[[str], Mapping[str, int]]


@dataclass(slots=True)
class SignificanceDecision:
    should_generate: bool
    priority: int | None = None
    reason: str | None = None


SignificanceFilter = Callable[[Any], SignificanceDecision | Awaitable[SignificanceDecision]]


class JobProducer:
    """Entry point for code that wants work done later.

    Options left unset on ``enqueue`` come from the handler registered for the
    job type (when a ``handler_defaults`` lookup is wired in) and then from the
    store's configured defaults.
    """

    def __init__(
        self,
        store: JobStore,
        content_queue: ContentQueue | None = None,
        *,
        handler_defaults: HandlerDefaults | None = None,
    ) -> None:
        self.store = store
        self.content_queue = content_queue
        self.handler_defaults = handler_defaults

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
        defaults = dict(self.handler_defaults(job_type)) if self.handler_defaults else {}

        try:
            resolved_id = await self.store.enqueue(
                job_type,
                payload or {},
                priority=priority if priority is not None else defaults.get("priority"),
                max_retries=max_retries if max_retries is not None else defaults.get("max_retries"),
                retry_delay_ms=retry_delay_ms if retry_delay_ms is not None else defaults.get("retry_delay_ms"),
                timeout_ms=timeout_ms if timeout_ms is not None else defaults.get("timeout_ms"),
                delay_ms=delay_ms,
                job_id=job_id,
            )
        except RepositoryError:
            logger.error("failed to enqueue job type=%s", job_type, exc_info=True)
            raise

        logger.info("enqueued job id=%s type=%s", resolved_id, job_type)
        return resolved_id

    async def enqueue_content_job(self, raw_event_id: str, priority: int | None = None) -> ContentQueueItem:
        if self.content_queue is None:
            raise RuntimeError("content queue is not configured")
        item = await self.content_queue.enqueue(raw_event_id, priority)
        logger.info(
            "content item id=%s for event=%s is %s (priority=%s)",
            item.id,
            raw_event_id,
            item.status.value,
            item.priority,
        )
        return item

    async def enqueue_if_significant(
        self,
        event_id: str,
        event: Any,
        assess: SignificanceFilter,
    ) -> ContentQueueItem | None:
        decision = assess(event)
        if not isinstance(decision, SignificanceDecision):
            decision = await decision

        if not decision.should_generate:
            logger.debug("event %s not queued: %s", event_id, decision.reason or "below significance threshold")
            return None
        return await self.enqueue_content_job(event_id, decision.priority)
