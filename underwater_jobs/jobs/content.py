from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from opentelemetry import trace

from underwater_jobs.jobs.errors import is_retryable_error
from underwater_jobs.jobs.social import enqueue_social_posts
from underwater_jobs.jobs.worker import default_worker_id
from underwater_jobs.schemas.jobs import ContentQueueItem, ContentStatus, GeneratedArticle
from underwater_jobs.services.content_queue import ContentQueue
from underwater_jobs.services.producer import JobProducer

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

EVENT_NOT_FOUND = "Raw event not found"
ARTICLE_ALREADY_GENERATED = "Article already generated"


class EventSource(Protocol):
    async def get_event(self, event_id: str) -> Mapping[str, Any] | None: ...

    async def mark_event(
        self,
        event_id: str,
        status: str,
        *,
        article_generated: bool = False,
        error: str | None = None,
    ) -> None: ...


class ArticleGenerator(Protocol):
    async def generate(self, event: Mapping[str, Any], event_id: str) -> GeneratedArticle: ...


@dataclass(slots=True)
class ContentBatchReport:
    claimed: int = 0
    completed: int = 0
    skipped: int = 0
    retried: int = 0
    failed: int = 0
    article_ids: list[str] = field(default_factory=list)
    estimated_cost_usd: float = 0.0


class ContentProcessor:
    """Drains the content queue one small batch at a time.

    Items in a batch run sequentially. Each item ends completed, skipped or
    failed; a failure the queue can still retry goes back to pending and the
    event is reset to ``new``.
    """

    def __init__(
        self,
        queue: ContentQueue,
        events: EventSource,
        generator: ArticleGenerator,
        *,
        producer: JobProducer | None = None,
        social_enabled: bool = False,
        site_url: str = "https://worldunderwater.org",
        batch_size: int = 3,
        worker_id: str | None = None,
    ) -> None:
        self.queue = queue
        self.events = events
        self.generator = generator
        self.producer = producer
        self.social_enabled = social_enabled
        self.site_url = site_url
        self.batch_size = max(1, batch_size)
        self.worker_id = worker_id or f"content-{default_worker_id()}"

    async def process_batch(self, limit: int | None = None) -> ContentBatchReport:
        report = ContentBatchReport()
        items = await self.queue.claim(limit or self.batch_size, self.worker_id)
        report.claimed = len(items)
        if not items:
            logger.debug("no pending content queue items")
            return report

        logger.info("processing %s content queue item(s)", len(items))
        for item in items:
            with tracer.start_as_current_span("content.process_item") as span:
                span.set_attribute("content.item_id", item.id)
                span.set_attribute("content.raw_event_id", item.raw_event_id)
                span.set_attribute("content.attempt", item.attempts)
                try:
                    status = await self.process_item(item, report)
                except Exception as exc:
                    logger.exception("content item id=%s event=%s could not be settled", item.id, item.raw_event_id)
                    span.record_exception(exc)
                    status = await self._settle_after_error(item, exc, report)
                span.set_attribute("content.status", status.value if status is not None else "lost")
        return report

    async def process_item(
        self,
        item: ContentQueueItem,
        report: ContentBatchReport | None = None,
    ) -> ContentStatus | None:
        report = report if report is not None else ContentBatchReport()
        event_id = item.raw_event_id

        try:
            event = await self.events.get_event(event_id)
        except Exception as exc:
            logger.warning("raw event lookup failed for %s: %s", event_id, exc)
            status = await self.queue.mark_failed(
                item.id,
                f"Raw event lookup failed: {exc}",
                is_retryable_error(exc),
                worker_id=self.worker_id,
            )
            _count(report, status)
            return status

        if event is None:
            await self.queue.mark_skipped(item.id, EVENT_NOT_FOUND, worker_id=self.worker_id)
            report.skipped += 1
            return ContentStatus.SKIPPED
        if event.get("article_generated"):
            await self.queue.mark_skipped(item.id, ARTICLE_ALREADY_GENERATED, worker_id=self.worker_id)
            report.skipped += 1
            return ContentStatus.SKIPPED

        try:
            await self.events.mark_event(event_id, "processing")
            article = await self.generator.generate(event, event_id)
            await self.events.mark_event(event_id, "processed", article_generated=True)
            await self.queue.mark_completed(item.id, article.article_id, worker_id=self.worker_id)
        except Exception as exc:
            logger.exception("article generation failed for event %s", event_id)
            status = await self.queue.mark_failed(
                item.id,
                str(exc),
                is_retryable_error(exc),
                worker_id=self.worker_id,
            )
            _count(report, status)
            await self.events.mark_event(
                event_id,
                "new" if status == ContentStatus.PENDING else "error",
                error=str(exc),
            )
            return status

        report.completed += 1
        report.article_ids.append(article.article_id)
        report.estimated_cost_usd += article.estimated_cost_usd
        logger.info("generated article %s for event %s", article.article_id, event_id)

        if self.social_enabled and self.producer is not None:
            await enqueue_social_posts(self.producer, article, site_url=self.site_url)
        return ContentStatus.COMPLETED

    async def _settle_after_error(
        self,
        item: ContentQueueItem,
        exc: Exception,
        report: ContentBatchReport,
    ) -> ContentStatus | None:
        # None when the item was already settled or the queue is unreachable; the claim then lapses
        try:
            status = await self.queue.mark_failed(item.id, str(exc), is_retryable_error(exc), worker_id=self.worker_id)
        except Exception:
            logger.exception("could not record failure for content item id=%s", item.id)
            return None
        _count(report, status)
        return status


def _count(report: ContentBatchReport, status: ContentStatus | None) -> None:
    if status == ContentStatus.PENDING:
        report.retried += 1
    elif status == ContentStatus.FAILED:
        report.failed += 1
