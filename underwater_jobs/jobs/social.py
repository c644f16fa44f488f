from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from underwater_jobs.core.config import Settings
from underwater_jobs.jobs.errors import is_retryable_error
from underwater_jobs.jobs.executor import JobResult
from underwater_jobs.jobs.worker import HandlerRegistration, QueueWorker
from underwater_jobs.schemas.jobs import GeneratedArticle, JobType, SocialPostPayload
from underwater_jobs.services.job_store import RepositoryError
from underwater_jobs.services.producer import JobProducer

logger = logging.getLogger(__name__)

TWITTER_API_URL = "https://api.twitter.com/2/tweets"
TELEGRAM_API_URL = "https://api.telegram.org"
POST_HASHTAGS = "#ClimateChange #Survival"

SOCIAL_CHANNELS = {
    JobType.POST_TWITTER.value: "twitter",
    JobType.POST_TELEGRAM.value: "telegram",
    JobType.POST_WEBHOOK.value: "webhook",
}

SOCIAL_JOB_DEFAULTS: dict[str, dict[str, int]] = {
    JobType.POST_TWITTER.value: {"priority": 5, "max_retries": 3, "retry_delay_ms": 5000, "timeout_ms": 30000},
    JobType.POST_TELEGRAM.value: {"priority": 5, "max_retries": 3, "retry_delay_ms": 5000, "timeout_ms": 30000},
    JobType.POST_WEBHOOK.value: {"priority": 3, "max_retries": 2, "retry_delay_ms": 10000, "timeout_ms": 15000},
}


@dataclass(slots=True)
class NotificationResult:
    ok: bool
    error: str | None = None
    retryable: bool = True
    skipped: bool = False


class Notifier(Protocol):
    async def send(self, recipient: str, message: SocialPostPayload) -> NotificationResult: ...


class HttpNotifier:
    """Posts social messages over HTTP; a channel without credentials is a silent no-op."""

    def __init__(
        self,
        *,
        twitter_bearer_token: str | None = None,
        telegram_bot_token: str | None = None,
        telegram_chat_id: str | None = None,
        webhook_url: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.twitter_bearer_token = twitter_bearer_token
        self.telegram_bot_token = telegram_bot_token
        self.telegram_chat_id = telegram_chat_id
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> "HttpNotifier":
        return cls(
            twitter_bearer_token=settings.twitter_bearer_token,
            telegram_bot_token=settings.telegram_bot_token,
            telegram_chat_id=settings.telegram_chat_id,
            webhook_url=settings.social_webhook_url,
            timeout_seconds=settings.social_request_timeout_seconds,
            client=client,
        )

    async def send(self, recipient: str, message: SocialPostPayload) -> NotificationResult:
        request = self._build_request(recipient, message)
        if request is None:
            logger.debug("social channel %s not configured; skipping post for %s", recipient, message.slug)
            return NotificationResult(ok=True, skipped=True)

        url, headers, body = request
        try:
            if self._client is not None:
                response = await self._client.post(url, headers=headers, json=body)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, headers=headers, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            return NotificationResult(ok=False, error=f"{recipient}: {exc}", retryable=is_retryable_error(exc))

        logger.info("posted article %s to %s", message.slug, recipient)
        return NotificationResult(ok=True)

    def _build_request(
        self,
        recipient: str,
        message: SocialPostPayload,
    ) -> tuple[str, dict[str, str], dict[str, Any]] | None:
        if recipient == "twitter":
            if not self.twitter_bearer_token:
                return None
            return (
                TWITTER_API_URL,
                {"Authorization": f"Bearer {self.twitter_bearer_token}"},
                {"text": message.text},
            )

        if recipient == "telegram":
            if not self.telegram_bot_token or not self.telegram_chat_id:
                return None
            base = f"{TELEGRAM_API_URL}/bot{self.telegram_bot_token}"
            if message.image_url:
                return (
                    f"{base}/sendPhoto",
                    {},
                    {"chat_id": self.telegram_chat_id, "photo": message.image_url, "caption": message.text},
                )
            return f"{base}/sendMessage", {}, {"chat_id": self.telegram_chat_id, "text": message.text}

        if recipient == "webhook":
            if not self.webhook_url:
                return None
            return (
                self.webhook_url,
                {},
                {"text": message.text, "image_url": message.image_url, "slug": message.slug},
            )

        raise ValueError(f"unknown social channel: {recipient}")


def build_post_text(article: GeneratedArticle, site_url: str) -> str:
    url = f"{site_url.rstrip('/')}/article/{article.slug}"
    return f"{article.title} {POST_HASHTAGS} {url}"


def make_social_handler(job_type: str, notifier: Notifier):
    channel = SOCIAL_CHANNELS[job_type]

    async def handle(payload: dict[str, Any]) -> JobResult:
        try:
            message = SocialPostPayload.model_validate(payload)
        except ValidationError:
            return JobResult.failed("Invalid payload: missing required fields", retryable=False)

        result = await notifier.send(channel, message)
        if result.ok:
            return JobResult.ok({"channel": channel, "skipped": result.skipped})
        return JobResult.failed(result.error or "Social post failed", retryable=result.retryable)

    return handle


def register_social_handlers(worker: QueueWorker, notifier: Notifier) -> None:
    for job_type in SOCIAL_CHANNELS:
        defaults = SOCIAL_JOB_DEFAULTS[job_type]
        worker.register_handler(
            HandlerRegistration(
                type=job_type,
                handler=make_social_handler(job_type, notifier),
                timeout_ms=defaults["timeout_ms"],
                max_retries=defaults["max_retries"],
                retry_delay_ms=defaults["retry_delay_ms"],
                priority=defaults["priority"],
            )
        )


async def enqueue_social_posts(producer: JobProducer, article: GeneratedArticle, *, site_url: str) -> list[str]:
    """Fan a freshly published article out to one job per social channel.

    A channel whose enqueue fails is logged and skipped so the others still go out.
    """
    payload = SocialPostPayload(
        article_id=article.article_id,
        slug=article.slug,
        title=article.title,
        text=build_post_text(article, site_url),
        image_url=article.image_url,
    ).model_dump()

    job_ids: list[str] = []
    for job_type, defaults in SOCIAL_JOB_DEFAULTS.items():
        try:
            job_ids.append(await producer.enqueue(job_type, payload, **defaults))
        except RepositoryError as exc:
            logger.warning("failed to enqueue %s for article %s: %s", job_type, article.slug, exc)
    return job_ids
