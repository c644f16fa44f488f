from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ContentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobPriority(IntEnum):
    LOW = 1
    NORMAL = 5
    HIGH = 8
    CRITICAL = 10


class JobType(str, Enum):
    GENERATE_ARTICLE = "generate_article"
    POST_SOCIAL = "post_social"
    SEND_NEWSLETTER = "send_newsletter"
    REVALIDATE_CACHE = "revalidate_cache"
    INGEST_SOURCE = "ingest_source"
    GENERATE_THUMBNAIL = "generate_thumbnail"
    POST_TWITTER = "post_twitter"
    POST_TELEGRAM = "post_telegram"
    POST_WEBHOOK = "post_webhook"


class Job(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str
    type: str
    state: JobState = JobState.PENDING
    priority: int = JobPriority.NORMAL
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    max_retries: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 60000
    result: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    next_retry_at: datetime | None = None
    worker_id: str | None = None
    created_at: datetime
    updated_at: datetime


class DeadLetterEntry(BaseModel):
    id: str
    original_job_id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    attempts: int
    failed_at: datetime
    created_at: datetime


class ContentQueueItem(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: int
    raw_event_id: str
    status: ContentStatus = ContentStatus.PENDING
    priority: int = 50
    assigned_at: datetime | None = None
    worker_id: str | None = None
    attempts: int = 0
    max_attempts: int = 3
    article_id: str | None = None
    error_message: str | None = None
    created_at: datetime
    processed_at: datetime | None = None


class QueueMetrics(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0
    dead_letters: int = 0


class CleanupResult(BaseModel):
    completed_deleted: int = 0
    dead_letter_deleted: int = 0


class EnqueueRequest(BaseModel):
    type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = None
    max_retries: int | None = Field(default=None, ge=0)
    retry_delay_ms: int | None = Field(default=None, ge=1)
    timeout_ms: int | None = Field(default=None, ge=1)
    delay_ms: int | None = Field(default=None, ge=0)
    id: str | None = None


class EnqueueResponse(BaseModel):
    job_id: str


class CleanupRequest(BaseModel):
    completed_retention_days: int | None = Field(default=None, ge=0)
    dead_letter_retention_days: int | None = Field(default=None, ge=0)


class ContentEnqueueRequest(BaseModel):
    raw_event_id: str = Field(min_length=1)
    priority: int | None = None


class GeneratedArticle(BaseModel):
    article_id: str
    slug: str
    title: str
    estimated_cost_usd: float = 0.0
    image_url: str | None = None


class SocialPostPayload(BaseModel):
    article_id: str = Field(min_length=1)
    slug: str = Field(min_length=1)
    title: str = Field(min_length=1)
    text: str = Field(min_length=1)
    image_url: str | None = None
