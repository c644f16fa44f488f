from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    log_level: str = "INFO"

    worker_id: str | None = None
    poll_interval_seconds: float = 1.0
    max_concurrent_jobs: int = 3
    job_types: str | None = None
    shutdown_timeout_seconds: float = 30.0
    job_claim_timeout_seconds: float = 300.0
    max_run_seconds: float | None = None

    default_priority: int = 5
    default_max_retries: int = 3
    default_retry_delay_ms: int = 1000
    default_timeout_ms: int = 60000
    completed_retention_days: int = 7
    dead_letter_retention_days: int = 30

    content_queue_default_priority: int = 50
    content_queue_claim_timeout_seconds: float = 900.0
    content_queue_max_attempts: int = 3
    content_queue_batch_size: int = 3
    content_queue_interval_seconds: float = 120.0
    content_pipeline: str | None = None

    site_url: str = "https://worldunderwater.org"
    social_automation_enabled: bool = False
    social_webhook_url: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    twitter_bearer_token: str | None = None
    social_request_timeout_seconds: float = 10.0

    ops_api_key: str | None = None

    otel_enabled: bool = True
    otel_service_name: str = "underwater-jobs"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="UWJ_", extra="ignore")

    def job_type_filter(self) -> list[str] | None:
        if not self.job_types:
            return None
        types = [chunk.strip() for chunk in self.job_types.split(",") if chunk.strip()]
        return types or None


@lru_cache
def get_settings() -> Settings:
    return Settings()
