from __future__ import annotations

import asyncpg  # type: ignore[import-untyped]

from underwater_jobs.services.claims import QueueTable

JOB_QUEUE_TABLE = QueueTable(
    name="job_queue",
    status_column="state",
    claimed_at_column="started_at",
    ready_predicates=("(next_retry_at is null or next_retry_at <= now())",),
    touch_column="updated_at",
)

CONTENT_QUEUE_TABLE = QueueTable(
    name="content_queue",
    status_column="status",
    claimed_at_column="assigned_at",
    key_type="bigint",
    ready_predicates=("attempts < max_attempts",),
)

JOB_QUEUE_DDL = """
create table if not exists job_queue (
  id text primary key,
  type text not null,
  state text not null default 'pending'
    check (state in ('pending', 'processing', 'completed', 'failed', 'cancelled')),
  priority integer not null default 5,
  payload jsonb not null default '{}'::jsonb,
  attempts integer not null default 0,
  max_retries integer not null default 3,
  retry_delay_ms integer not null default 1000,
  timeout_ms integer not null default 60000,
  result jsonb,
  error text,
  started_at timestamptz,
  completed_at timestamptz,
  failed_at timestamptz,
  next_retry_at timestamptz,
  worker_id text,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  constraint job_queue_worker_owns_processing check (worker_id is null or state = 'processing')
);

create index if not exists idx_job_queue_state_priority
  on job_queue (state, priority desc, created_at);

create index if not exists idx_job_queue_type_state
  on job_queue (type, state);

create index if not exists idx_job_queue_worker
  on job_queue (worker_id) where worker_id is not null;

create index if not exists idx_job_queue_next_retry
  on job_queue (next_retry_at) where next_retry_at is not null;

create table if not exists dead_letter_queue (
  id text primary key,
  original_job_id text not null,
  type text not null,
  payload jsonb not null,
  error text,
  attempts integer not null,
  failed_at timestamptz not null default now(),
  created_at timestamptz not null default now()
);

create index if not exists idx_dead_letter_created_at
  on dead_letter_queue (created_at);
"""

CONTENT_QUEUE_DDL = """
create table if not exists content_queue (
  id bigserial primary key,
  raw_event_id text not null unique,
  status text not null default 'pending'
    check (status in ('pending', 'processing', 'completed', 'failed', 'skipped')),
  priority integer not null default 50,
  assigned_at timestamptz,
  worker_id text,
  attempts integer not null default 0,
  max_attempts integer not null default 3,
  article_id text,
  error_message text,
  created_at timestamptz not null default now(),
  processed_at timestamptz
);

create index if not exists idx_content_queue_status_priority
  on content_queue (status, priority desc, created_at);

create index if not exists idx_content_queue_worker
  on content_queue (worker_id) where worker_id is not null;
"""


async def apply_ddl(pool: asyncpg.Pool, ddl: str) -> None:
    async with pool.acquire() as conn:
        async with conn.transaction():
            # serializes concurrent bootstraps from several worker processes
            await conn.execute("select pg_advisory_xact_lock(hashtext('underwater_jobs_schema'))")
            await conn.execute(ddl)
