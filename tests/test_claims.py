from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from underwater_jobs.services.claims import QueueTable, claim_expired
from underwater_jobs.services.schema import CONTENT_QUEUE_TABLE, JOB_QUEUE_TABLE

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _compact(sql: str) -> str:
    return " ".join(sql.split())


def test_job_claim_sql_locks_and_orders() -> None:
    sql = _compact(JOB_QUEUE_TABLE.claim_sql())
    assert "for update skip locked" in sql
    assert "where state = 'pending' and (next_retry_at is null or next_retry_at <= now())" in sql
    assert "order by priority desc, created_at asc" in sql
    assert "attempts = t.attempts + 1" in sql
    assert "updated_at = now()" in sql
    assert sql.endswith("returning t.*")


def test_claim_sql_appends_extra_predicates() -> None:
    sql = _compact(JOB_QUEUE_TABLE.claim_sql("type = any($3::text[])"))
    assert "<= now()) and type = any($3::text[]) order by" in sql


def test_content_requeue_sql_uses_bigint_keys() -> None:
    sql = _compact(CONTENT_QUEUE_TABLE.requeue_sql())
    assert "id = any($1::bigint[])" in sql
    assert "assigned_at = null" in sql
    assert "updated_at" not in sql


def test_stale_sql_filters_processing_rows() -> None:
    sql = _compact(CONTENT_QUEUE_TABLE.select_stale_sql())
    assert "status = 'processing'" in sql
    assert "assigned_at < now() - ($1::double precision * interval '1 second')" in sql


def test_pick_orders_by_priority_then_age() -> None:
    table = QueueTable(name="t", status_column="status", claimed_at_column="claimed_at")
    rows = [
        SimpleNamespace(id="old-low", status="pending", priority=1, created_at=NOW - timedelta(minutes=5)),
        SimpleNamespace(id="new-high", status="pending", priority=9, created_at=NOW),
        SimpleNamespace(id="old-high", status="pending", priority=9, created_at=NOW - timedelta(minutes=1)),
        SimpleNamespace(id="busy", status="processing", priority=10, created_at=NOW),
    ]

    picked = table.pick(rows, 10)

    assert [row.id for row in picked] == ["old-high", "new-high", "old-low"]
    assert [row.id for row in table.pick(rows, 1, ready=lambda row: row.priority < 5)] == ["old-low"]


def test_mark_claimed_and_requeued_round_trip() -> None:
    table = QueueTable(name="t", status_column="status", claimed_at_column="claimed_at", touch_column="updated_at")
    row = SimpleNamespace(status="pending", worker_id=None, claimed_at=None, attempts=0, updated_at=None)

    table.mark_claimed(row, "worker-a", NOW)
    assert (row.status, row.worker_id, row.claimed_at, row.attempts, row.updated_at) == (
        "processing",
        "worker-a",
        NOW,
        1,
        NOW,
    )

    later = NOW + timedelta(minutes=10)
    assert table.stale([row], 300, later) == [row]
    table.mark_requeued(row, later)
    assert (row.status, row.worker_id, row.claimed_at, row.attempts) == ("pending", None, None, 1)


def test_claim_expired() -> None:
    assert claim_expired(NOW - timedelta(seconds=301), 300, now=NOW)
    assert not claim_expired(NOW - timedelta(seconds=299), 300, now=NOW)
    assert not claim_expired(None, 300, now=NOW)
