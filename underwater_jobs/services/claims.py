"""Claim and stale-release logic shared by every queue table.

A ``QueueTable`` describes the columns a queue keeps its claim bookkeeping in.
It renders the Postgres statements used by the asyncpg stores and applies the
same transitions to plain model rows for the in-memory stores, so both queue
specializations (generic jobs and content items) share one claim algorithm.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, TypeVar

RowT = TypeVar("RowT")


@dataclass(frozen=True, slots=True)
class QueueTable:
    name: str
    status_column: str
    claimed_at_column: str
    key_column: str = "id"
    key_type: str = "text"
    owner_column: str = "worker_id"
    attempts_column: str = "attempts"
    order_by: tuple[tuple[str, bool], ...] = (("priority", True), ("created_at", False))
    ready_predicates: tuple[str, ...] = ()
    touch_column: str | None = None
    pending_status: str = "pending"
    processing_status: str = "processing"

    def claim_sql(self, *extra_predicates: str) -> str:
        """Select-and-lock up to ``$2`` ready rows and hand them to owner ``$1``.

        Additional bind parameters used by ``extra_predicates`` start at ``$3``.
        """
        predicates = [f"{self.status_column} = '{self.pending_status}'", *self.ready_predicates, *extra_predicates]
        return f"""
            with picked as (
              select {self.key_column}
              from {self.name}
              where {" and ".join(predicates)}
              order by {self._order_sql()}
              limit $2
              for update skip locked
            )
            update {self.name} t
            set
              {self.status_column} = '{self.processing_status}',
              {self.owner_column} = $1,
              {self.claimed_at_column} = now(),
              {self.attempts_column} = t.{self.attempts_column} + 1{self._touch_sql()}
            from picked
            where t.{self.key_column} = picked.{self.key_column}
            returning t.*
            """

    def select_stale_sql(self) -> str:
        """Lock claims older than ``$1`` seconds, at most ``$2`` rows."""
        return f"""
            select *
            from {self.name}
            where {self.status_column} = '{self.processing_status}'
              and {self.claimed_at_column} is not null
              and {self.claimed_at_column} < now() - ($1::double precision * interval '1 second')
            order by {self.claimed_at_column} asc
            limit $2
            for update skip locked
            """

    def requeue_sql(self) -> str:
        """Return the rows keyed by ``$1`` to the pending pool."""
        return f"""
            update {self.name}
            set
              {self.status_column} = '{self.pending_status}',
              {self.owner_column} = null,
              {self.claimed_at_column} = null{self._touch_sql()}
            where {self.key_column} = any($1::{self.key_type}[])
              and {self.status_column} = '{self.processing_status}'
            """

    def pick(self, rows: Iterable[RowT], limit: int, ready: Callable[[RowT], bool] | None = None) -> list[RowT]:
        candidates = [
            row
            for row in rows
            if _status(getattr(row, self.status_column)) == self.pending_status and (ready is None or ready(row))
        ]
        # stable sorts applied last key first give the same order as the SQL clause
        for column, descending in reversed(self.order_by):
            candidates.sort(key=lambda row, column=column: getattr(row, column), reverse=descending)
        return candidates[: max(0, limit)]

    def mark_claimed(self, row: Any, owner: str, now: datetime) -> None:
        setattr(row, self.status_column, self.processing_status)
        setattr(row, self.owner_column, owner)
        setattr(row, self.claimed_at_column, now)
        setattr(row, self.attempts_column, getattr(row, self.attempts_column) + 1)
        self._touch(row, now)

    def stale(self, rows: Iterable[RowT], claim_timeout_seconds: float, now: datetime) -> list[RowT]:
        stale_rows = [
            row
            for row in rows
            if _status(getattr(row, self.status_column)) == self.processing_status
            and claim_expired(getattr(row, self.claimed_at_column), claim_timeout_seconds, now=now)
        ]
        stale_rows.sort(key=lambda row: getattr(row, self.claimed_at_column))
        return stale_rows

    def mark_requeued(self, row: Any, now: datetime) -> None:
        setattr(row, self.status_column, self.pending_status)
        setattr(row, self.owner_column, None)
        setattr(row, self.claimed_at_column, None)
        self._touch(row, now)

    def _touch(self, row: Any, now: datetime) -> None:
        if self.touch_column is not None:
            setattr(row, self.touch_column, now)

    def _order_sql(self) -> str:
        return ", ".join(f"{column} {'desc' if descending else 'asc'}" for column, descending in self.order_by)

    def _touch_sql(self) -> str:
        if self.touch_column is None:
            return ""
        return f",\n              {self.touch_column} = now()"


def claim_expired(claimed_at: datetime | None, claim_timeout_seconds: float, *, now: datetime) -> bool:
    if claimed_at is None:
        return False
    return claimed_at < now - timedelta(seconds=claim_timeout_seconds)


def _status(value: Any) -> str:
    return getattr(value, "value", value)
