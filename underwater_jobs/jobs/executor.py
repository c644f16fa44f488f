from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from underwater_jobs.jobs.errors import ExecutionTimeout

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobResult:
    success: bool
    data: Any = None
    error: str | None = None
    retryable: bool | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "JobResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str, *, retryable: bool | None = None) -> "JobResult":
        return cls(success=False, error=error, retryable=retryable)

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any]) -> "JobResult":
        """Read the tagged `{"success": ..., "data"|"error", "retryable"}` shape."""
        if not isinstance(value["success"], bool):
            raise TypeError(f"handler result \"success\" must be a bool, got {value['success']!r}")
        if value["success"]:
            return cls.ok(value.get("data"))
        retryable = value.get("retryable")
        return cls.failed(
            str(value.get("error") or "Unknown error"),
            retryable=None if retryable is None else bool(retryable),
        )


Handler = Callable[[dict[str, Any]], Awaitable[Any]]

# handler tasks that outlived their timeout; held so they are not garbage collected mid-flight
_ABANDONED_TASKS: set[asyncio.Task[Any]] = set()


async def run_handler(handler: Handler, payload: dict[str, Any], timeout_ms: int) -> JobResult:
    """Run ``handler`` against ``payload`` and race it against ``timeout_ms``.

    The handler is not cancelled when the timer wins: it keeps running in the
    background and its outcome is discarded. A mapping carrying a ``success``
    key is read as a tagged result; any other value that is not a
    ``JobResult`` is treated as a successful result payload.
    """
    task = asyncio.ensure_future(handler(payload))
    done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)

    if task not in done:
        _ABANDONED_TASKS.add(task)
        task.add_done_callback(_discard_abandoned)
        raise ExecutionTimeout(timeout_ms)

    value = task.result()
    if isinstance(value, JobResult):
        return value
    if isinstance(value, Mapping) and "success" in value:
        return JobResult.from_mapping(value)
    return JobResult.ok(value)


def abandoned_task_count() -> int:
    return len(_ABANDONED_TASKS)


def _discard_abandoned(task: asyncio.Task[Any]) -> None:
    _ABANDONED_TASKS.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info("handler finished after its timeout with error: %s", exc)
