from __future__ import annotations

import re
import socket

import httpx

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

TRANSIENT_MESSAGE_PATTERN = re.compile(
    r"ECONNRESET|ETIMEDOUT|ENOTFOUND|EAI_AGAIN|rate limit|too many requests|temporar|timeout|\b(?:429|502|503|504)\b",
    re.IGNORECASE,
)


class JobError(Exception):
    """Failure raised by a handler that knows whether another attempt can help."""

    retryable = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class TransientInfrastructureError(JobError):
    retryable = True


class PermanentInputError(JobError):
    retryable = False


class ExecutionTimeout(TransientInfrastructureError):
    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Job timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, JobError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(exc, (TimeoutError, ConnectionError, socket.gaierror, httpx.TransportError)):
        return True
    return bool(TRANSIENT_MESSAGE_PATTERN.search(str(exc)))
