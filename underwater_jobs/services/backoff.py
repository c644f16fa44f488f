from __future__ import annotations

import random

MAX_RETRY_DELAY_MS = 60 * 60 * 1000
JITTER_RATIO = 0.25


def next_delay_ms(attempt: int, base_delay_ms: int, *, rng: random.Random | None = None) -> int:
    """Exponential backoff with symmetric jitter.

    ``attempt`` is zero-based: the first retry of a job uses ``attempt=0``.
    The exponential part is capped at one hour before jitter is applied, the
    jittered value is clamped to the same ceiling, and the result is never
    below ``base_delay_ms``.
    """
    if base_delay_ms <= 0:
        raise ValueError("base_delay_ms must be positive")

    exponent = max(0, attempt)
    # 2**22 ms already exceeds the cap, so larger exponents add nothing
    exponential = base_delay_ms * (2 ** min(exponent, 32))
    capped = min(exponential, MAX_RETRY_DELAY_MS)
    source = rng if rng is not None else random
    jitter = capped * JITTER_RATIO * source.uniform(-1.0, 1.0)
    return max(base_delay_ms, min(MAX_RETRY_DELAY_MS, round(capped + jitter)))


def should_retry(*, attempts: int, max_retries: int, retryable: bool) -> bool:
    # attempts counts claims, so the job has run `attempts` times including this one
    return retryable and attempts <= max_retries
