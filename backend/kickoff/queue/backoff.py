"""
backend/kickoff/queue/backoff.py

Purpose:
    Retry delay per failure kind. Rate limits wait a fixed interval, timeouts
    back off linearly, everything else exponentially with jitter. Both grown
    schedules are capped.

Dependencies:
    - random
    - kickoff.errors
"""

from __future__ import annotations

import random
from typing import Callable

from kickoff.errors import ErrorKind, RateLimitedError
from kickoff.queue.models import BackoffPolicy


def backoff_delay(
    kind: ErrorKind,
    attempt: int,
    policy: BackoffPolicy,
    *,
    error: BaseException | None = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before the next attempt. ``attempt`` is the 1-based try that just failed."""
    attempt = max(1, int(attempt))

    if kind is ErrorKind.RATE_LIMITED:
        if isinstance(error, RateLimitedError) and error.retry_after:
            return max(float(error.retry_after), 0.0)
        return policy.rate_limit_seconds

    if kind is ErrorKind.TIMEOUT:
        return min(policy.timeout_step_seconds * attempt, policy.timeout_max_seconds)

    base = min(policy.base_seconds * (2 ** (attempt - 1)), policy.max_seconds)
    spread = base * policy.jitter
    jittered = base - spread + (2 * spread * rand())
    return max(0.0, min(jittered, policy.max_seconds))
