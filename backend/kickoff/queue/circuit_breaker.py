"""
backend/kickoff/queue/circuit_breaker.py

Purpose:
    Per-queue rate-limit circuit breaker. Counts RateLimited failures inside a
    sliding window; once the count reaches the threshold the queue is paused
    for a cooldown. In-flight jobs are unaffected, only new claims stop.

Dependencies:
    - collections.deque
    - kickoff.utils
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable

from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.queue.circuit_breaker")


class QueueCircuitBreaker:
    def __init__(
        self,
        queue: str,
        *,
        threshold: int = 5,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.queue = queue
        self.threshold = max(1, int(threshold))
        self.window = timedelta(seconds=window_seconds)
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._clock = clock
        self._hits: deque[datetime] = deque()
        self.paused_until: datetime | None = None
        self.trip_count = 0
        self.last_tripped_at: datetime | None = None

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._hits and self._hits[0] < cutoff:
            self._hits.popleft()

    def record_rate_limit(self) -> bool:
        """Count one throttling signal. Returns True when this call tripped the breaker."""
        now = self._clock()
        self._hits.append(now)
        self._prune(now)
        if self.paused_until is not None and now < self.paused_until:
            return False
        if len(self._hits) >= self.threshold:
            self.paused_until = now + self.cooldown
            self.trip_count += 1
            self.last_tripped_at = now
            logger.warning(
                "Circuit breaker OPEN for queue %s: %d rate limits in %ss, paused until %s",
                self.queue, len(self._hits), int(self.window.total_seconds()),
                self.paused_until.isoformat(),
            )
            return True
        return False

    def record_success(self) -> None:
        if self.paused_until is not None:
            logger.info("Circuit breaker reset for queue %s after success", self.queue)
        self.reset()

    def reset(self) -> None:
        self._hits.clear()
        self.paused_until = None

    def is_paused(self) -> bool:
        if self.paused_until is None:
            return False
        now = self._clock()
        if now >= self.paused_until:
            logger.info("Circuit breaker cooldown elapsed for queue %s, resuming", self.queue)
            self.reset()
            return False
        return True

    def snapshot(self) -> dict[str, Any]:
        now = self._clock()
        self._prune(now)
        return {
            "queue": self.queue,
            "paused": self.is_paused(),
            "paused_until": self.paused_until,
            "recent_rate_limits": len(self._hits),
            "threshold": self.threshold,
            "window_seconds": self.window.total_seconds(),
            "cooldown_seconds": self.cooldown.total_seconds(),
            "trip_count": self.trip_count,
            "last_tripped_at": self.last_tripped_at,
        }
