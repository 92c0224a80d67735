"""
backend/kickoff/services/rate_limiter.py

Purpose:
    Process-local requests-per-minute limiter for upstream providers. One
    token bucket per provider key; callers await ``acquire`` before each
    request and are delayed until a token is available.

Dependencies:
    - asyncio
    - time
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class _Bucket:
    capacity: float
    per_second: float
    tokens: float
    stamp: float
    waits: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.stamp)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.per_second)
        self.stamp = now


class RateLimiter:
    def __init__(self, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._buckets: dict[str, _Bucket] = {}
        self._monotonic = monotonic

    def _bucket(self, key: str, rpm: int) -> _Bucket:
        capacity = max(1.0, float(rpm))
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(capacity=capacity, per_second=capacity / 60.0, tokens=capacity, stamp=self._monotonic())
            self._buckets[key] = bucket
        elif bucket.capacity != capacity:
            bucket.capacity = capacity
            bucket.per_second = capacity / 60.0
            bucket.tokens = min(bucket.tokens, capacity)
        return bucket

    async def acquire(self, key: str, rpm: int | None) -> float:
        """Take one token for ``key``. Returns the seconds spent waiting."""
        if not rpm or int(rpm) <= 0:
            return 0.0
        bucket = self._bucket(key.strip().lower(), int(rpm))
        waited = 0.0
        while True:
            async with bucket.lock:
                bucket.refill(self._monotonic())
                if bucket.tokens >= 1.0:
                    bucket.tokens -= 1.0
                    return waited
                wait = (1.0 - bucket.tokens) / bucket.per_second
                bucket.waits += 1
            await asyncio.sleep(wait)
            waited += wait

    def snapshot(self) -> dict[str, dict[str, float]]:
        return {
            key: {"capacity": b.capacity, "tokens": round(b.tokens, 2), "waits": b.waits}
            for key, b in self._buckets.items()
        }
