"""
backend/kickoff/queue/manager.py

Purpose:
    Queue manager constructed once at startup and handed to every scheduler,
    worker and sweeper. Owns the job store, per-queue policies, per-queue
    circuit breakers and the dead-letter sink. Enqueue is idempotent on the
    deterministic job id.

Dependencies:
    - kickoff.queue.store / mongo_store
    - kickoff.queue.circuit_breaker
    - kickoff.queue.dead_letter
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from kickoff.queue.circuit_breaker import QueueCircuitBreaker
from kickoff.queue.dead_letter import DeadLetterSink
from kickoff.queue.models import (
    PENDING_STATES,
    TERMINAL_STATES,
    EnqueueResult,
    Job,
    JobState,
    QueuePolicy,
)
from kickoff.queue.store import JobStore
from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.queue.manager")


class QueueManager:
    def __init__(
        self,
        store: JobStore,
        dead_letters: DeadLetterSink,
        *,
        policies: dict[str, QueuePolicy] | None = None,
        default_policy: QueuePolicy | None = None,
        breaker_threshold: int = 5,
        breaker_window_seconds: float = 60.0,
        breaker_cooldown_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.dead_letters = dead_letters
        self.policies: dict[str, QueuePolicy] = dict(policies or {})
        self.default_policy = default_policy or QueuePolicy()
        self.clock = clock
        self._breaker_args = {
            "threshold": breaker_threshold,
            "window_seconds": breaker_window_seconds,
            "cooldown_seconds": breaker_cooldown_seconds,
        }
        self._breakers: dict[str, QueueCircuitBreaker] = {}

    # -- policy / breaker ------------------------------------------------

    def policy(self, queue: str) -> QueuePolicy:
        return self.policies.get(queue, self.default_policy)

    def queue_names(self) -> list[str]:
        return sorted(self.policies)

    def breaker(self, queue: str) -> QueueCircuitBreaker:
        breaker = self._breakers.get(queue)
        if breaker is None:
            breaker = QueueCircuitBreaker(queue, clock=self.clock, **self._breaker_args)
            self._breakers[queue] = breaker
        return breaker

    def is_paused(self, queue: str) -> bool:
        return self.breaker(queue).is_paused()

    def resume(self, queue: str) -> None:
        self.breaker(queue).reset()
        logger.info("Queue %s resumed manually", queue)

    # -- enqueue ---------------------------------------------------------

    async def enqueue(
        self,
        queue: str,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        job_id: str | None = None,
        delay: float = 0.0,
        priority: int = 10,
        max_attempts: int | None = None,
        replace_terminal: bool = False,
    ) -> EnqueueResult:
        """Add a job unless one with the same id already exists.

        ``replace_terminal`` first clears a completed/failed record with that id
        so a fresh attempt is not swallowed by the dedup check.
        """
        now = self.clock()
        job_id = job_id or f"{job_type}-{uuid.uuid4().hex}"
        if replace_terminal:
            if await self.store.remove_if(queue, job_id, TERMINAL_STATES):
                logger.info("Cleared terminal job %s:%s before re-enqueue", queue, job_id)

        delay = max(0.0, float(delay))
        job = Job(
            id=job_id,
            queue=queue,
            type=job_type,
            payload=dict(payload or {}),
            priority=priority,
            run_at=now + timedelta(seconds=delay),
            max_attempts=max_attempts or self.policy(queue).max_attempts,
            state=JobState.delayed if delay > 0 else JobState.waiting,
            created_at=now,
            updated_at=now,
        )
        if await self.store.add(job):
            logger.debug("Enqueued %s:%s (%s) delay=%.0fs", queue, job_id, job_type, delay)
            return EnqueueResult.accepted
        logger.debug("Deduplicated %s:%s", queue, job_id)
        return EnqueueResult.deduplicated

    async def cancel(self, queue: str, job_id: str) -> bool:
        """Drop a job that has not started yet."""
        return await self.store.remove_if(queue, job_id, PENDING_STATES)

    async def get_job(self, queue: str, job_id: str) -> Job | None:
        return await self.store.get(queue, job_id)

    # -- dead letters ----------------------------------------------------

    async def replay_dead_letter(self, queue: str, job_id: str) -> EnqueueResult | None:
        entry = await self.dead_letters.store.get(queue, job_id)
        if entry is None:
            return None
        result = await self.enqueue(
            entry.queue,
            entry.job_type,
            entry.payload,
            job_id=entry.job_id,
            priority=entry.priority,
            replace_terminal=True,
        )
        if result is EnqueueResult.accepted:
            await self.dead_letters.store.delete(queue, job_id)
            logger.info("Replayed dead-lettered job %s:%s", queue, job_id)
        return result

    # -- maintenance -----------------------------------------------------

    async def prune_completed(self, retention: timedelta) -> int:
        cutoff = self.clock() - retention
        removed = 0
        for queue in self.queue_names():
            removed += await self.store.prune_finished(queue, cutoff)
        if removed:
            logger.info("Pruned %d completed jobs older than %s", removed, cutoff.isoformat())
        return removed

    async def stats(self) -> list[dict[str, Any]]:
        rows = []
        for queue in self.queue_names():
            policy = self.policy(queue)
            rows.append({
                "queue": queue,
                "counts": await self.store.counts(queue),
                "concurrency": policy.concurrency,
                "max_attempts": policy.max_attempts,
                "lease_seconds": policy.lease_seconds,
                "circuit_breaker": self.breaker(queue).snapshot(),
            })
        return rows
