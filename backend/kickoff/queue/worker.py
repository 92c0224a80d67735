"""
backend/kickoff/queue/worker.py

Purpose:
    Per-queue worker pool. Each concurrency slot claims one job at a time,
    runs the handler registered for the job type under a lease that is
    renewed by a heartbeat, and maps the outcome onto the job store:
    completed, skipped, rescheduled, retried with backoff, or failed into the
    dead-letter sink. A stall sweeper returns jobs whose lease expired.

Dependencies:
    - asyncio
    - kickoff.errors
    - kickoff.queue.*
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable

from kickoff.errors import ErrorKind, error_kind, is_skip
from kickoff.queue.backoff import backoff_delay
from kickoff.queue.manager import QueueManager
from kickoff.queue.models import Job, Reschedule, Skipped

logger = logging.getLogger("kickoff.queue.worker")


@dataclass
class JobContext:
    job: Job
    manager: QueueManager
    heartbeat: Callable[[], Awaitable[bool]]


Handler = Callable[[Job, JobContext], Awaitable[Any]]


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class WorkerPool:
    def __init__(
        self,
        manager: QueueManager,
        queue: str,
        handlers: dict[str, Handler],
        *,
        worker_id: str | None = None,
    ) -> None:
        self.manager = manager
        self.queue = queue
        self.handlers = dict(handlers)
        self.policy = manager.policy(queue)
        self.worker_id = worker_id or f"{socket.gethostname()}:{queue}:{uuid.uuid4().hex[:8]}"
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for slot in range(max(1, self.policy.concurrency)):
            self._tasks.append(asyncio.create_task(self._slot_loop(slot), name=f"worker:{self.queue}:{slot}"))
        self._tasks.append(asyncio.create_task(self._stall_loop(), name=f"stalls:{self.queue}"))
        logger.info(
            "Worker pool started: queue=%s concurrency=%d handlers=%s",
            self.queue, self.policy.concurrency, sorted(self.handlers),
        )

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        logger.info("Worker pool stopped: queue=%s", self.queue)

    async def _slot_loop(self, slot: int) -> None:
        while self._running:
            try:
                job = await self.run_once()
            except Exception:
                # Store outage; keep the slot alive and try again next tick.
                logger.exception("Worker slot %s:%d crashed while claiming", self.queue, slot)
                job = None
            if job is None:
                await asyncio.sleep(self.policy.poll_interval_seconds)

    async def _stall_loop(self) -> None:
        interval = max(self.policy.lease_seconds, 1.0)
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.recover_stalled()
            except Exception:
                logger.exception("Stall sweep failed for queue %s", self.queue)

    async def recover_stalled(self) -> tuple[list[Job], list[Job]]:
        returned, failed = await self.manager.store.recover_stalled(
            self.queue, self.manager.clock(), self.policy.max_stalls,
        )
        for job in returned:
            logger.warning(
                "Job stalled, returned to waiting: queue=%s job_id=%s job_type=%s stalls=%d",
                job.queue, job.id, job.type, job.stall_count,
            )
        for job in failed:
            await self.manager.dead_letters.capture(job, error_kind="stalled", reason=job.failed_reason or "stalled")
        return returned, failed

    def lease_token(self) -> str:
        # Unique per claim; every later transition on the job must present it.
        return f"{self.worker_id}:{uuid.uuid4().hex[:12]}"

    async def run_once(self) -> Job | None:
        """Claim and fully process at most one job. Returns the claimed job."""
        if self.manager.is_paused(self.queue):
            return None
        job = await self.manager.store.claim(
            self.queue, self.lease_token(), self.manager.clock(), self.policy.lease_seconds,
        )
        if job is None:
            return None
        await self._process(job)
        return job

    async def _extend(self, job: Job) -> bool:
        until = self.manager.clock() + timedelta(seconds=self.policy.lease_seconds)
        ok = await self.manager.store.extend_lock(self.queue, job.id, job.locked_by, until)
        if not ok:
            logger.warning("Lost lease on job %s:%s while extending", self.queue, job.id)
        return ok

    async def _process(self, job: Job) -> None:
        handler = self.handlers.get(job.type)
        log_prefix = f"[{self.queue}:{job.id} type={job.type} attempt={job.attempts}/{job.max_attempts}]"
        if handler is None:
            await self._fail(job, ErrorKind.NON_RETRYABLE, f"no handler registered for job type {job.type!r}", dead_letter=True)
            return

        ctx = JobContext(job=job, manager=self.manager, heartbeat=lambda: self._extend(job))
        heartbeat = asyncio.create_task(self._heartbeat_for(job))
        try:
            outcome = await asyncio.wait_for(handler(job, ctx), timeout=self.policy.job_timeout_seconds)
        except Exception as exc:
            await self._on_error(job, exc, log_prefix)
            return
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        await self._on_success(job, outcome, log_prefix)

    async def _heartbeat_for(self, job: Job) -> None:
        interval = max(self.policy.lease_seconds / 3.0, 0.05)
        while True:
            await asyncio.sleep(interval)
            await self._extend(job)

    async def _on_success(self, job: Job, outcome: Any, log_prefix: str) -> None:
        store = self.manager.store
        now = self.manager.clock()
        self.manager.breaker(self.queue).record_success()

        if isinstance(outcome, Reschedule):
            payload = {**job.payload, **outcome.payload}
            run_at = now + timedelta(seconds=max(0.0, outcome.delay_seconds))
            ok = await store.reschedule(self.queue, job.id, job.locked_by, run_at, payload, now)
            logger.debug("%s rescheduled in %.0fs", log_prefix, outcome.delay_seconds)
        elif isinstance(outcome, Skipped):
            ok = await store.complete(
                self.queue, job.id, job.locked_by, {"skipped": True, "reason": outcome.reason}, now,
            )
            logger.info("%s skipped: %s", log_prefix, outcome.reason)
        else:
            result = outcome if isinstance(outcome, dict) or outcome is None else {"value": outcome}
            ok = await store.complete(self.queue, job.id, job.locked_by, result, now)
            logger.info("%s completed", log_prefix)

        if not ok:
            logger.warning("%s finished after its lease was lost; result not recorded", log_prefix)
        self.processed += 1

    async def _on_error(self, job: Job, exc: Exception, log_prefix: str) -> None:
        store = self.manager.store
        now = self.manager.clock()
        kind = error_kind(exc)
        reason = _describe(exc)
        if isinstance(exc, asyncio.TimeoutError) and not str(exc):
            reason = f"job exceeded timeout of {self.policy.job_timeout_seconds:.0f}s"

        if is_skip(exc):
            await store.complete(self.queue, job.id, job.locked_by, {"skipped": True, "reason": reason}, now)
            logger.info("%s skipped: %s", log_prefix, reason)
            self.processed += 1
            return

        if kind is ErrorKind.RATE_LIMITED:
            self.manager.breaker(self.queue).record_rate_limit()

        if kind is ErrorKind.NON_RETRYABLE:
            logger.error("%s failed permanently (%s): %s", log_prefix, kind.value, reason)
            await self._fail(job, kind, reason, dead_letter=self.policy.dead_letter_non_retryable)
            return

        if job.attempts >= job.max_attempts:
            logger.error("%s exhausted %d attempts (%s): %s", log_prefix, job.max_attempts, kind.value, reason)
            await self._fail(job, kind, reason, dead_letter=True)
            return

        delay = backoff_delay(kind, job.attempts, self.policy.backoff, error=exc)
        failure = {"attempt": job.attempts, "kind": kind.value, "error": reason, "at": now}
        ok = await store.retry_later(
            self.queue, job.id, job.locked_by, now + timedelta(seconds=delay), failure, now,
        )
        if ok:
            logger.warning("%s failed (%s), retrying in %.0fs: %s", log_prefix, kind.value, delay, reason)
        else:
            logger.warning("%s failed after its lease was lost: %s", log_prefix, reason)

    async def _fail(self, job: Job, kind: ErrorKind, reason: str, *, dead_letter: bool) -> None:
        now = self.manager.clock()
        failure = {"attempt": job.attempts, "kind": kind.value, "error": reason, "at": now}
        failed = await self.manager.store.fail(self.queue, job.id, job.locked_by, reason, failure, now)
        self.failed += 1
        if failed is not None and dead_letter:
            await self.manager.dead_letters.capture(failed, error_kind=kind.value, reason=reason)
