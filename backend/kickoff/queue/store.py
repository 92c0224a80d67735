"""
backend/kickoff/queue/store.py

Purpose:
    Durable job store contract plus the in-process implementation used by tests
    and STORE_BACKEND=memory. All state transitions are conditional on the
    current state and lease holder so only one worker can own a job at a time.

Dependencies:
    - asyncio
    - kickoff.queue.models
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timedelta
from typing import Any, Protocol

from kickoff.queue.models import PENDING_STATES, Job, JobState, job_key

STALLED_REASON = "job stalled more than allowable limit"


class JobStore(Protocol):
    async def add(self, job: Job) -> bool:
        """Insert ``job``. Returns False when a record with the same id exists in any state."""
        ...

    async def get(self, queue: str, job_id: str) -> Job | None: ...

    async def remove(self, queue: str, job_id: str) -> bool: ...

    async def remove_if(self, queue: str, job_id: str, states: tuple[JobState, ...]) -> bool: ...

    async def claim(
        self, queue: str, worker_id: str, now: datetime, lease_seconds: float,
    ) -> Job | None:
        """Atomically take the next runnable job (priority, run_at, seq) and lease it."""
        ...

    async def extend_lock(self, queue: str, job_id: str, worker_id: str, until: datetime) -> bool: ...

    async def complete(
        self, queue: str, job_id: str, worker_id: str, result: dict[str, Any] | None, now: datetime,
    ) -> bool: ...

    async def retry_later(
        self, queue: str, job_id: str, worker_id: str, run_at: datetime,
        failure: dict[str, Any], now: datetime,
    ) -> bool: ...

    async def fail(
        self, queue: str, job_id: str, worker_id: str, reason: str,
        failure: dict[str, Any], now: datetime,
    ) -> Job | None: ...

    async def reschedule(
        self, queue: str, job_id: str, worker_id: str, run_at: datetime,
        payload: dict[str, Any], now: datetime,
    ) -> bool: ...

    async def recover_stalled(
        self, queue: str, now: datetime, max_stalls: int,
    ) -> tuple[list[Job], list[Job]]:
        """Return (jobs put back to waiting, jobs failed for stalling too often)."""
        ...

    async def counts(self, queue: str) -> dict[str, int]: ...

    async def list_jobs(self, queue: str, state: JobState | None = None, limit: int = 100) -> list[Job]: ...

    async def prune_finished(self, queue: str, before: datetime) -> int: ...


class InMemoryJobStore:
    """Job store backed by a dict guarded by one asyncio lock."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()
        self._seq = itertools.count(1)

    async def add(self, job: Job) -> bool:
        async with self._lock:
            if job.key in self._jobs:
                return False
            self._jobs[job.key] = job.model_copy(update={"seq": next(self._seq)}, deep=True)
            return True

    async def get(self, queue: str, job_id: str) -> Job | None:
        job = self._jobs.get(job_key(queue, job_id))
        return job.model_copy(deep=True) if job else None

    async def remove(self, queue: str, job_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(job_key(queue, job_id), None) is not None

    async def remove_if(self, queue: str, job_id: str, states: tuple[JobState, ...]) -> bool:
        async with self._lock:
            job = self._jobs.get(job_key(queue, job_id))
            if job is None or job.state not in states:
                return False
            del self._jobs[job.key]
            return True

    async def claim(
        self, queue: str, worker_id: str, now: datetime, lease_seconds: float,
    ) -> Job | None:
        async with self._lock:
            runnable = [
                job for job in self._jobs.values()
                if job.queue == queue and job.state in PENDING_STATES and job.run_at <= now
            ]
            if not runnable:
                return None
            job = min(runnable, key=lambda j: (j.priority, j.run_at, j.seq))
            job.state = JobState.active
            job.attempts += 1
            job.locked_by = worker_id
            job.lock_until = now + timedelta(seconds=lease_seconds)
            job.updated_at = now
            return job.model_copy(deep=True)

    def _owned(self, queue: str, job_id: str, worker_id: str) -> Job | None:
        job = self._jobs.get(job_key(queue, job_id))
        if job is None or job.state != JobState.active or job.locked_by != worker_id:
            return None
        return job

    async def extend_lock(self, queue: str, job_id: str, worker_id: str, until: datetime) -> bool:
        async with self._lock:
            job = self._owned(queue, job_id, worker_id)
            if job is None:
                return False
            job.lock_until = until
            return True

    async def complete(
        self, queue: str, job_id: str, worker_id: str, result: dict[str, Any] | None, now: datetime,
    ) -> bool:
        async with self._lock:
            job = self._owned(queue, job_id, worker_id)
            if job is None:
                return False
            job.state = JobState.completed
            job.result = result
            job.lock_until = None
            job.locked_by = None
            job.finished_at = now
            job.updated_at = now
            return True

    async def retry_later(
        self, queue: str, job_id: str, worker_id: str, run_at: datetime,
        failure: dict[str, Any], now: datetime,
    ) -> bool:
        async with self._lock:
            job = self._owned(queue, job_id, worker_id)
            if job is None:
                return False
            job.state = JobState.delayed
            job.run_at = run_at
            job.failed_reason = failure.get("error")
            job.failure_history.append(failure)
            job.lock_until = None
            job.locked_by = None
            job.updated_at = now
            return True

    async def fail(
        self, queue: str, job_id: str, worker_id: str, reason: str,
        failure: dict[str, Any], now: datetime,
    ) -> Job | None:
        async with self._lock:
            job = self._owned(queue, job_id, worker_id)
            if job is None:
                return None
            job.state = JobState.failed
            job.failed_reason = reason
            job.failure_history.append(failure)
            job.lock_until = None
            job.locked_by = None
            job.finished_at = now
            job.updated_at = now
            return job.model_copy(deep=True)

    async def reschedule(
        self, queue: str, job_id: str, worker_id: str, run_at: datetime,
        payload: dict[str, Any], now: datetime,
    ) -> bool:
        async with self._lock:
            job = self._owned(queue, job_id, worker_id)
            if job is None:
                return False
            job.state = JobState.delayed
            job.run_at = run_at
            job.payload = dict(payload)
            job.attempts = 0
            job.stall_count = 0
            job.lock_until = None
            job.locked_by = None
            job.updated_at = now
            return True

    async def recover_stalled(
        self, queue: str, now: datetime, max_stalls: int,
    ) -> tuple[list[Job], list[Job]]:
        returned: list[Job] = []
        failed: list[Job] = []
        async with self._lock:
            for job in self._jobs.values():
                if job.queue != queue or job.state != JobState.active:
                    continue
                if job.lock_until is None or job.lock_until > now:
                    continue
                job.lock_until = None
                job.locked_by = None
                job.updated_at = now
                if job.stall_count >= max_stalls:
                    job.state = JobState.failed
                    job.failed_reason = STALLED_REASON
                    job.failure_history.append(
                        {"attempt": job.attempts, "kind": "stalled", "error": STALLED_REASON, "at": now},
                    )
                    job.finished_at = now
                    failed.append(job.model_copy(deep=True))
                else:
                    job.stall_count += 1
                    job.state = JobState.waiting
                    returned.append(job.model_copy(deep=True))
        return returned, failed

    async def counts(self, queue: str) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            if job.queue == queue:
                counts[job.state.value] += 1
        return counts

    async def list_jobs(self, queue: str, state: JobState | None = None, limit: int = 100) -> list[Job]:
        jobs = [
            job for job in self._jobs.values()
            if job.queue == queue and (state is None or job.state == state)
        ]
        jobs.sort(key=lambda j: (j.run_at, j.seq))
        return [job.model_copy(deep=True) for job in jobs[:limit]]

    async def prune_finished(self, queue: str, before: datetime) -> int:
        async with self._lock:
            stale = [
                key for key, job in self._jobs.items()
                if job.queue == queue
                and job.state == JobState.completed
                and job.finished_at is not None
                and job.finished_at < before
            ]
            for key in stale:
                del self._jobs[key]
            return len(stale)
