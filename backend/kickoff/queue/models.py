"""
backend/kickoff/queue/models.py

Purpose:
    Job records, per-queue policy and handler outcome types shared by the job
    stores, the queue manager and the worker pool.

Dependencies:
    - pydantic
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class JobState(str, Enum):
    waiting = "waiting"
    delayed = "delayed"
    active = "active"
    completed = "completed"
    failed = "failed"


PENDING_STATES = (JobState.waiting, JobState.delayed)
TERMINAL_STATES = (JobState.completed, JobState.failed)


class EnqueueResult(str, Enum):
    accepted = "accepted"
    deduplicated = "deduplicated"


class QueueName(str, Enum):
    fixtures = "fixtures"
    analysis = "analysis"
    odds = "odds"
    lineups = "lineups"
    predictions = "predictions"
    live = "live"
    settlement = "settlement"
    backfill = "backfill"
    maintenance = "maintenance"


class Job(BaseModel):
    """One queued unit of work. ``(queue, id)`` is unique across all states."""
    id: str                                   # deterministic, e.g. "analyze-{match_id}"
    queue: str
    type: str
    payload: dict[str, Any] = {}
    priority: int = 10                        # lower runs first
    run_at: datetime
    attempts: int = 0                         # incremented on every claim
    max_attempts: int = 5
    state: JobState = JobState.waiting
    lock_until: Optional[datetime] = None
    locked_by: Optional[str] = None
    stall_count: int = 0
    seq: int = 0                              # FIFO tie-break
    result: Optional[dict[str, Any]] = None
    failed_reason: Optional[str] = None
    failure_history: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return job_key(self.queue, self.id)


def job_key(queue: str, job_id: str) -> str:
    return f"{queue}:{job_id}"


@dataclass(frozen=True)
class BackoffPolicy:
    rate_limit_seconds: float = 60.0
    timeout_step_seconds: float = 15.0
    timeout_max_seconds: float = 120.0
    base_seconds: float = 30.0
    max_seconds: float = 600.0
    jitter: float = 0.2


@dataclass(frozen=True)
class QueuePolicy:
    """Everything a worker pool needs to know about one named queue."""
    concurrency: int = 1
    lease_seconds: float = 30.0
    max_attempts: int = 5
    job_timeout_seconds: float = 120.0
    poll_interval_seconds: float = 1.0
    max_stalls: int = 1
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    dead_letter_non_retryable: bool = True


@dataclass(frozen=True)
class Skipped:
    """Handler outcome: the job became moot (match postponed, already processed)."""
    reason: str


@dataclass(frozen=True)
class Reschedule:
    """Handler outcome: run this same job record again after ``delay_seconds``."""
    delay_seconds: float
    payload: dict[str, Any] = field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
