"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: import path for the backend package plus a
    controllable clock and in-memory queue/store fixtures.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from kickoff.queue.dead_letter import DeadLetterSink, InMemoryDeadLetterStore  # noqa: E402
from kickoff.queue.manager import QueueManager  # noqa: E402
from kickoff.queue.models import BackoffPolicy, QueueName, QueuePolicy  # noqa: E402
from kickoff.queue.store import InMemoryJobStore  # noqa: E402
from kickoff.store.memory import InMemoryPipelineStore  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_policy(**overrides) -> QueuePolicy:
    values = {
        "concurrency": 1,
        "lease_seconds": 30.0,
        "max_attempts": 3,
        "job_timeout_seconds": 5.0,
        "poll_interval_seconds": 0.01,
        "max_stalls": 1,
        "backoff": BackoffPolicy(jitter=0.0),
    }
    values.update(overrides)
    return QueuePolicy(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_queues(clock, **policy_overrides) -> QueueManager:
    return QueueManager(
        InMemoryJobStore(),
        DeadLetterSink(InMemoryDeadLetterStore(), max_entries=100, alert_threshold=50, clock=clock),
        policies={q.value: make_policy(**policy_overrides) for q in QueueName},
        breaker_threshold=3,
        breaker_window_seconds=60,
        breaker_cooldown_seconds=60,
        clock=clock,
    )


@pytest.fixture
def queues(clock) -> QueueManager:
    return make_queues(clock)


@pytest.fixture
def store() -> InMemoryPipelineStore:
    return InMemoryPipelineStore()
