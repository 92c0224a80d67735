"""
backend/tests/test_circuit_breaker.py

Purpose:
    Sliding-window rate-limit circuit breaker per queue.
"""

from __future__ import annotations

from kickoff.queue.circuit_breaker import QueueCircuitBreaker


def test_breaker_trips_at_threshold_inside_window(clock) -> None:
    breaker = QueueCircuitBreaker("odds", threshold=3, window_seconds=60, cooldown_seconds=60, clock=clock)

    assert breaker.record_rate_limit() is False
    assert breaker.record_rate_limit() is False
    assert breaker.record_rate_limit() is True
    assert breaker.is_paused() is True
    assert breaker.snapshot()["trip_count"] == 1


def test_hits_outside_window_do_not_accumulate(clock) -> None:
    breaker = QueueCircuitBreaker("odds", threshold=3, window_seconds=60, cooldown_seconds=60, clock=clock)

    breaker.record_rate_limit()
    breaker.record_rate_limit()
    clock.advance(seconds=61)
    assert breaker.record_rate_limit() is False
    assert breaker.is_paused() is False


def test_breaker_resumes_after_cooldown(clock) -> None:
    breaker = QueueCircuitBreaker("live", threshold=1, window_seconds=60, cooldown_seconds=30, clock=clock)
    breaker.record_rate_limit()
    assert breaker.is_paused() is True

    clock.advance(seconds=29)
    assert breaker.is_paused() is True
    clock.advance(seconds=2)
    assert breaker.is_paused() is False
    assert breaker.snapshot()["recent_rate_limits"] == 0


def test_success_resets_breaker(clock) -> None:
    breaker = QueueCircuitBreaker("odds", threshold=2, window_seconds=60, cooldown_seconds=60, clock=clock)
    breaker.record_rate_limit()
    breaker.record_success()
    assert breaker.record_rate_limit() is False

    breaker.record_rate_limit()
    assert breaker.is_paused() is True
    breaker.reset()
    assert breaker.is_paused() is False
