"""
backend/tests/test_settlement_service.py

Purpose:
    Settlement: quota plus points per prediction, idempotent re-runs,
    concurrent settlement races and partial failures.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from kickoff.errors import NonRetryableError, RetryableError
from kickoff.models.match import FixtureData, MatchStatus, tendency_of
from kickoff.models.prediction import Prediction, PredictionStatus
from kickoff.services.settlement_service import SettlementService
from kickoff.store.memory import InMemoryPipelineStore

PREDICTED = {"a": (2, 1), "b": (3, 2), "c": (3, 1), "d": (1, 1), "e": (0, 0), "f": (0, 1)}


class _RecordingBus:
    def __init__(self) -> None:
        self.events = []

    def publish(self, event) -> None:
        self.events.append(event)


class _FlakyStore(InMemoryPipelineStore):
    def __init__(self, broken: set[str]) -> None:
        super().__init__()
        self.broken = broken

    async def mark_scored(self, match_id, requested_model_id, points, now):
        if requested_model_id in self.broken:
            raise RuntimeError("write conflict")
        return await super().mark_scored(match_id, requested_model_id, points, now)


async def _finished_match(store, clock, *, score=(2, 1), predictions=PREDICTED, **changes):
    match, _ = await store.upsert_fixture(
        FixtureData(
            external_id="ext-9", home_team="Bayern", away_team="Dortmund",
            kickoff=clock() - timedelta(hours=2),
        ),
        clock(),
    )
    values = {"status": MatchStatus.finished, "home_score": score[0], "away_score": score[1]}
    values.update(changes)
    match = await store.update_match(match.id, values, clock())
    for model_id, (home, away) in predictions.items():
        await store.insert_prediction(Prediction(
            match_id=match.id, model_id=model_id, requested_model_id=model_id,
            home_score=home, away_score=away, tendency=tendency_of(home, away), created_at=clock(),
        ))
    return match


@pytest.mark.asyncio
async def test_settle_scores_every_prediction(store, clock) -> None:
    match = await _finished_match(store, clock)
    bus = _RecordingBus()
    service = SettlementService(store, bus=bus, clock=clock)

    result = await service.settle(match.id)

    assert result["status"] == "settled"
    assert result["scored"] == 6
    assert result["quota"] == {"home": 3, "draw": 3, "away": 5}
    totals = {p.requested_model_id: p.points.total for p in await store.list_predictions(match.id)}
    assert totals == {"a": 6, "b": 4, "c": 3, "d": 0, "e": 0, "f": 0}
    stored = await store.get_match(match.id)
    assert stored.quota.away == 5
    assert stored.settled_at == clock()
    assert [e.event_type for e in bus.events] == ["match.settled"]
    assert bus.events[0].final_score == {"home": 2, "away": 1}


@pytest.mark.asyncio
async def test_second_settlement_changes_nothing(store, clock) -> None:
    match = await _finished_match(store, clock)
    bus = _RecordingBus()
    service = SettlementService(store, bus=bus, clock=clock)
    await service.settle(match.id)
    before = await store.list_predictions(match.id)

    clock.advance(minutes=5)
    result = await service.settle(match.id)

    assert result["status"] == "already_settled"
    assert result["scored"] == 0
    assert await store.list_predictions(match.id) == before
    assert len(bus.events) == 1


@pytest.mark.asyncio
async def test_concurrent_settlements_score_each_prediction_once(store, clock) -> None:
    match = await _finished_match(store, clock)
    service = SettlementService(store, clock=clock)

    results = await asyncio.gather(*(service.settle(match.id) for _ in range(3)))

    assert sum(r["scored"] for r in results) == 6
    assert sorted(r["status"] for r in results) == ["already_settled", "already_settled", "settled"]
    assert await store.count_pending(match.id) == 0


@pytest.mark.asyncio
async def test_partial_failure_leaves_failed_rows_pending(clock) -> None:
    store = _FlakyStore({"b"})
    match = await _finished_match(store, clock)
    service = SettlementService(store, clock=clock)

    result = await service.settle(match.id)

    assert (result["scored"], result["failed"]) == (5, 1)
    pending = [p.requested_model_id for p in await store.list_predictions(match.id)
               if p.status == PredictionStatus.pending]
    assert pending == ["b"]

    store.broken.clear()
    retry = await service.settle(match.id)
    assert (retry["status"], retry["scored"]) == ("settled", 1)
    assert retry["quota"] == result["quota"]


@pytest.mark.asyncio
async def test_all_rows_failing_raises_retryable(clock) -> None:
    store = _FlakyStore(set(PREDICTED))
    match = await _finished_match(store, clock)

    with pytest.raises(RetryableError):
        await SettlementService(store, clock=clock).settle(match.id)
    assert (await store.get_match(match.id)).settled_at is None


@pytest.mark.asyncio
async def test_unfinished_match_is_skipped(store, clock) -> None:
    match = await _finished_match(store, clock, status=MatchStatus.live)

    with pytest.raises(NonRetryableError) as exc_info:
        await SettlementService(store, clock=clock).settle(match.id)
    assert exc_info.value.skip
    assert await store.count_pending(match.id) == 6


@pytest.mark.asyncio
async def test_finished_without_score_is_retryable(store, clock) -> None:
    match = await _finished_match(store, clock, home_score=None, away_score=None)

    with pytest.raises(RetryableError):
        await SettlementService(store, clock=clock).settle(match.id)


@pytest.mark.asyncio
async def test_unknown_match_is_skipped(store, clock) -> None:
    with pytest.raises(NonRetryableError):
        await SettlementService(store, clock=clock).settle("missing")
