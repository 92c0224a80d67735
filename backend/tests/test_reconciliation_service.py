"""
backend/tests/test_reconciliation_service.py

Purpose:
    Backfill sweep for missing stage artifacts and stuck-match repair.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from kickoff.models.artifacts import Analysis
from kickoff.models.match import FixtureData, MatchStatus, Tendency
from kickoff.models.prediction import Prediction
from kickoff.queue.models import JobState
from kickoff.services.reconciliation_service import ReconciliationService


async def _seed(store, clock, external_id: str, hours: float, **changes):
    match, _ = await store.upsert_fixture(
        FixtureData(
            external_id=external_id, home_team="Home", away_team="Away",
            kickoff=clock() + timedelta(hours=hours),
        ),
        clock(),
    )
    if changes:
        match = await store.update_match(match.id, changes, clock())
    return match


@pytest.mark.asyncio
async def test_sweep_requeues_missing_stages_inside_windows(store, queues, clock) -> None:
    soon = await _seed(store, clock, "ext-1", 1)
    later = await _seed(store, clock, "ext-2", 10)
    far = await _seed(store, clock, "ext-3", 30)
    await store.save_analysis(Analysis(match_id=soon.id, data={"x": 1}, fetched_at=clock()))
    service = ReconciliationService(store, queues, clock=clock)

    result = await service.sweep()

    assert result["missing"]["analysis"] == 1
    assert await queues.get_job("analysis", f"backfill-analyze-{later.id}") is not None
    assert await queues.get_job("analysis", f"backfill-analyze-{soon.id}") is None
    assert await queues.get_job("analysis", f"backfill-analyze-{far.id}") is None
    assert await queues.get_job("odds", f"backfill-odds-{soon.id}") is not None
    assert await queues.get_job("lineups", f"backfill-lineups-{soon.id}") is not None
    assert await queues.get_job("predictions", f"backfill-predict-{soon.id}") is not None
    assert await queues.get_job("predictions", f"backfill-predict-{later.id}") is None


@pytest.mark.asyncio
async def test_sweep_is_idempotent_while_jobs_pending(store, queues, clock) -> None:
    await _seed(store, clock, "ext-1", 1)
    service = ReconciliationService(store, queues, clock=clock)

    first = await service.sweep()
    second = await service.sweep()

    assert first["queued"]["odds"] == 1
    assert second["missing"]["odds"] == 1
    assert second["queued"]["odds"] == 0


@pytest.mark.asyncio
async def test_sweep_enqueues_settlement_for_finished_match_with_pending_predictions(store, queues, clock) -> None:
    match = await _seed(
        store, clock, "ext-1", -3, status=MatchStatus.finished, home_score=2, away_score=1,
    )
    await store.insert_prediction(Prediction(
        match_id=match.id, model_id="a", requested_model_id="a",
        home_score=2, away_score=1, tendency=Tendency.home, created_at=clock(),
    ))
    service = ReconciliationService(store, queues, clock=clock)

    result = await service.sweep()

    assert result["queued"]["settlement"] == 1
    job = await queues.get_job("settlement", f"settle-{match.id}")
    assert job.priority == 1


@pytest.mark.asyncio
async def test_repair_kicks_poller_for_overdue_scheduled_match(store, queues, clock) -> None:
    match = await _seed(store, clock, "ext-1", -0.5)
    service = ReconciliationService(store, queues, clock=clock)

    result = await service.repair_stuck()

    assert result["scheduled_past_kickoff"] == 1
    job = await queues.get_job("live", f"live-{match.id}")
    assert job.state == JobState.waiting
    assert job.type == "monitor-live"


@pytest.mark.asyncio
async def test_repair_skips_live_match_with_active_poller(store, queues, clock) -> None:
    polled = await _seed(store, clock, "ext-1", -1, status=MatchStatus.live)
    orphan = await _seed(store, clock, "ext-2", -1, status=MatchStatus.live)
    await queues.enqueue("live", "monitor-live", {"match_id": polled.id}, job_id=f"live-{polled.id}", delay=60)
    service = ReconciliationService(store, queues, clock=clock)

    result = await service.repair_stuck()

    assert result["live_without_poller"] == 1
    assert (await queues.get_job("live", f"live-{orphan.id}")).state == JobState.waiting
    assert (await queues.get_job("live", f"live-{polled.id}")).state == JobState.delayed


@pytest.mark.asyncio
async def test_repair_replaces_finished_poller_record(store, queues, clock) -> None:
    match = await _seed(store, clock, "ext-1", -1, status=MatchStatus.live)
    await queues.enqueue("live", "monitor-live", {"match_id": match.id}, job_id=f"live-{match.id}")
    job = await queues.store.claim("live", "w1", clock(), 30)
    await queues.store.complete("live", job.id, "w1", {"status": "max_polls_reached"}, clock())
    service = ReconciliationService(store, queues, clock=clock)

    result = await service.repair_stuck()

    assert result["live_without_poller"] == 1
    assert (await queues.get_job("live", f"live-{match.id}")).state == JobState.waiting
