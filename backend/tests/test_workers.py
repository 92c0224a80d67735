"""
backend/tests/test_workers.py

Purpose:
    Job handlers run through their queue's worker pool: moot jobs complete as
    skipped, stage data is stored, and the maintenance jobs do their sweeps.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from kickoff.config import Settings
from kickoff.errors import ModelSpecificError
from kickoff.models.match import FixtureData, MatchStatus
from kickoff.queue.models import JobState
from kickoff.runtime import build_pipeline
from kickoff.services.event_handlers import JOB_CALCULATE_STATS
from kickoff.workers.maintenance import JOB_MODEL_RECOVERY, JOB_PRUNE_JOBS
from test_admin_router import _NoOdds, _NoSports, _Predictor


@pytest.fixture
def pipeline(clock):
    return build_pipeline(
        Settings(_env_file=None, STORE_BACKEND="memory", LLM_MODELS="a", LLM_FALLBACKS=""),
        sports=_NoSports(), odds=_NoOdds(), predictors=[_Predictor("a")], clock=clock,
    )


def _pool(pipeline, queue):
    return next(p for p in pipeline.pools if p.queue == queue)


async def _match(pipeline, clock, **changes):
    match, _ = await pipeline.store.upsert_fixture(
        FixtureData(external_id="ext-1", home_team="A", away_team="B", kickoff=clock() + timedelta(hours=5)),
        clock(),
    )
    if changes:
        match = await pipeline.store.update_match(match.id, changes, clock())
    return match


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("queue", "job_type"),
    [("analysis", "analyze-match"), ("odds", "refresh-odds"), ("lineups", "fetch-lineups")],
)
async def test_stage_without_provider_data_completes_as_skipped(pipeline, clock, queue, job_type) -> None:
    match = await _match(pipeline, clock)
    await pipeline.queues.enqueue(queue, job_type, {"match_id": match.id}, job_id=f"{job_type}-1")

    await _pool(pipeline, queue).run_once()

    job = await pipeline.queues.get_job(queue, f"{job_type}-1")
    assert job.state == JobState.completed
    assert job.result["skipped"] is True


@pytest.mark.asyncio
async def test_stage_for_postponed_match_is_skipped(pipeline, clock) -> None:
    match = await _match(pipeline, clock, status=MatchStatus.postponed)
    await pipeline.queues.enqueue("predictions", "generate-predictions", {"match_id": match.id}, job_id="p-1")

    await _pool(pipeline, "predictions").run_once()

    job = await pipeline.queues.get_job("predictions", "p-1")
    assert job.state == JobState.completed
    assert "postponed" in job.result["reason"]


@pytest.mark.asyncio
async def test_job_without_match_id_is_dead_lettered(pipeline) -> None:
    await pipeline.queues.enqueue("settlement", "settle-match", {}, job_id="settle-broken")

    await _pool(pipeline, "settlement").run_once()

    job = await pipeline.queues.get_job("settlement", "settle-broken")
    assert job.state == JobState.failed
    assert await pipeline.queues.dead_letters.store.count() == 1


@pytest.mark.asyncio
async def test_missing_analysis_is_retried_with_backoff(pipeline, clock) -> None:
    match = await _match(pipeline, clock)
    await pipeline.queues.enqueue("predictions", "generate-predictions", {"match_id": match.id}, job_id="p-1")

    await _pool(pipeline, "predictions").run_once()

    job = await pipeline.queues.get_job("predictions", "p-1")
    assert job.state == JobState.delayed
    assert job.failure_history[0]["kind"] == "retryable"
    assert job.run_at > clock()


@pytest.mark.asyncio
async def test_model_recovery_job(pipeline, clock) -> None:
    for _ in range(5):
        await pipeline.health.record_failure("a", ModelSpecificError("bad"))
    clock.advance(minutes=61)
    await pipeline.queues.enqueue("maintenance", JOB_MODEL_RECOVERY, job_id="recovery-1")

    await _pool(pipeline, "maintenance").run_once()

    job = await pipeline.queues.get_job("maintenance", "recovery-1")
    assert job.result == {"recovered": ["a"]}


@pytest.mark.asyncio
async def test_stats_and_prune_jobs(pipeline, clock) -> None:
    pool = _pool(pipeline, "maintenance")
    await pipeline.queues.enqueue("maintenance", JOB_CALCULATE_STATS, job_id=JOB_CALCULATE_STATS)
    await pool.run_once()
    assert (await pipeline.queues.get_job("maintenance", JOB_CALCULATE_STATS)).result == {"models": 0}

    clock.advance(hours=49)
    await pipeline.queues.enqueue("maintenance", JOB_PRUNE_JOBS, job_id="prune-1")
    await pool.run_once()

    assert await pipeline.queues.get_job("maintenance", JOB_CALCULATE_STATS) is None
    prune = await pipeline.queues.get_job("maintenance", "prune-1")
    assert prune.result == {"pruned_jobs": 1, "expired_dead_letters": 0}
