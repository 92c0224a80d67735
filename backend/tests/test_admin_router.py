"""
backend/tests/test_admin_router.py

Purpose:
    Operator endpoints called directly with an in-memory pipeline: key guard,
    queue status and resume, dead-letter replay, model re-enable and manual
    settlement.
"""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from kickoff.config import Settings
from kickoff.errors import ModelSpecificError
from kickoff.models.match import FixtureData, MatchStatus
from kickoff.providers.base import OddsProvider, Predictor, SportsDataProvider
from kickoff.queue.models import JobState
from kickoff.routers import admin
from kickoff.runtime import build_pipeline


class _NoSports(SportsDataProvider):
    async def list_fixtures(self):
        return []

    async def get_fixture(self, external_id):
        return None

    async def get_match_context(self, fixture):
        return None

    async def get_lineups(self, external_id):
        return None


class _NoOdds(OddsProvider):
    async def get_odds(self, fixture):
        return None


class _Predictor(Predictor):
    def __init__(self, model_id: str) -> None:
        self.model_id = model_id

    async def call(self, system_prompt: str, user_prompt: str) -> str:
        return "1-0"


@pytest.fixture
def pipeline(clock):
    settings = Settings(_env_file=None, STORE_BACKEND="memory", LLM_MODELS="a,b", LLM_FALLBACKS="a:b")
    return build_pipeline(
        settings, sports=_NoSports(), odds=_NoOdds(),
        predictors=[_Predictor("a"), _Predictor("b")], clock=clock,
    )


def test_admin_key_guard(monkeypatch) -> None:
    monkeypatch.setattr(admin.settings, "ADMIN_API_KEY", "")
    with pytest.raises(HTTPException) as exc_info:
        admin.require_admin("anything")
    assert exc_info.value.status_code == 503

    monkeypatch.setattr(admin.settings, "ADMIN_API_KEY", "s3cret")
    with pytest.raises(HTTPException) as exc_info:
        admin.require_admin("wrong")
    assert exc_info.value.status_code == 401
    with pytest.raises(HTTPException):
        admin.require_admin(None)
    assert admin.require_admin("s3cret") is None


def test_get_pipeline_requires_running_pipeline(pipeline) -> None:
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))
    with pytest.raises(HTTPException) as exc_info:
        admin.get_pipeline(request)
    assert exc_info.value.status_code == 503

    request.app.state.pipeline = pipeline
    assert admin.get_pipeline(request) is pipeline


@pytest.mark.asyncio
async def test_queue_status_and_resume(pipeline) -> None:
    breaker = pipeline.queues.breaker("odds")
    for _ in range(5):
        breaker.record_rate_limit()
    assert pipeline.queues.is_paused("odds")

    status = await admin.queue_status(pipeline=pipeline)
    assert {row["queue"] for row in status["queues"]} >= {"odds", "settlement"}

    resumed = await admin.resume_queue("odds", pipeline=pipeline)
    assert resumed == {"queue": "odds", "paused": False}

    with pytest.raises(HTTPException) as exc_info:
        await admin.resume_queue("nope", pipeline=pipeline)
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_dead_letter_list_replay_and_delete(pipeline) -> None:
    queues = pipeline.queues
    pool = next(p for p in pipeline.pools if p.queue == "maintenance")
    await queues.enqueue("maintenance", "no-such-type", {"x": 1}, job_id="orphan")
    await pool.run_once()

    listed = await admin.list_dead_letters(queue=None, limit=100, pipeline=pipeline)
    assert listed["total"] == 1
    assert listed["items"][0]["job_id"] == "orphan"

    replayed = await admin.replay_dead_letter("maintenance", "orphan", pipeline=pipeline)
    assert replayed["result"] == "accepted"
    assert (await queues.get_job("maintenance", "orphan")).state == JobState.waiting

    with pytest.raises(HTTPException):
        await admin.delete_dead_letter("maintenance", "orphan", pipeline=pipeline)


@pytest.mark.asyncio
async def test_model_health_and_reenable(pipeline) -> None:
    for _ in range(5):
        await pipeline.health.record_failure("a", ModelSpecificError("bad"))

    report = await admin.model_health(pipeline=pipeline)
    rows = {row["model_id"]: row for row in report["models"]}
    assert rows["a"]["health"]["disabled"] is True
    assert rows["a"]["fallback"] == "b"
    assert rows["b"]["health"] is None

    body = await admin.reenable_model("a", pipeline=pipeline)
    assert body["disabled"] is False
    with pytest.raises(HTTPException):
        await admin.reenable_model("zzz", pipeline=pipeline)


@pytest.mark.asyncio
async def test_manual_settlement_trigger(pipeline, clock) -> None:
    match, _ = await pipeline.store.upsert_fixture(
        FixtureData(
            external_id="ext-1", home_team="A", away_team="B",
            kickoff=clock() - timedelta(hours=3), status=MatchStatus.finished, home_score=1, away_score=0,
        ),
        clock(),
    )

    first = await admin.trigger_settlement(match.id, pipeline=pipeline)
    second = await admin.trigger_settlement(match.id, pipeline=pipeline)

    assert first["enqueued"] is True
    assert second["result"] == "deduplicated"
    job = await pipeline.queues.get_job("settlement", f"settle-{match.id}")
    assert job.priority == 1

    with pytest.raises(HTTPException):
        await admin.trigger_settlement("missing", pipeline=pipeline)


@pytest.mark.asyncio
async def test_manual_sweep_and_bus_stats(pipeline) -> None:
    result = await admin.trigger_sweep(pipeline=pipeline)
    assert set(result) == {"sweep", "stuck"}

    stats = await admin.event_bus_stats(pipeline=pipeline)
    assert "match.settled:stats.recalculate" in stats["per_handler"]
