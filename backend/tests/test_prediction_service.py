"""
backend/tests/test_prediction_service.py

Purpose:
    Prediction fan-out: one prediction per requested model, fallback
    attribution, disabled models skipped and partial failures absorbed.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from kickoff.errors import ModelSpecificError, NonRetryableError, RateLimitedError, RetryableError
from kickoff.models.artifacts import Analysis
from kickoff.models.match import FixtureData, MatchStatus, Tendency
from kickoff.providers.base import Predictor
from kickoff.providers.registry import ProviderRegistry
from kickoff.queue.models import JobState
from kickoff.queue.worker import WorkerPool
from kickoff.services.model_health_service import ModelHealthService
from kickoff.services.prediction_fallback import PredictionFallbackOrchestrator
from kickoff.services.prediction_service import PredictionService


class _Predictor(Predictor):
    def __init__(self, model_id: str, reply: str | None = None):
        self.model_id = model_id
        self.reply = reply
        self.prompts: list[str] = []

    async def call(self, system_prompt: str, user_prompt: str) -> str:
        self.prompts.append(user_prompt)
        if self.reply is None:
            raise ModelSpecificError("empty body", provider_id=self.model_id)
        return self.reply


class _RecordingBus:
    def __init__(self) -> None:
        self.events = []

    def publish(self, event) -> None:
        self.events.append(event)


async def _scheduled_match(store, clock, *, with_analysis=True):
    match, _ = await store.upsert_fixture(
        FixtureData(
            external_id="ext-5", league_name="Bundesliga", home_team="Leipzig", away_team="Freiburg",
            kickoff=clock() + timedelta(minutes=30),
        ),
        clock(),
    )
    if with_analysis:
        await store.save_analysis(Analysis(match_id=match.id, data={"standings": []}, fetched_at=clock()))
    return match


def _service(store, clock, predictors, fallbacks=None, bus=None) -> PredictionService:
    registry = ProviderRegistry(predictors, fallbacks)
    health = ModelHealthService(store, clock=clock)
    orchestrator = PredictionFallbackOrchestrator(registry, health)
    return PredictionService(store, registry, orchestrator, health, bus=bus, clock=clock)


@pytest.mark.asyncio
async def test_generate_stores_one_prediction_per_model(store, clock) -> None:
    match = await _scheduled_match(store, clock)
    a = _Predictor("a", '{"home_score": 2, "away_score": 1}')
    b = _Predictor("b", "I think 0-0")
    bus = _RecordingBus()

    result = await _service(store, clock, [a, b], bus=bus).generate(match.id)

    assert result == {"inserted": 2, "failed": 0, "fallbacks": 0}
    rows = {p.requested_model_id: p for p in await store.list_predictions(match.id)}
    assert rows["a"].tendency == Tendency.home
    assert (rows["b"].home_score, rows["b"].away_score) == (0, 0)
    assert "Leipzig" in a.prompts[0]
    assert bus.events[0].model_ids == ["a", "b"]


@pytest.mark.asyncio
async def test_fallback_prediction_is_attributed_to_backend_used(store, clock) -> None:
    match = await _scheduled_match(store, clock)
    predictors = [_Predictor("a"), _Predictor("b", "1-2")]

    result = await _service(store, clock, predictors, {"a": "b"}).generate(match.id)

    assert result == {"inserted": 2, "failed": 0, "fallbacks": 1}
    rows = {p.requested_model_id: p for p in await store.list_predictions(match.id)}
    assert rows["a"].model_id == "b"
    assert rows["a"].used_fallback
    assert rows["b"].model_id == "b"
    assert not rows["b"].used_fallback


@pytest.mark.asyncio
async def test_partial_failure_then_retry_only_asks_missing_models(store, clock) -> None:
    match = await _scheduled_match(store, clock)
    a, b = _Predictor("a", "2-2"), _Predictor("b")
    service = _service(store, clock, [a, b])

    first = await service.generate(match.id)
    assert (first["inserted"], first["failed"]) == (1, 1)

    b.reply = "1-0"
    second = await service.generate(match.id)
    assert (second["inserted"], second["failed"]) == (1, 0)
    assert len(a.prompts) == 1
    assert len(await store.list_predictions(match.id)) == 2

    with pytest.raises(NonRetryableError) as exc_info:
        await service.generate(match.id)
    assert exc_info.value.skip


@pytest.mark.asyncio
async def test_disabled_models_are_not_asked(store, clock) -> None:
    match = await _scheduled_match(store, clock)
    a, b = _Predictor("a", "1-1"), _Predictor("b", "3-0")
    service = _service(store, clock, [a, b])
    for _ in range(5):
        await service.health.record_failure("b", ModelSpecificError("bad"))

    result = await service.generate(match.id)

    assert result["inserted"] == 1
    assert b.prompts == []


@pytest.mark.asyncio
async def test_all_models_failing_is_retryable(store, clock) -> None:
    match = await _scheduled_match(store, clock)

    with pytest.raises(RetryableError):
        await _service(store, clock, [_Predictor("a"), _Predictor("b")]).generate(match.id)
    assert await store.list_predictions(match.id) == []


@pytest.mark.asyncio
async def test_missing_analysis_is_retryable(store, clock) -> None:
    match = await _scheduled_match(store, clock, with_analysis=False)

    with pytest.raises(RetryableError):
        await _service(store, clock, [_Predictor("a", "1-0")]).generate(match.id)


@pytest.mark.asyncio
async def test_match_no_longer_scheduled_is_skipped(store, clock) -> None:
    match = await _scheduled_match(store, clock)
    await store.update_match(match.id, {"status": MatchStatus.postponed}, clock())

    with pytest.raises(NonRetryableError) as exc_info:
        await _service(store, clock, [_Predictor("a", "1-0")]).generate(match.id)
    assert exc_info.value.skip


class _Throttled(Predictor):
    def __init__(self, model_id: str, retry_after: float):
        self.model_id = model_id
        self.retry_after = retry_after
        self.calls = 0

    async def call(self, system_prompt: str, user_prompt: str) -> str:
        self.calls += 1
        raise RateLimitedError("429 Too Many Requests", retry_after=self.retry_after)


@pytest.mark.asyncio
async def test_all_models_throttled_raises_rate_limited_with_longest_wait(store, clock) -> None:
    match = await _scheduled_match(store, clock)
    service = _service(store, clock, [_Throttled("a", 20), _Throttled("b", 45)], {"a": "b"})

    with pytest.raises(RateLimitedError) as exc_info:
        await service.generate(match.id)

    assert exc_info.value.retry_after == 45
    assert await service.health.active_models(["a", "b"]) == ["a", "b"]


@pytest.mark.asyncio
async def test_throttled_prediction_jobs_back_off_and_pause_the_queue(store, clock, queues) -> None:
    match = await _scheduled_match(store, clock)
    a, b = _Throttled("a", 60), _Throttled("b", 60)
    service = _service(store, clock, [a, b], {"a": "b"})

    async def handler(job, ctx):
        return await service.generate(job.payload["match_id"])

    for i in range(3):
        await queues.enqueue("predictions", "generate-predictions", {"match_id": match.id}, job_id=f"predict-{i}")
    pool = WorkerPool(queues, "predictions", {"generate-predictions": handler}, worker_id="test-worker")

    for _ in range(3):
        await pool.run_once()

    first = await queues.get_job("predictions", "predict-0")
    assert first.state == JobState.delayed
    assert first.failure_history[-1]["kind"] == "rate_limited"
    assert first.run_at == clock() + timedelta(seconds=60)
    assert queues.is_paused("predictions") is True
    assert await pool.run_once() is None
    assert await queues.dead_letters.store.count() == 0


class _Rejected(Predictor):
    def __init__(self, model_id: str):
        self.model_id = model_id

    async def call(self, system_prompt: str, user_prompt: str) -> str:
        raise NonRetryableError(f"{self.model_id}: HTTP 401, check LLM_API_KEY")


@pytest.mark.asyncio
async def test_shared_credential_rejection_fails_stage_without_disabling_models(store, clock) -> None:
    match = await _scheduled_match(store, clock)
    service = _service(store, clock, [_Rejected("a"), _Rejected("b")], {"a": "b"})

    for _ in range(6):
        with pytest.raises(NonRetryableError) as exc_info:
            await service.generate(match.id)
        assert not exc_info.value.skip

    assert await service.health.active_models(["a", "b"]) == ["a", "b"]
