"""
backend/tests/test_prediction_fallback.py

Purpose:
    Fallback orchestration: attribution to the backend that answered, cycle
    and depth guards, disabled fallbacks and per-backend health accounting.
"""

from __future__ import annotations

import pytest

from kickoff.errors import ModelSpecificError, RetryableError
from kickoff.providers.base import Predictor
from kickoff.providers.registry import FallbackConfigError, ProviderRegistry, parse_fallbacks
from kickoff.services.model_health_service import ModelHealthService
from kickoff.services.prediction_fallback import PredictionFallbackOrchestrator


class _ScriptedPredictor(Predictor):
    def __init__(self, model_id: str, reply: str | None = None, error: Exception | None = None):
        self.model_id = model_id
        self.reply = reply
        self.error = error
        self.calls = 0

    async def call(self, system_prompt: str, user_prompt: str) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.reply


def _bad(model_id: str) -> _ScriptedPredictor:
    return _ScriptedPredictor(model_id, error=ModelSpecificError("garbage", provider_id=model_id))


@pytest.mark.asyncio
async def test_primary_success_is_attributed_to_primary(store, clock) -> None:
    registry = ProviderRegistry([_ScriptedPredictor("a", "2-1"), _ScriptedPredictor("b", "0-0")], {"a": "b"})
    health = ModelHealthService(store, clock=clock)
    orchestrator = PredictionFallbackOrchestrator(registry, health)

    value, used = await orchestrator.predict("a", "sys", "user")

    assert (value, used) == ("2-1", "a")
    assert orchestrator.fallback_uses == 0
    assert (await store.get_model_health("a")).total_successes == 1


@pytest.mark.asyncio
async def test_fallback_answer_is_attributed_to_fallback(store, clock) -> None:
    primary, backup = _bad("a"), _ScriptedPredictor("b", "1-1")
    registry = ProviderRegistry([primary, backup], {"a": "b"})
    health = ModelHealthService(store, clock=clock)
    orchestrator = PredictionFallbackOrchestrator(registry, health)
    attempted: set[str] = set()

    value, used = await orchestrator.predict("a", "sys", "user", attempted)

    assert (value, used) == ("1-1", "b")
    assert attempted == {"a", "b"}
    assert orchestrator.fallback_uses == 1
    assert (await store.get_model_health("a")).consecutive_failures == 1
    assert (await store.get_model_health("b")).total_successes == 1


@pytest.mark.asyncio
async def test_validation_failure_triggers_fallback(store, clock) -> None:
    registry = ProviderRegistry([_ScriptedPredictor("a", "no idea"), _ScriptedPredictor("b", "3-0")], {"a": "b"})
    orchestrator = PredictionFallbackOrchestrator(registry, ModelHealthService(store, clock=clock))

    def validate(raw: str, provider_id: str) -> str:
        if "-" not in raw:
            raise ModelSpecificError("unparseable", provider_id=provider_id)
        return raw

    value, used = await orchestrator.predict("a", "sys", "user", validate=validate)
    assert (value, used) == ("3-0", "b")


@pytest.mark.asyncio
async def test_chain_stops_at_depth_limit_and_raises_original_error(store, clock) -> None:
    predictors = [_bad("a"), _bad("b"), _bad("c"), _ScriptedPredictor("d", "1-0")]
    registry = ProviderRegistry(predictors, {"a": "b", "b": "c", "c": "d"})
    orchestrator = PredictionFallbackOrchestrator(registry, max_depth=2)

    with pytest.raises(ModelSpecificError) as exc_info:
        await orchestrator.predict("a", "sys", "user")

    assert exc_info.value.provider_id == "a"
    assert [p.calls for p in predictors] == [1, 1, 1, 0]


@pytest.mark.asyncio
async def test_already_attempted_backend_is_not_retried(store, clock) -> None:
    a, b = _bad("a"), _ScriptedPredictor("b", "1-0")
    registry = ProviderRegistry([a, b], {"a": "b"})
    orchestrator = PredictionFallbackOrchestrator(registry)

    with pytest.raises(ModelSpecificError):
        await orchestrator.predict("a", "sys", "user", {"b"})
    assert b.calls == 0


@pytest.mark.asyncio
async def test_disabled_fallback_is_skipped(store, clock) -> None:
    a, b = _bad("a"), _ScriptedPredictor("b", "1-0")
    health = ModelHealthService(store, threshold=1, clock=clock)
    await health.record_failure("b", ModelSpecificError("dead"))
    orchestrator = PredictionFallbackOrchestrator(ProviderRegistry([a, b], {"a": "b"}), health)

    with pytest.raises(ModelSpecificError):
        await orchestrator.predict("a", "sys", "user")
    assert b.calls == 0


@pytest.mark.asyncio
async def test_non_model_failures_do_not_count_against_health(store, clock) -> None:
    registry = ProviderRegistry([_ScriptedPredictor("a", error=RetryableError("HTTP 503"))])
    health = ModelHealthService(store, clock=clock)
    orchestrator = PredictionFallbackOrchestrator(registry, health)

    with pytest.raises(RetryableError):
        await orchestrator.predict("a", "sys", "user")
    assert await store.get_model_health("a") is None


def test_registry_rejects_bad_fallback_config() -> None:
    predictors = [_ScriptedPredictor("a"), _ScriptedPredictor("b")]
    with pytest.raises(FallbackConfigError, match="circular"):
        ProviderRegistry(predictors, {"a": "b", "b": "a"})
    with pytest.raises(FallbackConfigError, match="itself"):
        ProviderRegistry(predictors, {"a": "a"})
    with pytest.raises(FallbackConfigError, match="not a registered model"):
        ProviderRegistry(predictors, {"a": "zzz"})


def test_parse_fallbacks() -> None:
    assert parse_fallbacks(" a:b , c:d ,") == {"a": "b", "c": "d"}
    assert parse_fallbacks("") == {}
    with pytest.raises(FallbackConfigError):
        parse_fallbacks("a-b")
