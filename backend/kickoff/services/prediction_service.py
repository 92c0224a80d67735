"""
backend/kickoff/services/prediction_service.py

Purpose:
    Prediction stage. Fans the match prompt out to every active model that
    has no prediction for the match yet, each through the fallback
    orchestrator, and stores whatever succeeded. Per-model failures are
    absorbed; the stage only fails when nothing at all succeeded, and fails
    as rate limited when any model was throttled so the queue backs off.

Dependencies:
    - kickoff.services.prediction_fallback
    - kickoff.services.prediction_parser
    - kickoff.services.event_bus
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from kickoff.errors import ErrorKind, NonRetryableError, RateLimitedError, RetryableError, error_kind
from kickoff.models.match import MatchStatus, tendency_of
from kickoff.models.prediction import ParsedPrediction, Prediction
from kickoff.providers.registry import ProviderRegistry
from kickoff.services.event_bus import InMemoryEventBus
from kickoff.services.event_models import PredictionsInsertedEvent
from kickoff.services.model_health_service import ModelHealthService
from kickoff.services.prediction_fallback import PredictionFallbackOrchestrator
from kickoff.services.prediction_parser import parse_prediction
from kickoff.services.prompt_builder import SYSTEM_PROMPT, build_user_prompt
from kickoff.store.base import PipelineStore
from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.predictions")


def _parse(raw: str, provider_id: str) -> ParsedPrediction:
    return parse_prediction(raw, provider_id=provider_id)


class PredictionService:
    def __init__(
        self,
        store: PipelineStore,
        registry: ProviderRegistry,
        orchestrator: PredictionFallbackOrchestrator,
        health: ModelHealthService,
        *,
        bus: Optional[InMemoryEventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.registry = registry
        self.orchestrator = orchestrator
        self.health = health
        self.bus = bus
        self._clock = clock

    async def _predict_one(
        self, model_id: str, user_prompt: str,
    ) -> tuple[str, Optional[ParsedPrediction], str, Optional[Exception]]:
        try:
            parsed, used = await self.orchestrator.predict(
                model_id, SYSTEM_PROMPT, user_prompt, set(), validate=_parse,
            )
        except Exception as exc:
            logger.warning("No prediction from %s: %s", model_id, exc)
            return model_id, None, model_id, exc
        return model_id, parsed, used, None

    async def generate(self, match_id: str) -> dict[str, Any]:
        match = await self.store.get_match(match_id)
        if match is None:
            raise NonRetryableError(f"match {match_id} not found", skip=True)
        if match.status != MatchStatus.scheduled:
            raise NonRetryableError(f"match {match_id} is {match.status.value}", skip=True)

        analysis = await self.store.get_analysis(match_id)
        if analysis is None:
            raise RetryableError(f"analysis for match {match_id} not ready")

        existing = {p.requested_model_id for p in await self.store.list_predictions(match_id)}
        active = await self.health.active_models(self.registry.model_ids())
        todo = [m for m in active if m not in existing]
        if not todo:
            raise NonRetryableError(
                f"no models left to ask for match {match_id} ({len(existing)} predictions exist)", skip=True,
            )

        user_prompt = build_user_prompt(
            match, analysis, await self.store.get_odds(match_id), await self.store.get_lineups(match_id),
        )
        results = await asyncio.gather(*(self._predict_one(m, user_prompt) for m in todo))

        now = self._clock()
        inserted: list[str] = []
        fallbacks = 0
        errors: list[Exception] = []
        for requested, parsed, used, exc in results:
            if parsed is None:
                if exc is not None:
                    errors.append(exc)
                continue
            prediction = Prediction(
                match_id=match_id,
                model_id=used,
                requested_model_id=requested,
                used_fallback=used != requested,
                home_score=parsed.home_score,
                away_score=parsed.away_score,
                tendency=tendency_of(parsed.home_score, parsed.away_score),
                created_at=now,
            )
            if await self.store.insert_prediction(prediction):
                inserted.append(requested)
                fallbacks += int(prediction.used_fallback)

        failed = len(todo) - len(inserted)
        if not inserted:
            throttled = [e for e in errors if error_kind(e) is ErrorKind.RATE_LIMITED]
            if throttled:
                waits = [e.retry_after for e in throttled if getattr(e, "retry_after", None)]
                raise RateLimitedError(
                    f"{len(throttled)} of {len(todo)} prediction models rate limited for match {match_id}",
                    retry_after=max(waits) if waits else None,
                )
            if errors and all(error_kind(e) is ErrorKind.NON_RETRYABLE for e in errors):
                raise NonRetryableError(
                    f"prediction backends rejected every request for match {match_id}: {errors[0]}",
                )
            raise RetryableError(f"all {len(todo)} prediction models failed for match {match_id}")

        logger.info(
            "Predictions for match %s: %d inserted (%d via fallback), %d failed",
            match_id, len(inserted), fallbacks, failed,
        )
        if self.bus is not None:
            self.bus.publish(PredictionsInsertedEvent(source="predictions", match_id=match_id, model_ids=inserted))
        return {"inserted": len(inserted), "failed": failed, "fallbacks": fallbacks}
