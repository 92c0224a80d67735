"""
backend/kickoff/services/settlement_service.py

Purpose:
    Settle a finished match: derive the tendency quota from every prediction
    on the match, score each pending prediction against the final score and
    flip it to scored with a compare-and-set. Runs under a per-match lock, so
    concurrent settlement jobs score every prediction exactly once; a second
    run finds nothing pending and changes nothing.

Dependencies:
    - kickoff.services.scoring
    - kickoff.store.base
    - kickoff.services.event_bus
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from kickoff.errors import NonRetryableError, RetryableError
from kickoff.models.match import MatchStatus
from kickoff.models.prediction import PredictionStatus
from kickoff.services.event_bus import InMemoryEventBus
from kickoff.services.event_models import MatchSettledEvent
from kickoff.services.scoring import ScoringRules, calculate_quotas, score_prediction
from kickoff.store.base import PipelineStore
from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.settlement")


class SettlementService:
    def __init__(
        self,
        store: PipelineStore,
        *,
        rules: ScoringRules = ScoringRules(),
        bus: Optional[InMemoryEventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.rules = rules
        self.bus = bus
        self._clock = clock

    async def settle(self, match_id: str) -> dict[str, Any]:
        async with self.store.settlement_lock(match_id):
            result = await self._settle_locked(match_id)

        if result["scored"] and self.bus is not None:
            try:
                self.bus.publish(MatchSettledEvent(
                    source="settlement",
                    match_id=match_id,
                    scored=result["scored"],
                    failed=result["failed"],
                    final_score=result["final_score"],
                ))
            except Exception:
                logger.exception("Failed to publish match.settled for %s", match_id)
        return result

    async def _settle_locked(self, match_id: str) -> dict[str, Any]:
        match = await self.store.get_match(match_id)
        if match is None:
            raise NonRetryableError(f"match {match_id} not found", skip=True)
        if match.status != MatchStatus.finished:
            raise NonRetryableError(f"match {match_id} is {match.status.value}, not finished", skip=True)
        if not match.has_result:
            raise RetryableError(f"match {match_id} finished without a final score")

        final_score = {"home": match.home_score, "away": match.away_score}
        predictions = await self.store.list_predictions(match_id)
        pending = [p for p in predictions if p.status == PredictionStatus.pending]
        if not pending:
            logger.info("Match %s already settled (%d predictions)", match_id, len(predictions))
            return {"status": "already_settled", "scored": 0, "failed": 0, "final_score": final_score}

        now = self._clock()
        quota = calculate_quotas((p.tendency for p in predictions), self.rules)
        await self.store.set_quota(match_id, quota, now)

        scored = 0
        failed = 0
        for prediction in pending:
            try:
                points = score_prediction(
                    prediction.home_score, prediction.away_score,
                    match.home_score, match.away_score, quota, self.rules,
                )
                if await self.store.mark_scored(match_id, prediction.requested_model_id, points, now):
                    scored += 1
            except Exception:
                failed += 1
                logger.exception(
                    "Scoring failed for match %s model %s", match_id, prediction.requested_model_id,
                )

        if failed and not scored:
            raise RetryableError(f"all {failed} pending predictions failed to score for match {match_id}")
        await self.store.update_match(match_id, {"settled_at": now}, now)

        logger.info(
            "Settled match %s (%d-%d, quota H%d/D%d/A%d): scored=%d failed=%d",
            match_id, match.home_score, match.away_score, quota.home, quota.draw, quota.away, scored, failed,
        )
        return {
            "status": "settled",
            "scored": scored,
            "failed": failed,
            "quota": quota.model_dump(),
            "final_score": final_score,
        }
