"""
backend/kickoff/store/memory.py

Purpose:
    In-process PipelineStore used by tests and STORE_BACKEND=memory.
    Records are copied on the way in and out so callers never share mutable
    state with the store.

Dependencies:
    - asyncio
    - kickoff.models.*
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from kickoff.models.artifacts import Analysis, Lineups, OddsSnapshot
from kickoff.models.match import FixtureData, Match, MatchStatus, Quota
from kickoff.models.model_health import ModelHealth, ModelStats
from kickoff.models.prediction import PointsBreakdown, Prediction, PredictionStatus
from kickoff.store.base import FIXTURE_REFRESH_FIELDS


class InMemoryPipelineStore:
    def __init__(self) -> None:
        self.matches: dict[str, Match] = {}
        self._by_external: dict[str, str] = {}
        self.analyses: dict[str, Analysis] = {}
        self.odds: dict[str, OddsSnapshot] = {}
        self.lineups: dict[str, Lineups] = {}
        self.predictions: dict[tuple[str, str], Prediction] = {}
        self.model_health: dict[str, ModelHealth] = {}
        self.model_stats: dict[str, ModelStats] = {}
        self._settlement_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def ping(self) -> bool:
        return True

    # -- matches ---------------------------------------------------------

    async def get_match(self, match_id: str) -> Match | None:
        match = self.matches.get(match_id)
        return match.model_copy(deep=True) if match else None

    async def get_match_by_external_id(self, external_id: str) -> Match | None:
        match_id = self._by_external.get(external_id)
        return await self.get_match(match_id) if match_id else None

    async def upsert_fixture(self, fixture: FixtureData, now: datetime) -> tuple[Match, Match | None]:
        match_id = self._by_external.get(fixture.external_id)
        if match_id is None:
            match = Match(id=uuid.uuid4().hex, created_at=now, updated_at=now, **fixture.model_dump())
            self.matches[match.id] = match
            self._by_external[fixture.external_id] = match.id
            return match.model_copy(deep=True), None

        previous = self.matches[match_id]
        refreshed = fixture.model_dump(include=set(FIXTURE_REFRESH_FIELDS))
        current = previous.model_copy(update={**refreshed, "updated_at": now}, deep=True)
        self.matches[match_id] = current
        return current.model_copy(deep=True), previous.model_copy(deep=True)

    async def update_match(self, match_id: str, changes: dict[str, Any], now: datetime) -> Match | None:
        match = self.matches.get(match_id)
        if match is None:
            return None
        updated = match.model_copy(update={**changes, "updated_at": now}, deep=True)
        self.matches[match_id] = updated
        return updated.model_copy(deep=True)

    async def list_matches(
        self,
        *,
        statuses: tuple[MatchStatus, ...] | None = None,
        kickoff_from: datetime | None = None,
        kickoff_to: datetime | None = None,
    ) -> list[Match]:
        rows = []
        for match in self.matches.values():
            if statuses is not None and match.status not in statuses:
                continue
            if kickoff_from is not None and match.kickoff < kickoff_from:
                continue
            if kickoff_to is not None and match.kickoff > kickoff_to:
                continue
            rows.append(match.model_copy(deep=True))
        rows.sort(key=lambda m: m.kickoff)
        return rows

    async def set_quota(self, match_id: str, quota: Quota, now: datetime) -> None:
        await self.update_match(match_id, {"quota": quota}, now)

    # -- artifacts -------------------------------------------------------

    async def get_analysis(self, match_id: str) -> Analysis | None:
        return self.analyses.get(match_id)

    async def save_analysis(self, analysis: Analysis) -> None:
        self.analyses[analysis.match_id] = analysis

    async def get_odds(self, match_id: str) -> OddsSnapshot | None:
        return self.odds.get(match_id)

    async def save_odds(self, odds: OddsSnapshot) -> OddsSnapshot:
        existing = self.odds.get(odds.match_id)
        count = existing.refresh_count + 1 if existing else 1
        saved = odds.model_copy(update={"refresh_count": count})
        self.odds[odds.match_id] = saved
        return saved

    async def get_lineups(self, match_id: str) -> Lineups | None:
        return self.lineups.get(match_id)

    async def save_lineups(self, lineups: Lineups) -> None:
        self.lineups[lineups.match_id] = lineups

    # -- predictions -----------------------------------------------------

    async def list_predictions(self, match_id: str) -> list[Prediction]:
        return [
            p.model_copy(deep=True)
            for (mid, _), p in sorted(self.predictions.items())
            if mid == match_id
        ]

    async def insert_prediction(self, prediction: Prediction) -> bool:
        key = (prediction.match_id, prediction.requested_model_id)
        if key in self.predictions:
            return False
        self.predictions[key] = prediction.model_copy(deep=True)
        return True

    async def mark_scored(
        self, match_id: str, requested_model_id: str, points: PointsBreakdown, now: datetime,
    ) -> bool:
        prediction = self.predictions.get((match_id, requested_model_id))
        if prediction is None or prediction.status != PredictionStatus.pending:
            return False
        self.predictions[(match_id, requested_model_id)] = prediction.model_copy(update={
            "status": PredictionStatus.scored,
            "points": points,
            "scored_at": now,
        })
        return True

    async def count_pending(self, match_id: str) -> int:
        return sum(
            1 for (mid, _), p in self.predictions.items()
            if mid == match_id and p.status == PredictionStatus.pending
        )

    async def list_scored_predictions(self) -> list[Prediction]:
        return [
            p.model_copy(deep=True) for p in self.predictions.values()
            if p.status == PredictionStatus.scored
        ]

    # -- model health / stats -------------------------------------------

    def _health(self, model_id: str) -> ModelHealth:
        return self.model_health.setdefault(model_id, ModelHealth(model_id=model_id))

    async def get_model_health(self, model_id: str) -> ModelHealth | None:
        health = self.model_health.get(model_id)
        return health.model_copy() if health else None

    async def list_model_health(self) -> list[ModelHealth]:
        return [h.model_copy() for _, h in sorted(self.model_health.items())]

    async def record_model_success(self, model_id: str, now: datetime) -> ModelHealth:
        health = self._health(model_id)
        health.consecutive_failures = 0
        health.disabled = False
        health.disabled_at = None
        health.last_success_at = now
        health.total_successes += 1
        return health.model_copy()

    async def record_model_failure(
        self, model_id: str, error: str, now: datetime, threshold: int,
    ) -> tuple[ModelHealth, bool]:
        health = self._health(model_id)
        health.consecutive_failures += 1
        health.total_failures += 1
        health.last_failure_at = now
        health.last_error = error
        newly_disabled = False
        if not health.disabled and health.consecutive_failures >= threshold:
            health.disabled = True
            health.disabled_at = now
            newly_disabled = True
        return health.model_copy(), newly_disabled

    async def recover_models(self, cutoff: datetime, reset_to: int, now: datetime) -> list[str]:
        recovered = []
        for model_id, health in sorted(self.model_health.items()):
            if not health.disabled:
                continue
            if health.last_failure_at is not None and health.last_failure_at > cutoff:
                continue
            health.disabled = False
            health.disabled_at = None
            health.consecutive_failures = reset_to
            recovered.append(model_id)
        return recovered

    async def reenable_model(self, model_id: str, now: datetime) -> ModelHealth:
        health = self._health(model_id)
        health.disabled = False
        health.disabled_at = None
        health.consecutive_failures = 0
        return health.model_copy()

    async def save_model_stats(self, stats: list[ModelStats]) -> None:
        self.model_stats = {row.model_id: row for row in stats}

    async def list_model_stats(self) -> list[ModelStats]:
        return [s.model_copy() for _, s in sorted(self.model_stats.items())]

    # -- settlement ------------------------------------------------------

    @asynccontextmanager
    async def settlement_lock(self, match_id: str) -> AsyncIterator[None]:
        async with self._settlement_locks[match_id]:
            yield
