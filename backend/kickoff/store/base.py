"""
backend/kickoff/store/base.py

Purpose:
    Read/write contract the pipeline needs from persistence: matches, the
    per-match context artifacts, predictions, model health/stats and the
    per-match settlement lock. Implemented by InMemoryPipelineStore and
    MongoPipelineStore.

Dependencies:
    - typing
    - kickoff.models.*
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol

from kickoff.models.artifacts import Analysis, Lineups, OddsSnapshot
from kickoff.models.match import FixtureData, Match, MatchStatus, Quota
from kickoff.models.model_health import ModelHealth, ModelStats
from kickoff.models.prediction import PointsBreakdown, Prediction


# Fields a fixture re-fetch may overwrite on a known match. Status and score
# changes go through update_match so transitions can be checked.
FIXTURE_REFRESH_FIELDS = (
    "league_id", "league_name", "season", "home_team", "away_team", "home_team_id", "away_team_id", "kickoff",
)


class PipelineStore(Protocol):
    async def ping(self) -> bool: ...

    # Matches
    async def get_match(self, match_id: str) -> Match | None: ...
    async def get_match_by_external_id(self, external_id: str) -> Match | None: ...

    async def upsert_fixture(self, fixture: FixtureData, now: datetime) -> tuple[Match, Match | None]:
        """Insert a new fixture or refresh FIXTURE_REFRESH_FIELDS of a known one.

        Returns (current, previous), previous being None for a new fixture.
        """
        ...

    async def update_match(self, match_id: str, changes: dict[str, Any], now: datetime) -> Match | None: ...

    async def list_matches(
        self,
        *,
        statuses: tuple[MatchStatus, ...] | None = None,
        kickoff_from: datetime | None = None,
        kickoff_to: datetime | None = None,
    ) -> list[Match]: ...

    async def set_quota(self, match_id: str, quota: Quota, now: datetime) -> None: ...

    # Artifacts
    async def get_analysis(self, match_id: str) -> Analysis | None: ...
    async def save_analysis(self, analysis: Analysis) -> None: ...
    async def get_odds(self, match_id: str) -> OddsSnapshot | None: ...
    async def save_odds(self, odds: OddsSnapshot) -> OddsSnapshot: ...
    async def get_lineups(self, match_id: str) -> Lineups | None: ...
    async def save_lineups(self, lineups: Lineups) -> None: ...

    # Predictions
    async def list_predictions(self, match_id: str) -> list[Prediction]: ...

    async def insert_prediction(self, prediction: Prediction) -> bool:
        """False when the fan-out slot (match, requested model) already has a prediction."""
        ...

    async def mark_scored(
        self, match_id: str, requested_model_id: str, points: PointsBreakdown, now: datetime,
    ) -> bool:
        """Compare-and-set pending -> scored. False when it was already scored."""
        ...

    async def count_pending(self, match_id: str) -> int: ...
    async def list_scored_predictions(self) -> list[Prediction]: ...

    # Model health / stats
    async def get_model_health(self, model_id: str) -> ModelHealth | None: ...
    async def list_model_health(self) -> list[ModelHealth]: ...
    async def record_model_success(self, model_id: str, now: datetime) -> ModelHealth: ...

    async def record_model_failure(
        self, model_id: str, error: str, now: datetime, threshold: int,
    ) -> tuple[ModelHealth, bool]:
        """Increment the failure counter. Returns (health, disabled_by_this_call)."""
        ...

    async def recover_models(self, cutoff: datetime, reset_to: int, now: datetime) -> list[str]: ...
    async def reenable_model(self, model_id: str, now: datetime) -> ModelHealth: ...
    async def save_model_stats(self, stats: list[ModelStats]) -> None: ...
    async def list_model_stats(self) -> list[ModelStats]: ...

    # Settlement exclusivity
    def settlement_lock(self, match_id: str) -> AbstractAsyncContextManager[None]: ...
