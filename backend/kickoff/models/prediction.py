from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from kickoff.models.match import Tendency


class PredictionStatus(str, Enum):
    pending = "pending"
    scored = "scored"


class PointsBreakdown(BaseModel):
    tendency_points: int = 0
    goal_diff_bonus: int = 0
    exact_score_bonus: int = 0
    total: int = 0


class Prediction(BaseModel):
    """One prediction per fan-out slot (match, requested model).

    ``model_id`` is the provider that actually produced it, which differs from
    ``requested_model_id`` when a fallback answered.
    """
    match_id: str
    model_id: str
    requested_model_id: str
    used_fallback: bool = False
    home_score: int
    away_score: int
    tendency: Tendency
    status: PredictionStatus = PredictionStatus.pending
    points: Optional[PointsBreakdown] = None
    created_at: datetime
    scored_at: Optional[datetime] = None


class ParsedPrediction(BaseModel):
    home_score: int
    away_score: int
