from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ModelHealth(BaseModel):
    """Per-provider health. ``disabled`` excludes the model from fan-out."""
    model_id: str
    consecutive_failures: int = 0
    disabled: bool = False
    disabled_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    total_failures: int = 0
    total_successes: int = 0


class ModelStats(BaseModel):
    """Aggregate scoring totals per model, recomputed after settlement."""
    model_id: str
    predictions_scored: int = 0
    total_points: int = 0
    exact_scores: int = 0
    correct_tendencies: int = 0
    correct_goal_diffs: int = 0
    fallback_predictions: int = 0
    updated_at: Optional[datetime] = None
