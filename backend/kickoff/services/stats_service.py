"""Per-model scoring aggregates, recomputed from every scored prediction."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable

from kickoff.models.model_health import ModelStats
from kickoff.store.base import PipelineStore
from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.stats")


async def calculate_model_stats(
    store: PipelineStore, *, clock: Callable[[], datetime] = utcnow,
) -> list[ModelStats]:
    """Rebuild the stats table. Points go to the model that actually answered."""
    now = clock()
    rows: dict[str, ModelStats] = defaultdict(lambda: ModelStats(model_id=""))
    for prediction in await store.list_scored_predictions():
        row = rows[prediction.model_id]
        row.model_id = prediction.model_id
        row.predictions_scored += 1
        row.fallback_predictions += int(prediction.used_fallback)
        points = prediction.points
        if points is None:
            continue
        row.total_points += points.total
        row.correct_tendencies += int(points.tendency_points > 0)
        row.correct_goal_diffs += int(points.goal_diff_bonus > 0)
        row.exact_scores += int(points.exact_score_bonus > 0)

    stats = sorted(rows.values(), key=lambda s: s.model_id)
    for row in stats:
        row.updated_at = now
    await store.save_model_stats(stats)
    logger.info("Model stats recalculated for %d models", len(stats))
    return stats
