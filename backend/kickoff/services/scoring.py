"""
backend/kickoff/services/scoring.py

Purpose:
    Quota and points calculation. Quotas are inversely related to how many
    models predicted each tendency (consensus pays less) and are clamped to
    [quota_min, quota_max]. Points are the quota of the actual tendency when
    the tendency is right, plus goal-difference and exact-score bonuses.

Dependencies:
    - kickoff.models.match / prediction
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from typing import Iterable

from kickoff.models.match import Quota, Tendency, tendency_of
from kickoff.models.prediction import PointsBreakdown


@dataclass(frozen=True)
class ScoringRules:
    quota_min: int = 2
    quota_max: int = 6
    goal_diff_bonus: int = 1
    exact_score_bonus: int = 2


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def quota_for_share(share: float, rules: ScoringRules) -> int:
    """``max/(10*p) - max/10 + min``, clamped; a tendency nobody picked gets the max."""
    if share <= 0:
        return rules.quota_max
    raw = rules.quota_max / (10 * share) - rules.quota_max / 10 + rules.quota_min
    return max(rules.quota_min, min(rules.quota_max, _round_half_up(raw)))


def calculate_quotas(tendencies: Iterable[Tendency], rules: ScoringRules = ScoringRules()) -> Quota:
    counts = Counter(tendencies)
    total = sum(counts.values())
    if total == 0:
        return Quota(home=rules.quota_min, draw=rules.quota_min, away=rules.quota_min)
    return Quota(
        home=quota_for_share(counts[Tendency.home] / total, rules),
        draw=quota_for_share(counts[Tendency.draw] / total, rules),
        away=quota_for_share(counts[Tendency.away] / total, rules),
    )


def score_prediction(
    predicted_home: int,
    predicted_away: int,
    actual_home: int,
    actual_away: int,
    quota: Quota,
    rules: ScoringRules = ScoringRules(),
) -> PointsBreakdown:
    actual = tendency_of(actual_home, actual_away)
    if tendency_of(predicted_home, predicted_away) != actual:
        return PointsBreakdown()

    tendency_points = quota.for_tendency(actual)
    goal_diff = rules.goal_diff_bonus if predicted_home - predicted_away == actual_home - actual_away else 0
    exact = rules.exact_score_bonus if (predicted_home, predicted_away) == (actual_home, actual_away) else 0
    return PointsBreakdown(
        tendency_points=tendency_points,
        goal_diff_bonus=goal_diff,
        exact_score_bonus=exact,
        total=tendency_points + goal_diff + exact,
    )
