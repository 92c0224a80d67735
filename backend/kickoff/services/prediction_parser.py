"""
backend/kickoff/services/prediction_parser.py

Purpose:
    Best-effort extraction of a score prediction from free model text.
    Reasoning tags and code fences are stripped, then an ordered list of pure
    parse strategies is tried and the first in-range result wins.

Dependencies:
    - json / re
    - kickoff.models.prediction
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Callable, Optional

from kickoff.errors import ModelSpecificError
from kickoff.models.prediction import ParsedPrediction

MAX_GOALS = 20

_REASONING_TAGS = re.compile(r"<(think|thinking|reasoning)>[\s\S]*?</\1>", re.IGNORECASE)
_FENCE_OPEN = re.compile(r"```json\s*", re.IGNORECASE)
_FENCE = re.compile(r"```\s*")

_FLAT_PATTERNS = (
    re.compile(r'\{\s*"home_score"\s*:\s*\d+\s*,\s*"away_score"\s*:\s*\d+\s*\}', re.IGNORECASE),
    re.compile(r'\{\s*"away_score"\s*:\s*\d+\s*,\s*"home_score"\s*:\s*\d+\s*\}', re.IGNORECASE),
    re.compile(r'\{\s*"homeScore"\s*:\s*\d+\s*,\s*"awayScore"\s*:\s*\d+\s*\}', re.IGNORECASE),
    re.compile(r'\{\s*"awayScore"\s*:\s*\d+\s*,\s*"homeScore"\s*:\s*\d+\s*\}', re.IGNORECASE),
    re.compile(r'\{[^{}]*"home_?score"[^{}]*"away_?score"[^{}]*\}', re.IGNORECASE),
    re.compile(r'\{[^{}]*"away_?score"[^{}]*"home_?score"[^{}]*\}', re.IGNORECASE),
)
_SCORE_LINE = re.compile(r"(\d+)\s*[-:]\s*(\d+)")

_HOME_KEYS = ("home_score", "homeScore", "home")
_AWAY_KEYS = ("away_score", "awayScore", "away")

Strategy = Callable[[str], Optional[ParsedPrediction]]


def clean_response(text: str) -> str:
    cleaned = _REASONING_TAGS.sub("", text or "")
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE.sub("", cleaned)
    return cleaned.strip()


def _to_goals(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return max(0, math.floor(number))


def _scores_from(obj: Any) -> Optional[ParsedPrediction]:
    """Find home/away scores in a decoded object, searching nested dicts and lists."""
    if isinstance(obj, dict):
        home = next((obj[k] for k in _HOME_KEYS if k in obj), None)
        away = next((obj[k] for k in _AWAY_KEYS if k in obj), None)
        home_goals, away_goals = _to_goals(home), _to_goals(away)
        if home_goals is not None and away_goals is not None:
            return ParsedPrediction(home_score=home_goals, away_score=away_goals)
        children = obj.values()
    elif isinstance(obj, list):
        children = obj
    else:
        return None
    for child in children:
        found = _scores_from(child)
        if found:
            return found
    return None


def _balanced_objects(text: str) -> list[str]:
    """Top-level ``{...}`` spans, respecting strings and nesting."""
    spans: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append(text[start:i + 1])
    return spans


def parse_flat_json(text: str) -> Optional[ParsedPrediction]:
    for pattern in _FLAT_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            found = _scores_from(json.loads(match.group(0)))
        except ValueError:
            continue
        if found:
            return found
    return None


def parse_nested_json(text: str) -> Optional[ParsedPrediction]:
    for span in _balanced_objects(text):
        try:
            found = _scores_from(json.loads(span))
        except ValueError:
            continue
        if found:
            return found
    return None


def parse_score_line(text: str) -> Optional[ParsedPrediction]:
    for match in _SCORE_LINE.finditer(text):
        home, away = int(match.group(1)), int(match.group(2))
        if home <= MAX_GOALS and away <= MAX_GOALS:
            return ParsedPrediction(home_score=home, away_score=away)
    return None


STRATEGIES: tuple[Strategy, ...] = (parse_flat_json, parse_nested_json, parse_score_line)


def parse_prediction(text: str, *, provider_id: str = "") -> ParsedPrediction:
    """Return the first in-range prediction any strategy finds.

    Raises ModelSpecificError when the text holds no usable score.
    """
    cleaned = clean_response(text)
    if not cleaned:
        raise ModelSpecificError("empty response", provider_id=provider_id)
    for strategy in STRATEGIES:
        found = strategy(cleaned)
        if found is None:
            continue
        if found.home_score > MAX_GOALS or found.away_score > MAX_GOALS:
            continue
        return found
    raise ModelSpecificError(f"no score prediction found in: {cleaned[:120]!r}", provider_id=provider_id)
