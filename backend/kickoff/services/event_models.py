"""
backend/kickoff/services/event_models.py

Purpose:
    Hook events published after pipeline side effects. Payloads are id-first
    so subscribers re-read whatever state they need.

Dependencies:
    - pydantic
    - kickoff.utils
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from kickoff.utils import utcnow

EventType = Literal[
    "odds.refreshed",
    "predictions.inserted",
    "match.settled",
]


def make_event_id() -> str:
    return str(uuid.uuid4())


class BaseEvent(BaseModel):
    event_id: str = Field(default_factory=make_event_id)
    event_type: EventType
    occurred_at: datetime = Field(default_factory=utcnow)
    source: str
    match_id: str


class OddsRefreshedEvent(BaseEvent):
    event_type: Literal["odds.refreshed"] = "odds.refreshed"
    refresh_count: int = 1


class PredictionsInsertedEvent(BaseEvent):
    event_type: Literal["predictions.inserted"] = "predictions.inserted"
    model_ids: list[str] = Field(default_factory=list)


class MatchSettledEvent(BaseEvent):
    event_type: Literal["match.settled"] = "match.settled"
    scored: int
    failed: int = 0
    final_score: dict[str, int] = Field(default_factory=dict)
