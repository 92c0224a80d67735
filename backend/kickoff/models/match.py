from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class MatchStatus(str, Enum):
    scheduled = "scheduled"
    live = "live"
    finished = "finished"
    postponed = "postponed"
    cancelled = "cancelled"


# finished, postponed and cancelled are absorbing.
_TRANSITIONS: dict[MatchStatus, frozenset[MatchStatus]] = {
    MatchStatus.scheduled: frozenset({
        MatchStatus.live, MatchStatus.finished, MatchStatus.postponed, MatchStatus.cancelled,
    }),
    MatchStatus.live: frozenset({MatchStatus.finished, MatchStatus.postponed, MatchStatus.cancelled}),
    MatchStatus.finished: frozenset(),
    MatchStatus.postponed: frozenset(),
    MatchStatus.cancelled: frozenset(),
}

TERMINAL_STATUSES = frozenset({MatchStatus.finished, MatchStatus.postponed, MatchStatus.cancelled})


def can_transition(current: MatchStatus, new: MatchStatus) -> bool:
    """Whether a status change is legal. Staying in the same state is always allowed."""
    return current == new or new in _TRANSITIONS[current]


class Tendency(str, Enum):
    home = "H"
    draw = "D"
    away = "A"


def tendency_of(home_score: int, away_score: int) -> Tendency:
    if home_score > away_score:
        return Tendency.home
    if home_score < away_score:
        return Tendency.away
    return Tendency.draw


class Quota(BaseModel):
    """Points weight per tendency, derived from the prediction distribution."""
    home: int
    draw: int
    away: int

    def for_tendency(self, tendency: Tendency) -> int:
        return {Tendency.home: self.home, Tendency.draw: self.draw, Tendency.away: self.away}[tendency]


class Match(BaseModel):
    """Pipeline-owned match record.

    Created and rescheduled by the fixture ingester; status, score and minute
    are updated by the live poller. ``external_id`` is the provider fixture id
    used for idempotent upserts.
    """
    id: str
    external_id: str
    league_id: Optional[int] = None
    league_name: Optional[str] = None
    season: Optional[int] = None
    home_team: str
    away_team: str
    home_team_id: Optional[int] = None
    away_team_id: Optional[int] = None
    kickoff: datetime
    status: MatchStatus = MatchStatus.scheduled
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    minute: Optional[int] = None
    quota: Optional[Quota] = None
    settled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_result(self) -> bool:
        return self.home_score is not None and self.away_score is not None

    def to_fixture(self) -> "FixtureData":
        return FixtureData(**self.model_dump(include=set(FixtureData.model_fields)))


class FixtureData(BaseModel):
    """Provider-neutral fixture snapshot as returned by the sports-data provider."""
    external_id: str
    league_id: Optional[int] = None
    league_name: Optional[str] = None
    season: Optional[int] = None
    home_team: str
    away_team: str
    home_team_id: Optional[int] = None
    away_team_id: Optional[int] = None
    kickoff: datetime
    status: MatchStatus = MatchStatus.scheduled
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    minute: Optional[int] = None
