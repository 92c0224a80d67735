"""Per-match context records. Each is either present or absent; absence is what the
reconciliation sweep looks for."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class Analysis(BaseModel):
    match_id: str
    data: Dict[str, Any] = {}             # standings, form, head-to-head
    fetched_at: datetime


class OddsSnapshot(BaseModel):
    match_id: str
    home: Optional[float] = None
    draw: Optional[float] = None
    away: Optional[float] = None
    bookmakers: Dict[str, Dict[str, float]] = {}
    fetched_at: datetime
    refresh_count: int = 1


class Lineups(BaseModel):
    match_id: str
    home: List[str] = []
    away: List[str] = []
    home_formation: Optional[str] = None
    away_formation: Optional[str] = None
    fetched_at: datetime

    @property
    def available(self) -> bool:
        return bool(self.home and self.away)
