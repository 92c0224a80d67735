from abc import ABC, abstractmethod
from typing import Any, Optional

from kickoff.models.match import FixtureData


class SportsDataProvider(ABC):
    """Read-only sports data source (fixtures, live state, context, lineups).

    "Not available yet" is an empty/None return, never an exception.
    """

    @abstractmethod
    async def list_fixtures(self) -> list[FixtureData]:
        """Upcoming and recent fixtures for the configured leagues."""
        ...

    @abstractmethod
    async def get_fixture(self, external_id: str) -> Optional[FixtureData]:
        """Current status, score and minute of one fixture."""
        ...

    @abstractmethod
    async def get_match_context(self, fixture: FixtureData) -> Optional[dict[str, Any]]:
        """Analytical context: standings, team form, head-to-head."""
        ...

    @abstractmethod
    async def get_lineups(self, external_id: str) -> Optional[dict[str, Any]]:
        """Confirmed lineups, or None while they are not published."""
        ...


class OddsProvider(ABC):
    @abstractmethod
    async def get_odds(self, fixture: FixtureData) -> Optional[dict[str, Any]]:
        """1X2 odds snapshot for a fixture, or None when no market is listed."""
        ...


class Predictor(ABC):
    """One prediction backend. The fallback orchestrator depends only on this."""

    model_id: str

    @abstractmethod
    async def call(self, system_prompt: str, user_prompt: str) -> str:
        """Return raw model text. Raise tagged pipeline errors on failure."""
        ...
