"""
backend/kickoff/providers/api_football.py

Purpose:
    API-Football adapter: fixture lists, single-fixture live state, match
    context (predictions, standings, head-to-head), lineups and 1X2 odds.
    Responses are normalized into FixtureData / plain dicts; upstream error
    payloads are turned into tagged pipeline errors.

Dependencies:
    - kickoff.providers.http_client
    - kickoff.services.rate_limiter
    - kickoff.utils
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx

from kickoff.errors import NonRetryableError, RateLimitedError, RetryableError
from kickoff.models.match import FixtureData, MatchStatus
from kickoff.providers.base import OddsProvider, SportsDataProvider
from kickoff.providers.http_client import ResilientClient
from kickoff.services.rate_limiter import RateLimiter
from kickoff.utils import parse_utc, utcnow

logger = logging.getLogger("kickoff.api_football")

PROVIDER_NAME = "api_football"

STATUS_MAP: dict[str, MatchStatus] = {
    "TBD": MatchStatus.scheduled,
    "NS": MatchStatus.scheduled,
    "1H": MatchStatus.live,
    "HT": MatchStatus.live,
    "2H": MatchStatus.live,
    "ET": MatchStatus.live,
    "BT": MatchStatus.live,
    "P": MatchStatus.live,
    "LIVE": MatchStatus.live,
    "INT": MatchStatus.live,
    "SUSP": MatchStatus.live,
    "FT": MatchStatus.finished,
    "AET": MatchStatus.finished,
    "PEN": MatchStatus.finished,
    "PST": MatchStatus.postponed,
    "CANC": MatchStatus.cancelled,
    "ABD": MatchStatus.cancelled,
    "AWD": MatchStatus.cancelled,
    "WO": MatchStatus.cancelled,
}

# Error keys API-Football uses in its ``errors`` object for quota problems.
_RATE_LIMIT_ERROR_KEYS = {"rateLimit", "requests"}


def map_status(short: str | None) -> MatchStatus:
    return STATUS_MAP.get(str(short or "").upper(), MatchStatus.scheduled)


def parse_fixture(item: dict[str, Any]) -> FixtureData:
    fixture = item.get("fixture") or {}
    league = item.get("league") or {}
    teams = item.get("teams") or {}
    goals = item.get("goals") or {}
    status = fixture.get("status") or {}
    home = teams.get("home") or {}
    away = teams.get("away") or {}
    return FixtureData(
        external_id=str(fixture["id"]),
        league_id=league.get("id"),
        league_name=league.get("name"),
        season=league.get("season"),
        home_team=home.get("name") or "Unknown",
        away_team=away.get("name") or "Unknown",
        home_team_id=home.get("id"),
        away_team_id=away.get("id"),
        kickoff=parse_utc(fixture["date"]),
        status=map_status(status.get("short")),
        home_score=goals.get("home"),
        away_score=goals.get("away"),
        minute=status.get("elapsed"),
    )


class ApiFootballClient:
    """Thin request layer shared by the sports-data and odds adapters."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        rate_limiter: RateLimiter,
        rate_limit_rpm: int = 30,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._limiter = rate_limiter
        self._rpm = rate_limit_rpm
        self._client = ResilientClient(
            PROVIDER_NAME, timeout=timeout, max_retries=max_retries,
            base_delay=base_delay, transport=transport,
        )

    async def fetch(self, endpoint: str, params: dict[str, Any]) -> list[Any]:
        if not self._api_key:
            raise NonRetryableError("API_FOOTBALL_KEY is not configured")
        await self._limiter.acquire(PROVIDER_NAME, self._rpm)
        resp = await self._client.get(
            f"{self._base_url}{endpoint}",
            params=params,
            headers={"x-apisports-key": self._api_key},
        )
        resp.raise_for_status()

        remaining = resp.headers.get("x-ratelimit-requests-remaining")
        if remaining is not None:
            logger.debug("API-Football requests remaining: %s", remaining)

        data = resp.json()
        errors = data.get("errors")
        if errors and isinstance(errors, dict):
            if _RATE_LIMIT_ERROR_KEYS & set(errors):
                raise RateLimitedError(f"API-Football quota exceeded on {endpoint}", retry_after=60.0)
            raise RetryableError(f"API-Football error on {endpoint}: {errors}")
        return list(data.get("response") or [])

    async def aclose(self) -> None:
        await self._client.aclose()


class ApiFootballProvider(SportsDataProvider):
    def __init__(
        self,
        client: ApiFootballClient,
        *,
        league_ids: list[int],
        season: int,
        lookahead_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._client = client
        self._league_ids = league_ids
        self._season = season
        self._lookahead = timedelta(days=lookahead_days)
        self._clock = clock

    async def list_fixtures(self) -> list[FixtureData]:
        now = self._clock()
        date_from = (now - timedelta(days=1)).strftime("%Y-%m-%d")
        date_to = (now + self._lookahead).strftime("%Y-%m-%d")
        fixtures: list[FixtureData] = []
        for league_id in self._league_ids:
            rows = await self._client.fetch(
                "/fixtures",
                {"league": league_id, "season": self._season, "from": date_from, "to": date_to},
            )
            for row in rows:
                try:
                    fixtures.append(parse_fixture(row))
                except (KeyError, ValueError, TypeError) as exc:
                    logger.warning("Skipping malformed fixture in league %s: %s", league_id, exc)
        return fixtures

    async def get_fixture(self, external_id: str) -> Optional[FixtureData]:
        rows = await self._client.fetch("/fixtures", {"id": external_id})
        return parse_fixture(rows[0]) if rows else None

    async def get_match_context(self, fixture: FixtureData) -> Optional[dict[str, Any]]:
        tasks = {"prediction": self._client.fetch("/predictions", {"fixture": fixture.external_id})}
        if fixture.league_id and fixture.season:
            tasks["standings"] = self._client.fetch(
                "/standings", {"league": fixture.league_id, "season": fixture.season},
            )
        if fixture.home_team_id and fixture.away_team_id:
            tasks["head_to_head"] = self._client.fetch(
                "/fixtures/headtohead",
                {"h2h": f"{fixture.home_team_id}-{fixture.away_team_id}", "last": 10},
            )
        results = await asyncio.gather(*tasks.values())
        context = {key: rows for key, rows in zip(tasks, results) if rows}
        return context or None

    async def get_lineups(self, external_id: str) -> Optional[dict[str, Any]]:
        rows = await self._client.fetch("/fixtures/lineups", {"fixture": external_id})
        if len(rows) < 2:
            return None

        def _side(row: dict[str, Any]) -> dict[str, Any]:
            return {
                "team": (row.get("team") or {}).get("name"),
                "formation": row.get("formation"),
                "players": [
                    (p.get("player") or {}).get("name")
                    for p in row.get("startXI") or []
                    if (p.get("player") or {}).get("name")
                ],
            }

        home, away = _side(rows[0]), _side(rows[1])
        if not home["players"] or not away["players"]:
            return None
        return {"home": home, "away": away}


class ApiFootballOddsProvider(OddsProvider):
    """1X2 odds from API-Football's ``/odds`` endpoint with a short TTL cache."""

    def __init__(self, client: ApiFootballClient, *, cache_ttl: float = 300.0):
        self._client = client
        self._ttl = cache_ttl
        self._cache: dict[str, tuple[float, Optional[dict[str, Any]]]] = {}

    def _cached(self, key: str) -> tuple[bool, Optional[dict[str, Any]]]:
        entry = self._cache.get(key)
        if entry and (time.monotonic() - entry[0]) < self._ttl:
            return True, entry[1]
        return False, None

    async def get_odds(self, fixture: FixtureData) -> Optional[dict[str, Any]]:
        hit, value = self._cached(fixture.external_id)
        if hit:
            return value
        rows = await self._client.fetch("/odds", {"fixture": fixture.external_id})
        snapshot = self._parse(rows)
        self._cache[fixture.external_id] = (time.monotonic(), snapshot)
        return snapshot

    @staticmethod
    def _parse(rows: list[Any]) -> Optional[dict[str, Any]]:
        if not rows:
            return None
        bookmakers: dict[str, dict[str, float]] = {}
        for bookmaker in rows[0].get("bookmakers") or []:
            for bet in bookmaker.get("bets") or []:
                if bet.get("name") != "Match Winner":
                    continue
                prices = {}
                for value in bet.get("values") or []:
                    label = {"Home": "home", "Draw": "draw", "Away": "away"}.get(value.get("value"))
                    if label:
                        try:
                            prices[label] = float(value.get("odd"))
                        except (TypeError, ValueError):
                            continue
                if len(prices) == 3:
                    bookmakers[str(bookmaker.get("name") or bookmaker.get("id"))] = prices
        if not bookmakers:
            return None
        first = next(iter(bookmakers.values()))
        return {**first, "bookmakers": bookmakers}
