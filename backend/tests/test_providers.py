"""
backend/tests/test_providers.py

Purpose:
    Upstream adapters against httpx.MockTransport: API-Football fixtures,
    lineups and odds, the OpenAI-compatible predictor and the rate limiter.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from kickoff.errors import ErrorKind, ModelSpecificError, NonRetryableError, RateLimitedError, RetryableError, error_kind
from kickoff.models.match import FixtureData, MatchStatus
from kickoff.providers.api_football import (
    ApiFootballClient,
    ApiFootballOddsProvider,
    ApiFootballProvider,
    map_status,
)
from kickoff.providers.llm import OpenAICompatiblePredictor, extract_content
from kickoff.services.rate_limiter import RateLimiter

FIXTURE_ROW = {
    "fixture": {"id": 1035, "date": "2026-03-14T17:30:00+00:00", "status": {"short": "2H", "elapsed": 67}},
    "league": {"id": 78, "name": "Bundesliga", "season": 2025},
    "teams": {"home": {"id": 157, "name": "Bayern"}, "away": {"id": 165, "name": "Dortmund"}},
    "goals": {"home": 2, "away": 1},
}


def _client(handler, api_key="secret") -> ApiFootballClient:
    return ApiFootballClient(
        "https://v3.football.api-sports.io", api_key,
        rate_limiter=RateLimiter(), rate_limit_rpm=0, max_retries=0, base_delay=0.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_get_fixture_normalizes_payload() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["id"] = request.url.params["id"]
        seen["key"] = request.headers["x-apisports-key"]
        return httpx.Response(200, json={"errors": [], "response": [FIXTURE_ROW]})

    provider = ApiFootballProvider(_client(handler), league_ids=[78], season=2025)
    fixture = await provider.get_fixture("1035")

    assert seen == {"path": "/fixtures", "id": "1035", "key": "secret"}
    assert fixture.external_id == "1035"
    assert fixture.status == MatchStatus.live
    assert (fixture.home_score, fixture.away_score, fixture.minute) == (2, 1, 67)
    assert fixture.kickoff == datetime(2026, 3, 14, 17, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_list_fixtures_skips_malformed_rows() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"response": [FIXTURE_ROW, {"fixture": {}}]})

    provider = ApiFootballProvider(_client(handler), league_ids=[78, 79], season=2025)
    fixtures = await provider.list_fixtures()

    assert [f.external_id for f in fixtures] == ["1035", "1035"]


def test_status_mapping() -> None:
    assert map_status("FT") == MatchStatus.finished
    assert map_status("pst") == MatchStatus.postponed
    assert map_status("ABD") == MatchStatus.cancelled
    assert map_status(None) == MatchStatus.scheduled


@pytest.mark.asyncio
async def test_lineups_require_both_starting_elevens() -> None:
    rows = [
        {"team": {"name": "Bayern"}, "formation": "4-2-3-1", "startXI": [{"player": {"name": "Neuer"}}]},
        {"team": {"name": "Dortmund"}, "formation": "4-3-3", "startXI": []},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"response": rows})

    provider = ApiFootballProvider(_client(handler), league_ids=[78], season=2025)
    assert await provider.get_lineups("1035") is None

    rows[1]["startXI"] = [{"player": {"name": "Kobel"}}]
    lineups = await provider.get_lineups("1035")
    assert lineups["home"]["players"] == ["Neuer"]
    assert lineups["away"]["formation"] == "4-3-3"


@pytest.mark.asyncio
async def test_odds_parse_match_winner_market_and_cache() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={"response": [{"bookmakers": [{
            "name": "Bet365",
            "bets": [
                {"name": "Goals Over/Under", "values": [{"value": "Over 2.5", "odd": "1.80"}]},
                {"name": "Match Winner", "values": [
                    {"value": "Home", "odd": "1.55"}, {"value": "Draw", "odd": "4.20"}, {"value": "Away", "odd": "5.50"},
                ]},
            ],
        }]}]})

    fixture = FixtureData(
        external_id="1035", home_team="Bayern", away_team="Dortmund",
        kickoff=datetime(2026, 3, 14, 17, 30, tzinfo=timezone.utc),
    )
    odds = ApiFootballOddsProvider(_client(handler))

    first = await odds.get_odds(fixture)
    second = await odds.get_odds(fixture)

    assert first == {"home": 1.55, "draw": 4.2, "away": 5.5, "bookmakers": {"Bet365": {"home": 1.55, "draw": 4.2, "away": 5.5}}}
    assert second == first
    assert calls == ["/odds"]


@pytest.mark.asyncio
async def test_quota_error_payload_is_rate_limited() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": {"requests": "daily limit reached"}, "response": []})

    provider = ApiFootballProvider(_client(handler), league_ids=[78], season=2025)
    with pytest.raises(RateLimitedError) as exc_info:
        await provider.get_fixture("1")
    assert exc_info.value.retry_after == 60.0


@pytest.mark.asyncio
async def test_upstream_5xx_is_retryable_and_4xx_is_not() -> None:
    status = {"code": 503}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status["code"], json={})

    provider = ApiFootballProvider(_client(handler), league_ids=[78], season=2025)
    with pytest.raises(RetryableError):
        await provider.get_fixture("1")

    status["code"] = 404
    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        await provider.get_fixture("1")
    assert error_kind(exc_info.value) == ErrorKind.NON_RETRYABLE


@pytest.mark.asyncio
async def test_missing_api_key_is_non_retryable() -> None:
    provider = ApiFootballProvider(_client(lambda r: httpx.Response(200), api_key=""), league_ids=[78], season=2025)
    with pytest.raises(NonRetryableError):
        await provider.get_fixture("1")


def test_extract_content_falls_back_to_reasoning_fields() -> None:
    assert extract_content({"choices": [{"message": {"content": "2-1"}}]}) == "2-1"
    assert extract_content({"choices": [{"message": {"content": "", "reasoning": "1-1"}}]}) == "1-1"
    assert extract_content(
        {"choices": [{"message": {"content": None, "reasoning_details": [{"summary": "0-2"}]}}]}
    ) == "0-2"
    assert extract_content({"choices": []}) == ""


@pytest.mark.asyncio
async def test_predictor_posts_chat_completion() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"home_score": 1, "away_score": 0}'}}]})

    predictor = OpenAICompatiblePredictor(
        "kimi", base_url="https://llm.example/v1/", api_key="k", model_name="moonshot/kimi",
        transport=httpx.MockTransport(handler),
    )
    text = await predictor.call("system", "user")

    assert text == '{"home_score": 1, "away_score": 0}'
    assert seen["url"] == "https://llm.example/v1/chat/completions"
    assert seen["auth"] == "Bearer k"
    assert seen["body"]["model"] == "moonshot/kimi"
    assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, json={"error": "unknown model"}),
        httpx.Response(200, json={"choices": [{"message": {"content": "   "}}]}),
        httpx.Response(200, content=b"not json"),
    ],
)
async def test_predictor_unusable_answers_are_model_specific(response) -> None:
    predictor = OpenAICompatiblePredictor(
        "kimi", base_url="https://llm.example/v1", api_key="k",
        transport=httpx.MockTransport(lambda request: response),
    )
    with pytest.raises(ModelSpecificError) as exc_info:
        await predictor.call("system", "user")
    assert exc_info.value.provider_id == "kimi"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_predictor_auth_rejection_is_not_blamed_on_the_model(status) -> None:
    predictor = OpenAICompatiblePredictor(
        "kimi", base_url="https://llm.example/v1", api_key="expired",
        transport=httpx.MockTransport(lambda request: httpx.Response(status, json={"error": "invalid key"})),
    )
    with pytest.raises(NonRetryableError) as exc_info:
        await predictor.call("system", "user")
    assert error_kind(exc_info.value) is ErrorKind.NON_RETRYABLE
    assert not exc_info.value.skip


@pytest.mark.asyncio
async def test_rate_limiter_takes_tokens_per_key() -> None:
    now = {"t": 100.0}
    limiter = RateLimiter(monotonic=lambda: now["t"])

    assert await limiter.acquire("API_Football", 30) == 0.0
    assert await limiter.acquire("api_football", 30) == 0.0
    assert await limiter.acquire("other", None) == 0.0

    snapshot = limiter.snapshot()
    assert snapshot["api_football"]["tokens"] == 28.0
    assert "other" not in snapshot

    now["t"] += 4.0
    await limiter.acquire("api_football", 30)
    assert limiter.snapshot()["api_football"]["tokens"] == 29.0
