"""Prompt construction for the prediction stage."""

from __future__ import annotations

from typing import Any, Optional

from kickoff.models.artifacts import Analysis, Lineups, OddsSnapshot
from kickoff.models.match import Match

SYSTEM_PROMPT = """You are a football match score predictor. Your task is to predict the final score of a football match.

IMPORTANT: You must respond with ONLY valid JSON in this exact format:
{"home_score": <integer>, "away_score": <integer>}

Rules:
- home_score and away_score must be non-negative integers (0 or higher)
- Do not include any other text, explanation, or markdown formatting
- Do not wrap the JSON in code blocks"""


def _standings_lines(match: Match, standings: Any) -> list[str]:
    lines = []
    for league in standings or []:
        tables = ((league or {}).get("league") or {}).get("standings") or []
        for table in tables:
            for row in table:
                team = (row.get("team") or {}).get("name")
                if team in (match.home_team, match.away_team):
                    lines.append(
                        f"- {team}: position {row.get('rank')}, {row.get('points')} pts, "
                        f"form {row.get('form') or 'n/a'}"
                    )
    return lines


def _h2h_lines(head_to_head: Any, limit: int = 5) -> list[str]:
    lines = []
    for item in (head_to_head or [])[:limit]:
        teams = item.get("teams") or {}
        goals = item.get("goals") or {}
        lines.append(
            f"- {(teams.get('home') or {}).get('name')} {goals.get('home')}-"
            f"{goals.get('away')} {(teams.get('away') or {}).get('name')}"
        )
    return lines


def build_user_prompt(
    match: Match,
    analysis: Optional[Analysis] = None,
    odds: Optional[OddsSnapshot] = None,
    lineups: Optional[Lineups] = None,
) -> str:
    parts = [
        "Predict the final score for this football match:",
        "",
        f"Home Team: {match.home_team}",
        f"Away Team: {match.away_team}",
        f"Competition: {match.league_name or 'Unknown'}",
        f"Kickoff (UTC): {match.kickoff.strftime('%Y-%m-%d %H:%M')}",
    ]

    if analysis is not None:
        standings = _standings_lines(match, analysis.data.get("standings"))
        if standings:
            parts += ["", "Standings:", *standings]
        h2h = _h2h_lines(analysis.data.get("head_to_head"))
        if h2h:
            parts += ["", "Recent head-to-head:", *h2h]

    if odds is not None and odds.home and odds.draw and odds.away:
        parts += ["", f"Market odds (1X2): {odds.home:.2f} / {odds.draw:.2f} / {odds.away:.2f}"]

    if lineups is not None and lineups.available:
        parts += [
            "",
            f"{match.home_team} XI ({lineups.home_formation or '?'}): {', '.join(lineups.home)}",
            f"{match.away_team} XI ({lineups.away_formation or '?'}): {', '.join(lineups.away)}",
        ]

    parts += [
        "",
        "Consider team strength, recent form, and historical head-to-head when making your prediction.",
        "",
        "Respond with ONLY the JSON prediction:",
    ]
    return "\n".join(parts)
