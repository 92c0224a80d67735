"""Confirmed line-ups worker. Lineups are optional context for predictions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from kickoff.models.artifacts import Lineups
from kickoff.queue.models import Job, Skipped
from kickoff.queue.worker import JobContext
from kickoff.workers._match import load_scheduled_match

if TYPE_CHECKING:
    from kickoff.runtime import Pipeline


async def fetch_lineups(pipeline: Pipeline, job: Job, ctx: JobContext) -> Any:
    match = await load_scheduled_match(pipeline.store, job)
    raw = await pipeline.sports.get_lineups(match.external_id)
    if not raw:
        return Skipped(f"lineups not announced for match {match.id}")

    lineups = Lineups(
        match_id=match.id,
        home=raw["home"]["players"],
        away=raw["away"]["players"],
        home_formation=raw["home"].get("formation"),
        away_formation=raw["away"].get("formation"),
        fetched_at=pipeline.clock(),
    )
    if not lineups.available:
        return Skipped(f"lineups incomplete for match {match.id}")
    await pipeline.store.save_lineups(lineups)
    return {"match_id": match.id, "home": len(lineups.home), "away": len(lineups.away)}
