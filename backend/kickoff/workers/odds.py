"""
backend/kickoff/workers/odds.py

Purpose:
    Odds refresh worker. Runs at each odds offset before kickoff, stores the
    latest 1X2 snapshot and announces the refresh on the hook bus.

Dependencies:
    - kickoff.providers.base.OddsProvider
    - kickoff.services.event_bus
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from kickoff.models.artifacts import OddsSnapshot
from kickoff.queue.models import Job, Skipped
from kickoff.queue.worker import JobContext
from kickoff.services.event_models import OddsRefreshedEvent
from kickoff.workers._match import load_scheduled_match

if TYPE_CHECKING:
    from kickoff.runtime import Pipeline

logger = logging.getLogger("kickoff.workers.odds")


async def refresh_odds(pipeline: Pipeline, job: Job, ctx: JobContext) -> Any:
    match = await load_scheduled_match(pipeline.store, job)
    odds = await pipeline.odds.get_odds(match.to_fixture())
    if not odds:
        return Skipped(f"no odds published yet for match {match.id}")

    snapshot = await pipeline.store.save_odds(OddsSnapshot(
        match_id=match.id,
        home=odds.get("home"),
        draw=odds.get("draw"),
        away=odds.get("away"),
        bookmakers=odds.get("bookmakers") or {},
        fetched_at=pipeline.clock(),
    ))
    pipeline.bus.publish(OddsRefreshedEvent(
        source="odds", match_id=match.id, refresh_count=snapshot.refresh_count,
    ))
    logger.info(
        "Odds for match %s: %s/%s/%s (refresh %d)",
        match.id, snapshot.home, snapshot.draw, snapshot.away, snapshot.refresh_count,
    )
    return {"match_id": match.id, "refresh_count": snapshot.refresh_count, "bookmakers": len(snapshot.bookmakers)}
