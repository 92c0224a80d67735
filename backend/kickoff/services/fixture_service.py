"""
backend/kickoff/services/fixture_service.py

Purpose:
    Periodic fixture ingest. Upserts every fetched fixture by external id,
    chains only newly observed fixtures, cancels the chain of a fixture that
    became postponed/cancelled and rebuilds it when a scheduled kickoff moves.

Dependencies:
    - kickoff.providers.base
    - kickoff.services.scheduler_service
    - kickoff.store.base
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from kickoff.models.match import MatchStatus, can_transition
from kickoff.providers.base import SportsDataProvider
from kickoff.services.scheduler_service import ChainScheduler
from kickoff.store.base import PipelineStore
from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.fixtures")

_CALLED_OFF = (MatchStatus.postponed, MatchStatus.cancelled)


class FixtureService:
    def __init__(
        self,
        store: PipelineStore,
        provider: SportsDataProvider,
        scheduler: ChainScheduler,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.provider = provider
        self.scheduler = scheduler
        self._clock = clock

    async def ingest(self) -> dict[str, Any]:
        fixtures = await self.provider.list_fixtures()
        now = self._clock()
        result = {
            "fetched": len(fixtures),
            "created": 0,
            "refreshed": 0,
            "jobs_scheduled": 0,
            "chains_cancelled": 0,
            "rescheduled": 0,
        }

        for fixture in fixtures:
            match, previous = await self.store.upsert_fixture(fixture, now)
            if previous is None:
                result["created"] += 1
                result["jobs_scheduled"] += await self.scheduler.on_new_fixture(match)
                continue

            result["refreshed"] += 1
            if fixture.status in _CALLED_OFF and match.status != fixture.status:
                if can_transition(match.status, fixture.status):
                    await self.store.update_match(match.id, {"status": fixture.status}, now)
                    await self.scheduler.cancel_match_jobs(match.id)
                    result["chains_cancelled"] += 1
                    logger.info("Match %s is now %s; chain cancelled", match.id, fixture.status.value)
                continue

            if match.status == MatchStatus.scheduled and previous.kickoff != match.kickoff:
                logger.info(
                    "Match %s kickoff moved %s -> %s; rescheduling chain",
                    match.id, previous.kickoff.isoformat(), match.kickoff.isoformat(),
                )
                result["jobs_scheduled"] += await self.scheduler.reschedule_match(match)
                result["rescheduled"] += 1

        logger.info(
            "Fixture ingest: fetched=%d created=%d refreshed=%d jobs=%d cancelled=%d rescheduled=%d",
            result["fetched"], result["created"], result["refreshed"], result["jobs_scheduled"],
            result["chains_cancelled"], result["rescheduled"],
        )
        return result
