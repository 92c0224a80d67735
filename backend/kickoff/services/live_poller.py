"""
backend/kickoff/services/live_poller.py

Purpose:
    Self-rescheduling live score poller. Each poll fetches the fixture,
    applies legal status/score/minute changes and either asks to run again
    after the poll interval, hands a finished match to settlement, or stops
    (called off, or the poll budget is spent).

Dependencies:
    - kickoff.providers.base
    - kickoff.queue.manager
    - kickoff.services.scheduler_service
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from kickoff.errors import NonRetryableError, RetryableError
from kickoff.models.match import Match, MatchStatus, can_transition
from kickoff.providers.base import SportsDataProvider
from kickoff.queue.manager import QueueManager
from kickoff.queue.models import EnqueueResult, QueueName, Reschedule, Skipped
from kickoff.services.scheduler_service import JOB_SETTLE, ChainScheduler, settle_job_id
from kickoff.store.base import PipelineStore
from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.live")

SETTLEMENT_PRIORITY = 1


class LivePoller:
    def __init__(
        self,
        store: PipelineStore,
        provider: SportsDataProvider,
        queues: QueueManager,
        scheduler: ChainScheduler,
        *,
        poll_interval: float = 60.0,
        max_polls: int = 150,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.provider = provider
        self.queues = queues
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._clock = clock

    async def _enqueue_settlement(self, match: Match) -> bool:
        result = await self.queues.enqueue(
            QueueName.settlement.value,
            JOB_SETTLE,
            {"match_id": match.id, "external_id": match.external_id},
            job_id=settle_job_id(match.id),
            priority=SETTLEMENT_PRIORITY,
        )
        return result is EnqueueResult.accepted

    async def poll(self, match_id: str, poll_count: int = 0) -> Any:
        match = await self.store.get_match(match_id)
        if match is None:
            raise NonRetryableError(f"match {match_id} not found", skip=True)

        if match.status == MatchStatus.finished:
            await self._enqueue_settlement(match)
            return {"status": "finished", "polls": poll_count, "settlement_enqueued": True}
        if match.status in (MatchStatus.postponed, MatchStatus.cancelled):
            return Skipped(f"match {match_id} is {match.status.value}")

        poll_count += 1
        fixture = await self.provider.get_fixture(match.external_id)
        if fixture is None:
            raise RetryableError(f"fixture {match.external_id} missing from provider")

        changes: dict[str, Any] = {}
        if fixture.status != match.status:
            if can_transition(match.status, fixture.status):
                changes["status"] = fixture.status
            else:
                logger.warning(
                    "Ignoring illegal status change %s -> %s for match %s",
                    match.status.value, fixture.status.value, match_id,
                )
        for field in ("home_score", "away_score", "minute"):
            value = getattr(fixture, field)
            if value is not None and value != getattr(match, field):
                changes[field] = value
        if changes:
            updated = await self.store.update_match(match_id, changes, self._clock())
            match = updated or match

        if match.status == MatchStatus.finished:
            if not match.has_result:
                raise RetryableError(f"match {match_id} finished without a final score")
            await self._enqueue_settlement(match)
            logger.info(
                "Match %s finished %d-%d after %d polls; settlement enqueued",
                match_id, match.home_score, match.away_score, poll_count,
            )
            return {
                "status": "finished",
                "polls": poll_count,
                "final_score": {"home": match.home_score, "away": match.away_score},
                "settlement_enqueued": True,
            }

        if match.status in (MatchStatus.postponed, MatchStatus.cancelled):
            await self.scheduler.cancel_match_jobs(match_id)
            logger.info("Match %s became %s while polling; stopping", match_id, match.status.value)
            return {"status": match.status.value, "polls": poll_count}

        if poll_count >= self.max_polls:
            logger.warning(
                "Match %s still %s after %d polls; giving up until stuck-match repair",
                match_id, match.status.value, poll_count,
            )
            return {"status": "max_polls_reached", "polls": poll_count}

        return Reschedule(self.poll_interval, {"poll_count": poll_count})
