"""
backend/kickoff/services/reconciliation_service.py

Purpose:
    Self-healing sweeps. ``sweep`` finds matches inside each stage's window
    that still lack that stage's artifact (analysis, odds, lineups,
    predictions, settlement) and re-enqueues the stage; ``repair_stuck`` re-kicks
    matches left in ``scheduled`` past kickoff or ``live`` without a poll job.
    Every enqueue uses a deterministic id, clearing a finished record with the
    same id first, so running either sweep repeatedly is harmless.

Dependencies:
    - kickoff.queue.manager
    - kickoff.store.base
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from kickoff.models.match import Match, MatchStatus
from kickoff.queue.manager import QueueManager
from kickoff.queue.models import PENDING_STATES, EnqueueResult, JobState, QueueName
from kickoff.services.scheduler_service import (
    JOB_ANALYZE,
    JOB_FETCH_LINEUPS,
    JOB_MONITOR_LIVE,
    JOB_PREDICT,
    JOB_REFRESH_ODDS,
    JOB_SETTLE,
    live_job_id,
    settle_job_id,
)
from kickoff.store.base import PipelineStore
from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.reconciliation")

SETTLEMENT_PRIORITY = 1
REPAIR_PRIORITY = 1


class ReconciliationService:
    def __init__(
        self,
        store: PipelineStore,
        queues: QueueManager,
        *,
        analysis_window_hours: int = 12,
        odds_window_hours: int = 6,
        lineups_window_hours: int = 2,
        predictions_window_hours: int = 2,
        settlement_lookback_hours: int = 72,
        stuck_lookback_hours: int = 48,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.queues = queues
        self.analysis_window = timedelta(hours=analysis_window_hours)
        self.odds_window = timedelta(hours=odds_window_hours)
        self.lineups_window = timedelta(hours=lineups_window_hours)
        self.predictions_window = timedelta(hours=predictions_window_hours)
        self.settlement_lookback = timedelta(hours=settlement_lookback_hours)
        self.stuck_lookback = timedelta(hours=stuck_lookback_hours)
        self._clock = clock

    async def _upcoming(self, now: datetime, window: timedelta) -> list[Match]:
        return await self.store.list_matches(
            statuses=(MatchStatus.scheduled,), kickoff_from=now, kickoff_to=now + window,
        )

    async def _requeue(
        self, queue: str, job_type: str, job_id: str, match: Match, *, priority: int = 10,
    ) -> bool:
        result = await self.queues.enqueue(
            queue,
            job_type,
            {"match_id": match.id, "external_id": match.external_id},
            job_id=job_id,
            priority=priority,
            replace_terminal=True,
        )
        return result is EnqueueResult.accepted

    async def sweep(self) -> dict[str, Any]:
        now = self._clock()
        found = {"analysis": 0, "odds": 0, "lineups": 0, "predictions": 0, "settlement": 0}
        queued = dict.fromkeys(found, 0)

        for match in await self._upcoming(now, self.analysis_window):
            if await self.store.get_analysis(match.id) is None:
                found["analysis"] += 1
                queued["analysis"] += await self._requeue(
                    QueueName.analysis.value, JOB_ANALYZE, f"backfill-analyze-{match.id}", match,
                )

        for match in await self._upcoming(now, self.odds_window):
            if await self.store.get_odds(match.id) is None:
                found["odds"] += 1
                queued["odds"] += await self._requeue(
                    QueueName.odds.value, JOB_REFRESH_ODDS, f"backfill-odds-{match.id}", match,
                )

        for match in await self._upcoming(now, self.lineups_window):
            if await self.store.get_lineups(match.id) is None:
                found["lineups"] += 1
                queued["lineups"] += await self._requeue(
                    QueueName.lineups.value, JOB_FETCH_LINEUPS, f"backfill-lineups-{match.id}", match,
                )

        for match in await self._upcoming(now, self.predictions_window):
            if not await self.store.list_predictions(match.id):
                found["predictions"] += 1
                queued["predictions"] += await self._requeue(
                    QueueName.predictions.value, JOB_PREDICT, f"backfill-predict-{match.id}", match,
                )

        finished = await self.store.list_matches(
            statuses=(MatchStatus.finished,), kickoff_from=now - self.settlement_lookback, kickoff_to=now,
        )
        for match in finished:
            if await self.store.count_pending(match.id) > 0:
                found["settlement"] += 1
                queued["settlement"] += await self._requeue(
                    QueueName.settlement.value, JOB_SETTLE, settle_job_id(match.id), match,
                    priority=SETTLEMENT_PRIORITY,
                )

        logger.info("Reconciliation sweep: missing=%s queued=%s", found, queued)
        return {"missing": found, "queued": queued}

    async def repair_stuck(self) -> dict[str, Any]:
        now = self._clock()
        repaired = {"scheduled_past_kickoff": 0, "live_without_poller": 0}

        overdue = await self.store.list_matches(
            statuses=(MatchStatus.scheduled,), kickoff_from=now - self.stuck_lookback, kickoff_to=now,
        )
        for match in overdue:
            if await self._requeue(
                QueueName.live.value, JOB_MONITOR_LIVE, live_job_id(match.id), match, priority=REPAIR_PRIORITY,
            ):
                repaired["scheduled_past_kickoff"] += 1
                logger.warning("Match %s still scheduled %s after kickoff; poller re-kicked", match.id, now - match.kickoff)

        live = await self.store.list_matches(
            statuses=(MatchStatus.live,), kickoff_from=now - self.stuck_lookback,
        )
        for match in live:
            job = await self.queues.get_job(QueueName.live.value, live_job_id(match.id))
            if job is not None and (job.state in PENDING_STATES or job.state == JobState.active):
                continue
            if await self._requeue(
                QueueName.live.value, JOB_MONITOR_LIVE, live_job_id(match.id), match, priority=REPAIR_PRIORITY,
            ):
                repaired["live_without_poller"] += 1
                logger.warning("Live match %s had no poll job; poller re-kicked", match.id)

        if any(repaired.values()):
            logger.info("Stuck-match repair: %s", repaired)
        return repaired

    async def run(self) -> dict[str, Any]:
        return {"sweep": await self.sweep(), "stuck": await self.repair_stuck()}
