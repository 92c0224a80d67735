"""
backend/kickoff/services/scheduler_service.py

Purpose:
    Dependency-chain scheduler. For a newly observed fixture, enqueue every
    downstream stage at its fixed offset before kickoff with a deterministic
    ``{stage}-{match_id}`` job id, so re-running it for a known fixture adds
    nothing. Also cancels and rebuilds a chain when a fixture is postponed,
    cancelled or moved.

Dependencies:
    - kickoff.queue.manager
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from kickoff.models.match import Match, MatchStatus
from kickoff.queue.manager import QueueManager
from kickoff.queue.models import EnqueueResult, QueueName
from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.scheduler")

JOB_ANALYZE = "analyze-match"
JOB_REFRESH_ODDS = "refresh-odds"
JOB_FETCH_LINEUPS = "fetch-lineups"
JOB_PREDICT = "generate-predictions"
JOB_MONITOR_LIVE = "monitor-live"
JOB_SETTLE = "settle-match"


@dataclass(frozen=True)
class ChainStage:
    prefix: str                  # job id is f"{prefix}-{match_id}"
    queue: str
    job_type: str
    offset: timedelta            # before kickoff; zero means at kickoff
    late_runnable: bool = True   # still worth running if the offset already passed

    def job_id(self, match_id: str) -> str:
        return f"{self.prefix}-{match_id}"


def _odds_label(minutes: int) -> str:
    return f"{minutes // 60}h" if minutes % 60 == 0 else f"{minutes}m"


def build_chain(
    *,
    analyze_minutes: int = 360,
    odds_minutes: list[int] | None = None,
    lineups_minutes: int = 60,
    predict_minutes: int = 30,
) -> list[ChainStage]:
    stages = [ChainStage("analyze", QueueName.analysis.value, JOB_ANALYZE, timedelta(minutes=analyze_minutes))]
    for minutes in odds_minutes if odds_minutes is not None else [120, 95, 35, 10]:
        stages.append(ChainStage(
            f"odds-{_odds_label(minutes)}", QueueName.odds.value, JOB_REFRESH_ODDS, timedelta(minutes=minutes),
        ))
    stages += [
        ChainStage("lineups", QueueName.lineups.value, JOB_FETCH_LINEUPS, timedelta(minutes=lineups_minutes)),
        ChainStage("predict", QueueName.predictions.value, JOB_PREDICT, timedelta(minutes=predict_minutes)),
        ChainStage("live", QueueName.live.value, JOB_MONITOR_LIVE, timedelta(0), late_runnable=False),
    ]
    return stages


def live_job_id(match_id: str) -> str:
    return f"live-{match_id}"


def settle_job_id(match_id: str) -> str:
    return f"settle-{match_id}"


class ChainScheduler:
    def __init__(
        self,
        queues: QueueManager,
        stages: list[ChainStage] | None = None,
        *,
        late_delay_seconds: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.queues = queues
        self.stages = stages if stages is not None else build_chain()
        self.late_delay_seconds = late_delay_seconds
        self._clock = clock

    async def on_new_fixture(self, match: Match, *, replace_terminal: bool = False) -> int:
        """Enqueue the full chain for ``match``. Returns how many jobs were newly accepted."""
        if match.status != MatchStatus.scheduled:
            logger.debug("Not chaining match %s in status %s", match.id, match.status.value)
            return 0
        now = self._clock()
        if match.kickoff <= now:
            logger.info("Match %s already kicked off; leaving it to stuck-match repair", match.id)
            return 0

        scheduled = 0
        for stage in self.stages:
            run_at = match.kickoff - stage.offset
            delay = (run_at - now).total_seconds()
            if delay <= 0:
                if not stage.late_runnable:
                    continue
                delay = self.late_delay_seconds
            result = await self.queues.enqueue(
                stage.queue,
                stage.job_type,
                {"match_id": match.id, "external_id": match.external_id},
                job_id=stage.job_id(match.id),
                delay=delay,
                replace_terminal=replace_terminal,
            )
            if result is EnqueueResult.accepted:
                scheduled += 1

        if scheduled:
            logger.info(
                "Scheduled %d jobs for match %s (%s vs %s, kickoff %s)",
                scheduled, match.id, match.home_team, match.away_team, match.kickoff.isoformat(),
            )
        return scheduled

    async def cancel_match_jobs(self, match_id: str) -> int:
        """Drop chain jobs for ``match_id`` that have not started yet."""
        cancelled = 0
        for stage in self.stages:
            if await self.queues.cancel(stage.queue, stage.job_id(match_id)):
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %d pending chain jobs for match %s", cancelled, match_id)
        return cancelled

    async def reschedule_match(self, match: Match) -> int:
        await self.cancel_match_jobs(match.id)
        return await self.on_new_fixture(match, replace_terminal=True)
