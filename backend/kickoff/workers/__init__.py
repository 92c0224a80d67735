"""Job handler registry: which job types each queue's worker pool runs."""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING

from kickoff.queue.models import QueueName
from kickoff.queue.worker import Handler
from kickoff.services.event_handlers import JOB_CALCULATE_STATS
from kickoff.services.scheduler_service import (
    JOB_ANALYZE,
    JOB_FETCH_LINEUPS,
    JOB_MONITOR_LIVE,
    JOB_PREDICT,
    JOB_REFRESH_ODDS,
    JOB_SETTLE,
)
from kickoff.workers.analysis import analyze_match
from kickoff.workers.backfill import JOB_BACKFILL_SWEEP, JOB_STUCK_REPAIR, backfill_sweep, stuck_repair
from kickoff.workers.fixtures import JOB_FETCH_FIXTURES, fetch_fixtures
from kickoff.workers.lineups import fetch_lineups
from kickoff.workers.live_score import monitor_live
from kickoff.workers.maintenance import (
    JOB_MODEL_RECOVERY,
    JOB_PRUNE_JOBS,
    calculate_stats,
    prune_jobs,
    recover_models,
)
from kickoff.workers.odds import refresh_odds
from kickoff.workers.predictions import generate_predictions
from kickoff.workers.settlement import settle_match

if TYPE_CHECKING:
    from kickoff.runtime import Pipeline

_REGISTRY = {
    QueueName.fixtures: {JOB_FETCH_FIXTURES: fetch_fixtures},
    QueueName.analysis: {JOB_ANALYZE: analyze_match},
    QueueName.odds: {JOB_REFRESH_ODDS: refresh_odds},
    QueueName.lineups: {JOB_FETCH_LINEUPS: fetch_lineups},
    QueueName.predictions: {JOB_PREDICT: generate_predictions},
    QueueName.live: {JOB_MONITOR_LIVE: monitor_live},
    QueueName.settlement: {JOB_SETTLE: settle_match},
    QueueName.backfill: {JOB_BACKFILL_SWEEP: backfill_sweep, JOB_STUCK_REPAIR: stuck_repair},
    QueueName.maintenance: {
        JOB_MODEL_RECOVERY: recover_models,
        JOB_CALCULATE_STATS: calculate_stats,
        JOB_PRUNE_JOBS: prune_jobs,
    },
}


def build_handlers(pipeline: Pipeline) -> dict[str, dict[str, Handler]]:
    return {
        queue.value: {job_type: partial(fn, pipeline) for job_type, fn in handlers.items()}
        for queue, handlers in _REGISTRY.items()
    }
