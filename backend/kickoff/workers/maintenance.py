"""
backend/kickoff/workers/maintenance.py

Purpose:
    Housekeeping jobs on the maintenance queue: model recovery after the
    cooldown, stats recalculation after settlement, and pruning of finished
    job records and expired dead letters.

Dependencies:
    - kickoff.services.model_health_service
    - kickoff.services.stats_service
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from kickoff.queue.models import Job
from kickoff.queue.worker import JobContext
from kickoff.services.stats_service import calculate_model_stats

if TYPE_CHECKING:
    from kickoff.runtime import Pipeline

logger = logging.getLogger("kickoff.workers.maintenance")

JOB_MODEL_RECOVERY = "model-recovery"
JOB_PRUNE_JOBS = "prune-jobs"


async def recover_models(pipeline: Pipeline, job: Job, ctx: JobContext) -> dict[str, Any]:
    recovered = await pipeline.health.recover()
    return {"recovered": recovered}


async def calculate_stats(pipeline: Pipeline, job: Job, ctx: JobContext) -> dict[str, Any]:
    stats = await calculate_model_stats(pipeline.store, clock=pipeline.clock)
    return {"models": len(stats)}


async def prune_jobs(pipeline: Pipeline, job: Job, ctx: JobContext) -> dict[str, Any]:
    pruned = await pipeline.queues.prune_completed(pipeline.completed_retention)
    expired = await pipeline.queues.dead_letters.purge_expired()
    if pruned or expired:
        logger.info("Maintenance: pruned %d finished jobs, %d expired dead letters", pruned, expired)
    return {"pruned_jobs": pruned, "expired_dead_letters": expired}
