"""Reconciliation sweeps: missing stage artifacts and stuck matches."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from kickoff.queue.models import Job
from kickoff.queue.worker import JobContext

if TYPE_CHECKING:
    from kickoff.runtime import Pipeline

JOB_BACKFILL_SWEEP = "backfill-sweep"
JOB_STUCK_REPAIR = "stuck-repair"


async def backfill_sweep(pipeline: Pipeline, job: Job, ctx: JobContext) -> dict[str, Any]:
    return await pipeline.reconciliation.sweep()


async def stuck_repair(pipeline: Pipeline, job: Job, ctx: JobContext) -> dict[str, Any]:
    return await pipeline.reconciliation.repair_stuck()
