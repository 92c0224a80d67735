"""Pre-match analysis worker: standings, head-to-head and provider prediction."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from kickoff.models.artifacts import Analysis
from kickoff.queue.models import Job, Skipped
from kickoff.queue.worker import JobContext
from kickoff.workers._match import load_scheduled_match

if TYPE_CHECKING:
    from kickoff.runtime import Pipeline

logger = logging.getLogger("kickoff.workers.analysis")


async def analyze_match(pipeline: Pipeline, job: Job, ctx: JobContext) -> Any:
    match = await load_scheduled_match(pipeline.store, job)
    context = await pipeline.sports.get_match_context(match.to_fixture())
    if not context:
        return Skipped(f"no analysis data for match {match.id}")

    await pipeline.store.save_analysis(Analysis(match_id=match.id, data=context, fetched_at=pipeline.clock()))
    logger.info("Analysis stored for match %s (%s)", match.id, ", ".join(sorted(context)))
    return {"match_id": match.id, "sections": sorted(context)}
