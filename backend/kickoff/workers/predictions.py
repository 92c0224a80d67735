"""Prediction fan-out worker."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from kickoff.queue.models import Job
from kickoff.queue.worker import JobContext
from kickoff.workers._match import match_id_of

if TYPE_CHECKING:
    from kickoff.runtime import Pipeline


async def generate_predictions(pipeline: Pipeline, job: Job, ctx: JobContext) -> dict[str, Any]:
    return await pipeline.predictions.generate(match_id_of(job))
