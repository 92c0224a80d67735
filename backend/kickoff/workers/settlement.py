"""Settlement worker."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from kickoff.queue.models import Job
from kickoff.queue.worker import JobContext
from kickoff.workers._match import match_id_of

if TYPE_CHECKING:
    from kickoff.runtime import Pipeline


async def settle_match(pipeline: Pipeline, job: Job, ctx: JobContext) -> dict[str, Any]:
    return await pipeline.settlement.settle(match_id_of(job))
