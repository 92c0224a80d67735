"""Live score worker. Reschedules its own job record until the match ends."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from kickoff.queue.models import Job
from kickoff.queue.worker import JobContext
from kickoff.workers._match import match_id_of

if TYPE_CHECKING:
    from kickoff.runtime import Pipeline


async def monitor_live(pipeline: Pipeline, job: Job, ctx: JobContext) -> Any:
    poll_count = int(job.payload.get("poll_count") or 0)
    return await pipeline.live.poll(match_id_of(job), poll_count)
