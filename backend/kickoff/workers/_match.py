"""Shared lookups for per-match job handlers."""

from kickoff.errors import NonRetryableError
from kickoff.models.match import Match, MatchStatus
from kickoff.queue.models import Job
from kickoff.store.base import PipelineStore


def match_id_of(job: Job) -> str:
    match_id = job.payload.get("match_id")
    if not match_id:
        raise NonRetryableError(f"job {job.id} has no match_id in its payload")
    return str(match_id)


async def load_scheduled_match(store: PipelineStore, job: Job) -> Match:
    """The job's match, if it is still upcoming. Anything else makes the job moot."""
    match_id = match_id_of(job)
    match = await store.get_match(match_id)
    if match is None:
        raise NonRetryableError(f"match {match_id} not found", skip=True)
    if match.status != MatchStatus.scheduled:
        raise NonRetryableError(f"match {match_id} is {match.status.value}", skip=True)
    return match
