"""Fixture ingest worker (repeatable ``fetch-fixtures``)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from kickoff.queue.models import Job
from kickoff.queue.worker import JobContext

if TYPE_CHECKING:
    from kickoff.runtime import Pipeline

JOB_FETCH_FIXTURES = "fetch-fixtures"


async def fetch_fixtures(pipeline: Pipeline, job: Job, ctx: JobContext) -> dict[str, Any]:
    return await pipeline.fixtures.ingest()
