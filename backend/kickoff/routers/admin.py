"""
backend/kickoff/routers/admin.py

Purpose:
    Operator HTTP surface: queue and breaker status, dead-letter inspection
    and replay, model health overrides, and manual settlement and sweeps.
    Guarded by a static API key sent as ``X-Admin-Key``.

Dependencies:
    - kickoff.runtime.Pipeline (via app.state)
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from kickoff.config import settings
from kickoff.queue.models import EnqueueResult, QueueName
from kickoff.runtime import Pipeline
from kickoff.services.scheduler_service import JOB_SETTLE, settle_job_id

logger = logging.getLogger("kickoff.admin")
router = APIRouter(prefix="/api/admin", tags=["admin"])


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not running.")
    return pipeline


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin API disabled.")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key.")


def _known_queue(pipeline: Pipeline, queue: str) -> str:
    if queue not in pipeline.queues.queue_names():
        raise HTTPException(status_code=404, detail=f"Unknown queue {queue!r}.")
    return queue


@router.get("/queues", dependencies=[Depends(require_admin)])
async def queue_status(pipeline: Pipeline = Depends(get_pipeline)):
    return {"queues": await pipeline.queues.stats()}


@router.post("/queues/{queue}/resume", dependencies=[Depends(require_admin)])
async def resume_queue(queue: str, pipeline: Pipeline = Depends(get_pipeline)):
    pipeline.queues.resume(_known_queue(pipeline, queue))
    logger.warning("Admin resumed queue %s", queue)
    return {"queue": queue, "paused": pipeline.queues.is_paused(queue)}


# -- dead letters ----------------------------------------------------------

@router.get("/dlq", dependencies=[Depends(require_admin)])
async def list_dead_letters(
    queue: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    pipeline: Pipeline = Depends(get_pipeline),
):
    store = pipeline.queues.dead_letters.store
    entries = await store.list_entries(queue, limit)
    return {"total": await store.count(), "items": [e.model_dump(mode="json") for e in entries]}


@router.delete("/dlq/{queue}/{job_id}", dependencies=[Depends(require_admin)])
async def delete_dead_letter(queue: str, job_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    if not await pipeline.queues.dead_letters.store.delete(queue, job_id):
        raise HTTPException(status_code=404, detail="Dead letter not found.")
    return {"deleted": True}


@router.post("/dlq/{queue}/{job_id}/replay", dependencies=[Depends(require_admin)])
async def replay_dead_letter(queue: str, job_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    result = await pipeline.queues.replay_dead_letter(_known_queue(pipeline, queue), job_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Dead letter not found.")
    logger.warning("Admin replayed dead letter %s:%s (%s)", queue, job_id, result.value)
    return {"queue": queue, "job_id": job_id, "result": result.value}


@router.delete("/dlq", dependencies=[Depends(require_admin)])
async def clear_dead_letters(pipeline: Pipeline = Depends(get_pipeline)):
    cleared = await pipeline.queues.dead_letters.store.clear()
    logger.warning("Admin cleared %d dead letters", cleared)
    return {"cleared": cleared}


# -- models ----------------------------------------------------------------

@router.get("/model-health", dependencies=[Depends(require_admin)])
async def model_health(pipeline: Pipeline = Depends(get_pipeline)):
    rows = {h.model_id: h.model_dump(mode="json") for h in await pipeline.health.snapshot()}
    stats = {s.model_id: s.model_dump(mode="json") for s in await pipeline.store.list_model_stats()}
    return {
        "models": [
            {"model_id": model_id, "health": rows.get(model_id), "stats": stats.get(model_id),
             "fallback": pipeline.registry.fallback_for(model_id)}
            for model_id in pipeline.registry.model_ids()
        ],
        "fallback_uses": pipeline.orchestrator.fallback_uses,
    }


@router.post("/models/{model_id}/re-enable", dependencies=[Depends(require_admin)])
async def reenable_model(model_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    if model_id not in pipeline.registry.model_ids():
        raise HTTPException(status_code=404, detail=f"Unknown model {model_id!r}.")
    health = await pipeline.health.reenable(model_id)
    return health.model_dump(mode="json")


# -- manual triggers -------------------------------------------------------

@router.post("/matches/{match_id}/settle", dependencies=[Depends(require_admin)])
async def trigger_settlement(match_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    match = await pipeline.store.get_match(match_id)
    if match is None:
        raise HTTPException(status_code=404, detail="Match not found.")
    result = await pipeline.queues.enqueue(
        QueueName.settlement.value,
        JOB_SETTLE,
        {"match_id": match.id, "external_id": match.external_id},
        job_id=settle_job_id(match.id),
        priority=1,
        replace_terminal=True,
    )
    return {"match_id": match_id, "result": result.value, "enqueued": result is EnqueueResult.accepted}


@router.post("/sweep", dependencies=[Depends(require_admin)])
async def trigger_sweep(pipeline: Pipeline = Depends(get_pipeline)):
    return await pipeline.reconciliation.run()


@router.get("/event-bus", dependencies=[Depends(require_admin)])
async def event_bus_stats(pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.bus.stats()
