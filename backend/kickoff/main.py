"""
backend/kickoff/main.py

Purpose:
    FastAPI application bootstrap: builds the pipeline on startup, starts its
    worker pools, hook bus and the APScheduler repeatables, and exposes the
    health check and the admin router.

Dependencies:
    - kickoff.database
    - kickoff.runtime
"""

import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, ServerSelectionTimeoutError

from kickoff.config import settings
from kickoff.database import close_db, connect_db, ensure_indexes
from kickoff.middleware.logging import StructuredLoggingMiddleware, setup_logging
from kickoff.providers.registry import FallbackConfigError
from kickoff.runtime import build_pipeline, kick_initial_jobs, register_repeatables

logger = logging.getLogger("kickoff")
scheduler = AsyncIOScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    db = None
    if settings.STORE_BACKEND == "mongo":
        db = await connect_db()

    try:
        pipeline = build_pipeline(settings, db=db)
    except FallbackConfigError:
        logger.critical("Invalid prediction fallback configuration; refusing to start")
        await close_db()
        raise

    if db is not None:
        await ensure_indexes(pipeline.store, pipeline.queues.store, pipeline.queues.dead_letters.store)
    app.state.pipeline = pipeline

    await pipeline.start()
    added = register_repeatables(scheduler, pipeline)
    scheduler.start()
    await kick_initial_jobs(pipeline)
    logger.info("Background scheduler started with %d repeatable jobs", added)

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    await pipeline.stop()
    app.state.pipeline = None
    await close_db()


app = FastAPI(
    title="Kickoff",
    description="Fixture-driven LLM prediction pipeline",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Admin-Key"],
)
app.add_middleware(StructuredLoggingMiddleware)

from kickoff.routers.admin import router as admin_router

app.include_router(admin_router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(l) for l in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={"detail": "Duplicate entry."})


@app.exception_handler(ServerSelectionTimeoutError)
async def db_timeout_handler(request: Request, exc: ServerSelectionTimeoutError):
    logger.error("Database timeout: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(OperationFailure)
async def db_operation_handler(request: Request, exc: OperationFailure):
    logger.error("Database operation error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    store_ok = False
    if pipeline is not None:
        try:
            store_ok = await pipeline.store.ping()
        except Exception:
            logger.warning("Store ping failed", exc_info=True)

    paused = [q for q in pipeline.queues.queue_names() if pipeline.queues.is_paused(q)] if pipeline else []
    workers = sum(1 for p in pipeline.pools if p.running) if pipeline else 0
    return {
        "status": "healthy" if store_ok and not paused else "degraded",
        "store": "connected" if store_ok else "disconnected",
        "backend": settings.STORE_BACKEND,
        "paused_queues": paused,
        "worker_pools_running": workers,
    }
