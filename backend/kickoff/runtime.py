"""
backend/kickoff/runtime.py

Purpose:
    Wires the pipeline together from settings: stores (Mongo or in-memory),
    queue manager with per-queue policies, providers, services and one worker
    pool per queue. Also registers the repeatable jobs on APScheduler, which
    only enqueue; the work itself always runs through the queues.

Dependencies:
    - apscheduler
    - kickoff.config
    - kickoff.queue.*
    - kickoff.services.*
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from kickoff.config import Settings, split_csv
from kickoff.providers.api_football import ApiFootballClient, ApiFootballOddsProvider, ApiFootballProvider
from kickoff.providers.base import OddsProvider, Predictor, SportsDataProvider
from kickoff.providers.llm import build_predictors
from kickoff.providers.registry import ProviderRegistry, parse_fallbacks
from kickoff.queue.dead_letter import DeadLetterSink, InMemoryDeadLetterStore, MongoDeadLetterStore
from kickoff.queue.manager import QueueManager
from kickoff.queue.models import BackoffPolicy, EnqueueResult, QueueName, QueuePolicy
from kickoff.queue.mongo_store import MongoJobStore
from kickoff.queue.store import InMemoryJobStore
from kickoff.queue.worker import WorkerPool
from kickoff.services.event_bus import InMemoryEventBus
from kickoff.services.event_handlers import register_hook_handlers
from kickoff.services.fixture_service import FixtureService
from kickoff.services.live_poller import LivePoller
from kickoff.services.model_health_service import ModelHealthService
from kickoff.services.prediction_fallback import PredictionFallbackOrchestrator
from kickoff.services.prediction_service import PredictionService
from kickoff.services.rate_limiter import RateLimiter
from kickoff.services.reconciliation_service import ReconciliationService
from kickoff.services.scheduler_service import ChainScheduler, build_chain
from kickoff.services.scoring import ScoringRules
from kickoff.services.settlement_service import SettlementService
from kickoff.store.memory import InMemoryPipelineStore
from kickoff.store.mongo import MongoPipelineStore
from kickoff.utils import utcnow
from kickoff.workers import build_handlers
from kickoff.workers.backfill import JOB_BACKFILL_SWEEP, JOB_STUCK_REPAIR
from kickoff.workers.fixtures import JOB_FETCH_FIXTURES
from kickoff.workers.maintenance import JOB_MODEL_RECOVERY, JOB_PRUNE_JOBS

logger = logging.getLogger("kickoff.runtime")

_CONCURRENCY_FIELDS = {
    QueueName.fixtures: "CONCURRENCY_FIXTURES",
    QueueName.analysis: "CONCURRENCY_ANALYSIS",
    QueueName.odds: "CONCURRENCY_ODDS",
    QueueName.lineups: "CONCURRENCY_LINEUPS",
    QueueName.predictions: "CONCURRENCY_PREDICTIONS",
    QueueName.live: "CONCURRENCY_LIVE",
    QueueName.settlement: "CONCURRENCY_SETTLEMENT",
    QueueName.backfill: "CONCURRENCY_BACKFILL",
    QueueName.maintenance: "CONCURRENCY_MAINTENANCE",
}


def build_policies(s: Settings) -> dict[str, QueuePolicy]:
    backoff = BackoffPolicy(
        rate_limit_seconds=s.BACKOFF_RATE_LIMIT_SECONDS,
        timeout_step_seconds=s.BACKOFF_TIMEOUT_STEP_SECONDS,
        timeout_max_seconds=s.BACKOFF_TIMEOUT_MAX_SECONDS,
        base_seconds=s.BACKOFF_BASE_SECONDS,
        max_seconds=s.BACKOFF_MAX_SECONDS,
        jitter=s.BACKOFF_JITTER,
    )
    return {
        queue.value: QueuePolicy(
            concurrency=getattr(s, field),
            lease_seconds=s.QUEUE_LEASE_SECONDS,
            max_attempts=s.QUEUE_DEFAULT_MAX_ATTEMPTS,
            job_timeout_seconds=s.QUEUE_JOB_TIMEOUT_SECONDS,
            poll_interval_seconds=s.QUEUE_POLL_INTERVAL_SECONDS,
            max_stalls=s.QUEUE_MAX_STALLS,
            backoff=backoff,
        )
        for queue, field in _CONCURRENCY_FIELDS.items()
    }


class Pipeline:
    """Everything the job handlers and the admin surface need, built once."""

    def __init__(
        self,
        *,
        settings: Settings,
        store,
        queues: QueueManager,
        sports: SportsDataProvider,
        odds: OddsProvider,
        registry: ProviderRegistry,
        bus: InMemoryEventBus,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.queues = queues
        self.sports = sports
        self.odds = odds
        self.registry = registry
        self.bus = bus
        self.clock = clock
        self.completed_retention = timedelta(hours=settings.QUEUE_COMPLETED_RETENTION_HOURS)

        self.health = ModelHealthService(
            store,
            threshold=settings.MODEL_DISABLE_THRESHOLD,
            cooldown_minutes=settings.MODEL_RECOVERY_COOLDOWN_MINUTES,
            reset_to=settings.MODEL_RECOVERY_RESET_TO,
            clock=clock,
        )
        self.orchestrator = PredictionFallbackOrchestrator(
            registry, self.health, max_depth=settings.FALLBACK_MAX_DEPTH,
        )
        self.chain = ChainScheduler(
            queues,
            build_chain(
                analyze_minutes=settings.CHAIN_ANALYZE_MINUTES,
                odds_minutes=[int(m) for m in split_csv(settings.CHAIN_ODDS_MINUTES)],
                lineups_minutes=settings.CHAIN_LINEUPS_MINUTES,
                predict_minutes=settings.CHAIN_PREDICT_MINUTES,
            ),
            late_delay_seconds=settings.CHAIN_LATE_DELAY_SECONDS,
            clock=clock,
        )
        self.fixtures = FixtureService(store, sports, self.chain, clock=clock)
        self.predictions = PredictionService(
            store, registry, self.orchestrator, self.health, bus=bus, clock=clock,
        )
        self.live = LivePoller(
            store, sports, queues, self.chain,
            poll_interval=settings.LIVE_POLL_INTERVAL_SECONDS,
            max_polls=settings.LIVE_MAX_POLLS,
            clock=clock,
        )
        self.settlement = SettlementService(
            store,
            rules=ScoringRules(
                quota_min=settings.QUOTA_MIN,
                quota_max=settings.QUOTA_MAX,
                goal_diff_bonus=settings.GOAL_DIFF_BONUS,
                exact_score_bonus=settings.EXACT_SCORE_BONUS,
            ),
            bus=bus,
            clock=clock,
        )
        self.reconciliation = ReconciliationService(
            store, queues,
            analysis_window_hours=settings.SWEEP_ANALYSIS_WINDOW_HOURS,
            odds_window_hours=settings.SWEEP_ODDS_WINDOW_HOURS,
            lineups_window_hours=settings.SWEEP_LINEUPS_WINDOW_HOURS,
            predictions_window_hours=settings.SWEEP_PREDICTIONS_WINDOW_HOURS,
            settlement_lookback_hours=settings.SWEEP_SETTLEMENT_LOOKBACK_HOURS,
            stuck_lookback_hours=settings.SWEEP_STUCK_LOOKBACK_HOURS,
            clock=clock,
        )

        handlers = build_handlers(self)
        self.pools = [WorkerPool(queues, queue, handlers[queue]) for queue in queues.queue_names()]
        register_hook_handlers(bus, queues)
        self._closeables: list[Any] = []

    async def start(self) -> None:
        await self.bus.start()
        for pool in self.pools:
            await pool.start()
        logger.info("Pipeline started with %d worker pools", len(self.pools))

    async def stop(self) -> None:
        for pool in self.pools:
            await pool.stop()
        await self.bus.stop()
        for resource in self._closeables:
            await resource.aclose()
        logger.info("Pipeline stopped")

    def close_on_stop(self, *resources: Any) -> None:
        self._closeables.extend(resources)


def build_pipeline(
    s: Settings,
    *,
    db=None,
    sports: Optional[SportsDataProvider] = None,
    odds: Optional[OddsProvider] = None,
    predictors: Optional[Iterable[Predictor]] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Pipeline:
    """Build from settings. Pass ``db`` for the Mongo backend; providers may be injected."""
    if db is not None and s.STORE_BACKEND == "mongo":
        logger.info("Using MongoDB store backend")
        store = MongoPipelineStore(
            db,
            lock_ttl_seconds=s.SETTLEMENT_LOCK_SECONDS,
            lock_wait_seconds=s.SETTLEMENT_LOCK_WAIT_SECONDS,
            clock=clock,
        )
        job_store = MongoJobStore(db)
        dlq_store = MongoDeadLetterStore(db)
    else:
        logger.info("Using in-memory store backend")
        store = InMemoryPipelineStore()
        job_store = InMemoryJobStore()
        dlq_store = InMemoryDeadLetterStore()

    queues = QueueManager(
        job_store,
        DeadLetterSink(
            dlq_store,
            max_entries=s.DLQ_MAX_ENTRIES,
            alert_threshold=s.DLQ_ALERT_THRESHOLD,
            ttl_days=s.DLQ_TTL_DAYS,
            clock=clock,
        ),
        policies=build_policies(s),
        breaker_threshold=s.BREAKER_THRESHOLD,
        breaker_window_seconds=s.BREAKER_WINDOW_SECONDS,
        breaker_cooldown_seconds=s.BREAKER_COOLDOWN_SECONDS,
        clock=clock,
    )

    closeables: list[Any] = []
    if sports is None or odds is None:
        client = ApiFootballClient(
            s.API_FOOTBALL_BASE_URL,
            s.API_FOOTBALL_KEY,
            rate_limiter=RateLimiter(),
            rate_limit_rpm=s.API_FOOTBALL_RATE_LIMIT_RPM,
            timeout=s.API_FOOTBALL_TIMEOUT_SECONDS,
            max_retries=s.API_FOOTBALL_MAX_RETRIES,
            base_delay=s.API_FOOTBALL_RETRY_BASE_DELAY,
        )
        closeables.append(client)
        if sports is None:
            sports = ApiFootballProvider(
                client,
                league_ids=[int(x) for x in split_csv(s.FIXTURE_LEAGUE_IDS)],
                season=s.FIXTURE_SEASON,
                lookahead_days=s.FIXTURE_LOOKAHEAD_DAYS,
                clock=clock,
            )
        if odds is None:
            odds = ApiFootballOddsProvider(client, cache_ttl=s.ODDS_CACHE_TTL_SECONDS)

    if predictors is None:
        predictors = build_predictors(
            split_csv(s.LLM_MODELS),
            base_url=s.LLM_BASE_URL,
            api_key=s.LLM_API_KEY,
            timeout=s.LLM_TIMEOUT_SECONDS,
        )
        closeables.extend(predictors)

    pipeline = Pipeline(
        settings=s,
        store=store,
        queues=queues,
        sports=sports,
        odds=odds,
        registry=ProviderRegistry(predictors, parse_fallbacks(s.LLM_FALLBACKS)),
        bus=InMemoryEventBus(
            queue_size=s.EVENT_BUS_QUEUE_SIZE,
            handler_timeout=s.EVENT_BUS_HANDLER_TIMEOUT_SECONDS,
            enabled=s.EVENT_BUS_ENABLED,
        ),
        clock=clock,
    )
    pipeline.close_on_stop(*closeables)
    return pipeline


# -- repeatable jobs -------------------------------------------------------

async def enqueue_repeatable(
    pipeline: Pipeline, queue: str, job_type: str, interval_seconds: float,
) -> EnqueueResult:
    """Enqueue one run per interval slot. The slot in the job id dedupes overlapping triggers."""
    slot = int(pipeline.clock().timestamp() // max(1.0, interval_seconds))
    return await pipeline.queues.enqueue(queue, job_type, {"slot": slot}, job_id=f"{job_type}-{slot}")


def repeatable_specs(s: Settings) -> list[dict[str, Any]]:
    return [
        {"queue": QueueName.fixtures.value, "job_type": JOB_FETCH_FIXTURES, "seconds": s.FIXTURES_INTERVAL_HOURS * 3600},
        {"queue": QueueName.backfill.value, "job_type": JOB_BACKFILL_SWEEP, "seconds": s.SWEEP_INTERVAL_MINUTES * 60},
        {"queue": QueueName.backfill.value, "job_type": JOB_STUCK_REPAIR, "seconds": s.STUCK_REPAIR_INTERVAL_MINUTES * 60},
        {"queue": QueueName.maintenance.value, "job_type": JOB_MODEL_RECOVERY, "seconds": s.MODEL_RECOVERY_INTERVAL_MINUTES * 60},
        {"queue": QueueName.maintenance.value, "job_type": JOB_PRUNE_JOBS, "seconds": s.PRUNE_INTERVAL_MINUTES * 60},
    ]


def register_repeatables(scheduler: AsyncIOScheduler, pipeline: Pipeline) -> int:
    added = 0
    for spec in repeatable_specs(pipeline.settings):
        if scheduler.get_job(spec["job_type"]):
            continue
        scheduler.add_job(
            enqueue_repeatable,
            "interval",
            seconds=spec["seconds"],
            id=spec["job_type"],
            replace_existing=True,
            args=[pipeline, spec["queue"], spec["job_type"], spec["seconds"]],
        )
        added += 1
    return added


async def kick_initial_jobs(pipeline: Pipeline) -> None:
    """Run fixture ingest and stuck-match repair once right after startup."""
    for spec in repeatable_specs(pipeline.settings):
        if spec["job_type"] in (JOB_FETCH_FIXTURES, JOB_STUCK_REPAIR):
            await enqueue_repeatable(pipeline, spec["queue"], spec["job_type"], spec["seconds"])
