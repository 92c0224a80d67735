"""
backend/kickoff/services/model_health_service.py

Purpose:
    Per-model health tracking for prediction backends. Success resets the
    consecutive-failure counter; counted failures (model-specific output
    problems and timeouts) increment it and disable the model at the
    threshold. A periodic recovery re-enables disabled models after a cooldown
    with a partially reset counter.

Dependencies:
    - kickoff.store.base
    - kickoff.errors
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable

from kickoff.errors import ErrorKind, error_kind
from kickoff.models.model_health import ModelHealth
from kickoff.store.base import PipelineStore
from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.model_health")

COUNTED_KINDS = frozenset({ErrorKind.MODEL_SPECIFIC, ErrorKind.TIMEOUT})


class ModelHealthService:
    def __init__(
        self,
        store: PipelineStore,
        *,
        threshold: int = 5,
        cooldown_minutes: int = 60,
        reset_to: int = 2,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.reset_to = reset_to
        self._clock = clock

    async def record_success(self, model_id: str) -> None:
        await self.store.record_model_success(model_id, self._clock())

    async def record_failure(self, model_id: str, exc: BaseException) -> bool:
        """Count ``exc`` against ``model_id`` if its kind counts. Returns whether it was counted."""
        kind = error_kind(exc)
        if kind not in COUNTED_KINDS:
            logger.debug("Not counting %s failure against %s", kind.value, model_id)
            return False
        health, newly_disabled = await self.store.record_model_failure(
            model_id, str(exc) or type(exc).__name__, self._clock(), self.threshold,
        )
        if newly_disabled:
            logger.warning(
                "Model %s disabled after %d consecutive failures (last: %s)",
                model_id, health.consecutive_failures, health.last_error,
            )
        return True

    async def active_models(self, model_ids: Iterable[str]) -> list[str]:
        disabled = {h.model_id for h in await self.store.list_model_health() if h.disabled}
        return [m for m in model_ids if m not in disabled]

    async def is_disabled(self, model_id: str) -> bool:
        health = await self.store.get_model_health(model_id)
        return bool(health and health.disabled)

    async def recover(self) -> list[str]:
        now = self._clock()
        recovered = await self.store.recover_models(now - self.cooldown, self.reset_to, now)
        for model_id in recovered:
            logger.info("Model %s re-enabled by recovery sweep (failures reset to %d)", model_id, self.reset_to)
        return recovered

    async def reenable(self, model_id: str) -> ModelHealth:
        health = await self.store.reenable_model(model_id, self._clock())
        logger.info("Model %s re-enabled manually", model_id)
        return health

    async def snapshot(self) -> list[ModelHealth]:
        return await self.store.list_model_health()
