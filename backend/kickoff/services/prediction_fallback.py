"""
backend/kickoff/services/prediction_fallback.py

Purpose:
    Call a prediction backend and, on failure, walk its configured fallback
    chain. Returns which backend actually produced the answer so predictions
    and health are attributed to the right model. The chain stops at an
    already-attempted backend, a disabled backend or the maximum depth, and
    then the original failure is raised.

Dependencies:
    - kickoff.providers.registry
    - kickoff.services.model_health_service
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from kickoff.providers.registry import ProviderRegistry
from kickoff.services.model_health_service import ModelHealthService

logger = logging.getLogger("kickoff.fallback")

# Turns raw model text into the caller's value; raises to reject the answer.
Validator = Callable[[str, str], Any]


class PredictionFallbackOrchestrator:
    def __init__(
        self,
        registry: ProviderRegistry,
        health: Optional[ModelHealthService] = None,
        *,
        max_depth: int = 3,
    ) -> None:
        self.registry = registry
        self.health = health
        self.max_depth = max_depth
        self.fallback_uses = 0

    async def _next_provider(self, current: str, attempted: set[str], depth: int) -> Optional[str]:
        fallback = self.registry.fallback_for(current)
        if fallback is None:
            return None
        if fallback in attempted:
            logger.warning("Fallback cycle: %s -> %s already attempted", current, fallback)
            return None
        if depth >= self.max_depth:
            logger.warning("Fallback depth %d reached at %s", self.max_depth, current)
            return None
        if self.health is not None and await self.health.is_disabled(fallback):
            logger.info("Fallback %s for %s is disabled, not trying it", fallback, current)
            return None
        return fallback

    async def predict(
        self,
        provider_id: str,
        system_prompt: str,
        user_prompt: str,
        attempted: Optional[set[str]] = None,
        *,
        validate: Optional[Validator] = None,
    ) -> tuple[Any, str]:
        """Return ``(response, provider_actually_used)``.

        ``attempted`` is updated in place with every backend tried. Each
        failing backend has the failure recorded against its own health.
        """
        attempted = attempted if attempted is not None else set()
        current = provider_id
        depth = 0
        original: Optional[Exception] = None

        while True:
            attempted.add(current)
            try:
                raw = await self.registry.get(current).call(system_prompt, user_prompt)
                value = validate(raw, current) if validate is not None else raw
            except Exception as exc:
                if original is None:
                    original = exc
                logger.warning("Prediction backend %s failed: %s", current, exc)
                if self.health is not None:
                    await self.health.record_failure(current, exc)
                nxt = await self._next_provider(current, attempted, depth)
                if nxt is None:
                    raise original
                depth += 1
                logger.info("Falling back %s -> %s (depth %d)", current, nxt, depth)
                current = nxt
                continue

            if self.health is not None:
                await self.health.record_success(current)
            if current != provider_id:
                self.fallback_uses += 1
                logger.info("Prediction for %s served by fallback %s", provider_id, current)
            return value, current
