"""
backend/kickoff/providers/registry.py

Purpose:
    Registry of prediction backends and the primary -> fallback mapping.
    The mapping is validated once at construction: every fallback must be a
    registered model, a model cannot fall back to itself, and two models
    cannot fall back to each other.

Dependencies:
    - kickoff.providers.base
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from kickoff.providers.base import Predictor

logger = logging.getLogger("kickoff.providers.registry")


class FallbackConfigError(ValueError):
    pass


def parse_fallbacks(raw: str) -> dict[str, str]:
    """Parse ``"primary:fallback,primary2:fallback2"``."""
    mapping: dict[str, str] = {}
    for pair in str(raw or "").split(","):
        pair = pair.strip()
        if not pair:
            continue
        primary, sep, fallback = pair.partition(":")
        if not sep or not primary.strip() or not fallback.strip():
            raise FallbackConfigError(f"invalid fallback pair {pair!r}")
        mapping[primary.strip()] = fallback.strip()
    return mapping


def validate_fallbacks(model_ids: Iterable[str], fallbacks: dict[str, str]) -> list[str]:
    known = set(model_ids)
    errors: list[str] = []
    for primary, fallback in sorted(fallbacks.items()):
        if primary not in known:
            errors.append(f"fallback source {primary!r} is not a registered model")
        if fallback not in known:
            errors.append(f"fallback target {fallback!r} for {primary!r} is not a registered model")
        if primary == fallback:
            errors.append(f"{primary!r} cannot fall back to itself")
        elif fallbacks.get(fallback) == primary and primary < fallback:
            errors.append(f"circular fallback between {primary!r} and {fallback!r}")
    return errors


class ProviderRegistry:
    def __init__(self, predictors: Iterable[Predictor], fallbacks: Optional[dict[str, str]] = None):
        self._predictors: dict[str, Predictor] = {}
        for predictor in predictors:
            if predictor.model_id in self._predictors:
                raise FallbackConfigError(f"duplicate model id {predictor.model_id!r}")
            self._predictors[predictor.model_id] = predictor
        self._fallbacks = dict(fallbacks or {})
        errors = validate_fallbacks(self._predictors, self._fallbacks)
        if errors:
            raise FallbackConfigError("; ".join(errors))
        logger.info(
            "Provider registry: %d models, %d fallbacks", len(self._predictors), len(self._fallbacks),
        )

    def get(self, model_id: str) -> Predictor:
        try:
            return self._predictors[model_id]
        except KeyError:
            raise KeyError(f"unknown model {model_id!r}") from None

    def fallback_for(self, model_id: str) -> Optional[str]:
        return self._fallbacks.get(model_id)

    @property
    def fallbacks(self) -> dict[str, str]:
        return dict(self._fallbacks)

    def model_ids(self) -> list[str]:
        return sorted(self._predictors)

    def predictors(self) -> list[Predictor]:
        return [self._predictors[m] for m in self.model_ids()]
