"""
backend/kickoff/errors.py

Purpose:
    Tagged error hierarchy for pipeline failures. Every error raised at a
    provider or handler boundary carries an explicit ErrorKind so the worker
    pool classifies failures by type, never by message text.

Dependencies:
    - httpx
    - pydantic
"""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx
from pydantic import ValidationError


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    MODEL_SPECIFIC = "model_specific"
    NON_RETRYABLE = "non_retryable"


class FailureClass(str, Enum):
    """Outcome classes the worker pool acts on."""
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    RATE_LIMITED = "rate_limited"
    MODEL_SPECIFIC = "model_specific"


class PipelineError(Exception):
    kind: ErrorKind = ErrorKind.RETRYABLE

    def __init__(self, message: str = "", *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class RetryableError(PipelineError):
    kind = ErrorKind.RETRYABLE


class ProviderTimeoutError(PipelineError):
    kind = ErrorKind.TIMEOUT


class RateLimitedError(PipelineError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ModelSpecificError(PipelineError):
    """A prediction provider returned something unusable (bad JSON, empty body)."""
    kind = ErrorKind.MODEL_SPECIFIC

    def __init__(self, message: str = "", *, provider_id: str = "") -> None:
        super().__init__(message)
        self.provider_id = provider_id


class NonRetryableError(PipelineError):
    """Business-state mismatch. With skip=True the job is moot and completes as skipped."""
    kind = ErrorKind.NON_RETRYABLE

    def __init__(self, message: str = "", *, skip: bool = False) -> None:
        super().__init__(message)
        self.skip = skip


_RATE_LIMIT_STATUSES = {429}
_RETRYABLE_STATUSES = {408, 425, 500, 502, 503, 504}


def error_kind(exc: BaseException) -> ErrorKind:
    """Map an exception to its ErrorKind from its type alone."""
    if isinstance(exc, PipelineError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in _RATE_LIMIT_STATUSES:
            return ErrorKind.RATE_LIMITED
        if status in _RETRYABLE_STATUSES:
            return ErrorKind.RETRYABLE
        return ErrorKind.NON_RETRYABLE
    if isinstance(exc, httpx.TransportError):
        return ErrorKind.RETRYABLE
    if isinstance(exc, ValidationError):
        return ErrorKind.NON_RETRYABLE
    return ErrorKind.RETRYABLE


def classify(exc: BaseException) -> FailureClass:
    kind = error_kind(exc)
    if kind is ErrorKind.TIMEOUT:
        return FailureClass.RETRYABLE
    return FailureClass(kind.value)


def is_skip(exc: BaseException) -> bool:
    return isinstance(exc, NonRetryableError) and exc.skip
