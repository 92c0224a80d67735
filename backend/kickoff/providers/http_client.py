"""
backend/kickoff/providers/http_client.py

Purpose:
    httpx.AsyncClient wrapper with retry, exponential backoff and a failure
    circuit for upstream APIs. Exhausted retries surface as tagged pipeline
    errors so the worker pool can classify them without inspecting messages.

Dependencies:
    - httpx
    - kickoff.errors
"""

import asyncio
import logging
import time
from typing import Optional
from urllib.parse import urlparse

import httpx

from kickoff.errors import ProviderTimeoutError, RateLimitedError, RetryableError

logger = logging.getLogger("kickoff.http_client")

# Retryable HTTP status codes
_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class CircuitBreaker:
    """Consecutive-failure circuit for one upstream host."""

    def __init__(self, failure_threshold: int = 3, recovery_timeout: int = 300):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.is_open = False

    def record_success(self) -> None:
        self.failure_count = 0
        self.is_open = False

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.failure_count >= self.failure_threshold and not self.is_open:
            self.is_open = True
            logger.warning("Circuit breaker OPEN after %d failures", self.failure_count)

    def can_attempt(self) -> bool:
        if not self.is_open:
            return True
        # Half-open once the recovery timeout has passed
        if self.last_failure_time and (
            time.monotonic() - self.last_failure_time > self.recovery_timeout
        ):
            logger.info("Circuit breaker half-open, allowing retry")
            return True
        return False


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Extract wait time from Retry-After or X-RateLimit-Retry-After headers."""
    for header in ("retry-after", "x-ratelimit-retry-after"):
        value = response.headers.get(header)
        if value is None:
            continue
        try:
            return float(value)
        except (ValueError, TypeError):
            continue
    return None


def safe_url(url: str) -> str:
    """Strip query params (may contain API keys) for safe logging."""
    parsed = urlparse(str(url))
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


class ResilientClient:
    """Retries 429/5xx and network errors, then raises a tagged error.

    Non-retryable responses (4xx other than 429) are returned to the caller,
    whose ``raise_for_status()`` turns them into non-retryable failures.
    """

    def __init__(
        self,
        name: str,
        timeout: float = 15.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._name = name
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self.circuit = CircuitBreaker()

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if not self.circuit.can_attempt():
            raise RetryableError(f"{self._name}: circuit open for {safe_url(url)}")

        last_exc: Optional[Exception] = None
        last_resp: Optional[httpx.Response] = None
        attempts = self._max_retries + 1

        for attempt in range(attempts):
            try:
                resp = await self._client.request(method, url, **kwargs)
                if resp.status_code not in _RETRYABLE_STATUSES:
                    self.circuit.record_success()
                    return resp

                last_resp = resp
                logger.warning(
                    "[%s] HTTP %d on %s %s (attempt %d/%d)",
                    self._name, resp.status_code, method, safe_url(url), attempt + 1, attempts,
                )
                if attempt < self._max_retries:
                    delay = parse_retry_after(resp)
                    if delay is None:
                        delay = self._base_delay * (2 ** attempt)
                    await asyncio.sleep(min(delay, self._max_delay))

            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
                last_resp = None
                logger.warning(
                    "[%s] Network error on %s %s (attempt %d/%d): %s",
                    self._name, method, safe_url(url), attempt + 1, attempts, exc,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(min(self._base_delay * (2 ** attempt), self._max_delay))

        self.circuit.record_failure()
        if last_resp is not None:
            logger.error(
                "[%s] All %d attempts failed for %s %s (last status: %d)",
                self._name, attempts, method, safe_url(url), last_resp.status_code,
            )
            if last_resp.status_code == 429:
                raise RateLimitedError(
                    f"{self._name}: rate limited on {safe_url(url)}",
                    retry_after=parse_retry_after(last_resp),
                )
            raise RetryableError(f"{self._name}: HTTP {last_resp.status_code} on {safe_url(url)}")

        logger.error(
            "[%s] All %d attempts failed for %s %s: %s",
            self._name, attempts, method, safe_url(url), last_exc,
        )
        if isinstance(last_exc, httpx.TimeoutException):
            raise ProviderTimeoutError(f"{self._name}: timed out on {safe_url(url)}") from last_exc
        raise RetryableError(f"{self._name}: {last_exc}") from last_exc

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()
