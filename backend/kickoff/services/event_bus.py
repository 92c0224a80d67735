"""
backend/kickoff/services/event_bus.py

Purpose:
    In-memory hook bus for fire-and-forget side effects (content generation,
    stats recompute). Publishing never blocks and never raises into the
    publisher; each subscriber has its own bounded queue and workers, and a
    failing handler is logged and counted without affecting others.

Dependencies:
    - asyncio
    - kickoff.services.event_models
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from kickoff.services.event_models import BaseEvent
from kickoff.utils import utcnow

logger = logging.getLogger("kickoff.event_bus")

AsyncEventHandler = Callable[[BaseEvent], Awaitable[None]]


@dataclass
class _Subscription:
    event_type: str
    handler_name: str
    handler: AsyncEventHandler
    concurrency: int
    queue: asyncio.Queue
    workers: list[asyncio.Task] = field(default_factory=list)
    handled_total: int = 0
    failed_total: int = 0
    dropped_total: int = 0


class InMemoryEventBus:
    def __init__(
        self,
        *,
        queue_size: int = 1000,
        handler_timeout: float = 10.0,
        error_buffer_size: int = 50,
        enabled: bool = True,
    ) -> None:
        self._queue_size = max(1, int(queue_size))
        self._handler_timeout = handler_timeout
        self._enabled = enabled
        self._subscriptions: dict[str, list[_Subscription]] = defaultdict(list)
        self._running = False
        self._published = 0
        self._dropped = 0
        self._errors: deque[dict[str, Any]] = deque(maxlen=max(1, int(error_buffer_size)))

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running or not self._enabled:
            return
        self._running = True
        for subs in self._subscriptions.values():
            for sub in subs:
                self._spawn(sub)
        logger.info("Event bus started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        workers = [w for subs in self._subscriptions.values() for sub in subs for w in sub.workers]
        for worker in workers:
            worker.cancel()
        for worker in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        for subs in self._subscriptions.values():
            for sub in subs:
                sub.workers.clear()
        logger.info("Event bus stopped")

    def subscribe(
        self,
        event_type: str,
        handler: AsyncEventHandler,
        *,
        handler_name: str,
        concurrency: int = 1,
    ) -> None:
        sub = _Subscription(
            event_type=event_type,
            handler_name=handler_name,
            handler=handler,
            concurrency=max(1, int(concurrency)),
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        self._subscriptions[event_type].append(sub)
        if self._running:
            self._spawn(sub)

    def publish(self, event: BaseEvent) -> None:
        """Fan ``event`` out to subscriber queues. Full queues drop the event."""
        if not self._enabled:
            return
        self._published += 1
        for sub in self._subscriptions.get(event.event_type, []):
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                self._dropped += 1
                sub.dropped_total += 1
                logger.warning(
                    "Event bus queue full; dropping event_type=%s handler=%s match_id=%s",
                    event.event_type, sub.handler_name, event.match_id,
                )

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        for subs in list(self._subscriptions.values()):
            for sub in subs:
                await sub.queue.join()

    def _spawn(self, sub: _Subscription) -> None:
        for idx in range(sub.concurrency):
            name = f"event_bus_{sub.event_type}_{sub.handler_name}_{idx}"
            sub.workers.append(asyncio.create_task(self._handler_loop(sub), name=name))

    async def _handler_loop(self, sub: _Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                await asyncio.wait_for(sub.handler(event), timeout=self._handler_timeout)
                sub.handled_total += 1
            except Exception as exc:
                sub.failed_total += 1
                self._errors.append({
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "handler_name": sub.handler_name,
                    "match_id": event.match_id,
                    "ts": utcnow().isoformat(),
                    "error": str(exc) or type(exc).__name__,
                })
                logger.error(
                    "Event handler failed event_id=%s event_type=%s handler=%s match_id=%s",
                    event.event_id, event.event_type, sub.handler_name, event.match_id,
                    exc_info=True,
                )
            finally:
                sub.queue.task_done()

    def stats(self) -> dict[str, Any]:
        per_handler = {}
        for event_type, subs in self._subscriptions.items():
            for sub in subs:
                per_handler[f"{event_type}:{sub.handler_name}"] = {
                    "concurrency": sub.concurrency,
                    "queue_depth": sub.queue.qsize(),
                    "queue_limit": self._queue_size,
                    "handled_total": sub.handled_total,
                    "failed_total": sub.failed_total,
                    "dropped_total": sub.dropped_total,
                }
        return {
            "enabled": self._enabled,
            "running": self._running,
            "published_total": self._published,
            "handled_total": sum(h["handled_total"] for h in per_handler.values()),
            "failed_total": sum(h["failed_total"] for h in per_handler.values()),
            "dropped_total": self._dropped,
            "per_handler": per_handler,
            "recent_errors": list(self._errors),
        }
