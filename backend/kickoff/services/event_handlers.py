"""
backend/kickoff/services/event_handlers.py

Purpose:
    Subscribers for pipeline hook events: stats recalculation after a match is
    settled, and an optional content hook fed from every event.

Dependencies:
    - kickoff.services.event_bus
    - kickoff.queue.manager
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from kickoff.queue.manager import QueueManager
from kickoff.queue.models import QueueName
from kickoff.services.event_bus import InMemoryEventBus
from kickoff.services.event_models import BaseEvent

logger = logging.getLogger("kickoff.event_handlers")

JOB_CALCULATE_STATS = "calculate-stats"

ContentHook = Callable[[BaseEvent], Awaitable[None]]


async def log_content_hook(event: BaseEvent) -> None:
    logger.info("Hook event %s for match %s", event.event_type, event.match_id)


def register_hook_handlers(
    bus: InMemoryEventBus,
    queues: QueueManager,
    content_hook: Optional[ContentHook] = log_content_hook,
) -> None:
    async def _recalculate_stats(event: BaseEvent) -> None:
        await queues.enqueue(
            QueueName.maintenance.value,
            JOB_CALCULATE_STATS,
            {"trigger": event.event_id, "match_id": event.match_id},
            job_id=JOB_CALCULATE_STATS,
            replace_terminal=True,
        )

    bus.subscribe("match.settled", _recalculate_stats, handler_name="stats.recalculate")
    if content_hook is not None:
        for event_type in ("odds.refreshed", "predictions.inserted", "match.settled"):
            bus.subscribe(event_type, content_hook, handler_name=f"content.{event_type}")
