"""
backend/tests/test_event_bus.py

Purpose:
    Hook bus delivery, handler isolation, bounded queues and the stats
    recompute subscriber.
"""

from __future__ import annotations

import asyncio

import pytest

from kickoff.queue.models import JobState
from kickoff.services.event_bus import InMemoryEventBus
from kickoff.services.event_handlers import JOB_CALCULATE_STATS, register_hook_handlers
from kickoff.services.event_models import MatchSettledEvent, OddsRefreshedEvent


@pytest.mark.asyncio
async def test_publish_delivers_to_every_subscriber() -> None:
    bus = InMemoryEventBus()
    seen: list[tuple[str, str]] = []

    async def first(event):
        seen.append(("first", event.match_id))

    async def second(event):
        seen.append(("second", event.match_id))

    bus.subscribe("odds.refreshed", first, handler_name="first")
    bus.subscribe("odds.refreshed", second, handler_name="second")
    await bus.start()
    bus.publish(OddsRefreshedEvent(source="test", match_id="m1"))
    await bus.join()
    await bus.stop()

    assert sorted(seen) == [("first", "m1"), ("second", "m1")]
    assert bus.stats()["handled_total"] == 2


@pytest.mark.asyncio
async def test_failing_handler_is_isolated() -> None:
    bus = InMemoryEventBus()
    seen: list[str] = []

    async def broken(event):
        raise RuntimeError("boom")

    async def healthy(event):
        seen.append(event.match_id)

    bus.subscribe("match.settled", broken, handler_name="broken")
    bus.subscribe("match.settled", healthy, handler_name="healthy")
    await bus.start()
    bus.publish(MatchSettledEvent(source="test", match_id="m2", scored=3))
    await bus.join()
    await bus.stop()

    stats = bus.stats()
    assert seen == ["m2"]
    assert stats["failed_total"] == 1
    assert stats["recent_errors"][0]["handler_name"] == "broken"
    assert stats["recent_errors"][0]["error"] == "boom"


@pytest.mark.asyncio
async def test_full_queue_drops_events_without_raising() -> None:
    bus = InMemoryEventBus(queue_size=1)

    async def handler(event):
        await asyncio.sleep(0)

    bus.subscribe("odds.refreshed", handler, handler_name="slow")
    bus.publish(OddsRefreshedEvent(source="test", match_id="m1"))
    bus.publish(OddsRefreshedEvent(source="test", match_id="m2"))

    stats = bus.stats()
    assert stats["published_total"] == 2
    assert stats["dropped_total"] == 1
    assert stats["per_handler"]["odds.refreshed:slow"]["queue_depth"] == 1


@pytest.mark.asyncio
async def test_disabled_bus_ignores_events() -> None:
    bus = InMemoryEventBus(enabled=False)
    bus.subscribe("odds.refreshed", lambda e: None, handler_name="noop")

    bus.publish(OddsRefreshedEvent(source="test", match_id="m1"))

    assert bus.stats()["published_total"] == 0


@pytest.mark.asyncio
async def test_settled_event_enqueues_one_stats_job(queues) -> None:
    bus = InMemoryEventBus()
    hooked: list[str] = []

    async def content_hook(event):
        hooked.append(event.event_type)

    register_hook_handlers(bus, queues, content_hook=content_hook)
    await bus.start()
    bus.publish(MatchSettledEvent(source="test", match_id="m1", scored=2))
    bus.publish(MatchSettledEvent(source="test", match_id="m2", scored=1))
    bus.publish(OddsRefreshedEvent(source="test", match_id="m3"))
    await bus.join()
    await bus.stop()

    job = await queues.get_job("maintenance", JOB_CALCULATE_STATS)
    assert job.state == JobState.waiting
    assert job.payload["match_id"] == "m1"
    assert sorted(hooked) == ["match.settled", "match.settled", "odds.refreshed"]
