"""Tests for the event bus."""

import pytest

from vigil.events.bus import EventBus, Event


@pytest.mark.asyncio
async def test_emit_and_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("worker.started", handler)
    await bus.emit("worker.started", {"worker": "vm-detect"})

    assert len(received) == 1
    assert received[0].topic == "worker.started"
    assert received[0].data["worker"] == "vm-detect"


@pytest.mark.asyncio
async def test_wildcard_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("worker.*", handler)
    await bus.emit("worker.started", {"worker": "a"})
    await bus.emit("worker.exited", {"worker": "b"})
    await bus.emit("violation.detected", {"id": "x"})  # should NOT match

    assert len(received) == 2


@pytest.mark.asyncio
async def test_star_matches_all():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("*", handler)
    await bus.emit("worker.started")
    await bus.emit("permission.changed")
    await bus.emit("violation.detected")

    assert len(received) == 3


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("test", handler)
    await bus.emit("test")
    assert len(received) == 1

    bus.unsubscribe("test", handler)
    await bus.emit("test")
    assert len(received) == 1  # no new events


@pytest.mark.asyncio
async def test_failing_handler_does_not_reach_emitter():
    bus = EventBus()
    received = []

    async def broken(event: Event):
        raise RuntimeError("boom")

    async def healthy(event: Event):
        received.append(event)

    bus.subscribe("worker.event", broken)
    bus.subscribe("worker.event", healthy)
    event = await bus.emit("worker.event", {"worker": "vm-detect"})

    assert event.topic == "worker.event"
    assert len(received) == 1


@pytest.mark.asyncio
async def test_history_newest_first():
    bus = EventBus()
    await bus.emit("a.1", {"x": 1})
    await bus.emit("a.2", {"x": 2})
    await bus.emit("b.1", {"x": 3})

    all_events = bus.history()
    assert [e.topic for e in all_events] == ["b.1", "a.2", "a.1"]

    a_events = bus.history(topic_filter="a.*")
    assert len(a_events) == 2


@pytest.mark.asyncio
async def test_history_limit():
    bus = EventBus(history_limit=5)
    for i in range(10):
        await bus.emit("test", {"i": i})

    assert len(bus.history()) == 5
    assert bus.history()[0].data["i"] == 9


@pytest.mark.asyncio
async def test_emit_returns_event():
    bus = EventBus()
    event = await bus.emit("test.topic", {"key": "value"}, source="supervisor")

    assert event.topic == "test.topic"
    assert event.data["key"] == "value"
    assert event.source == "supervisor"
    assert event.id


@pytest.mark.asyncio
async def test_subscriber_count_and_topics():
    bus = EventBus()
    assert bus.subscriber_count == 0

    async def h(e):
        pass

    bus.subscribe("a", h)
    bus.subscribe("b", h)
    assert bus.subscriber_count == 2

    await bus.emit("worker.started")
    await bus.emit("worker.started")
    await bus.emit("worker.stale")
    assert sorted(bus.topics()) == ["worker.stale", "worker.started"]
