"""Tests for ProgressionEventBus."""

from __future__ import annotations

import logging

from kryten_progression.event_bus import (
    CatalogChanged,
    LevelChanged,
    ProgressionEventBus,
    SelectionRevoked,
)


def _bus() -> ProgressionEventBus:
    return ProgressionEventBus(logging.getLogger("test.bus"))


class TestDelivery:

    async def test_delivered_in_publish_order(self):
        bus = _bus()
        seen: list = []

        async def handler(event):
            seen.append(event)

        bus.subscribe(LevelChanged, handler)
        bus.publish(LevelChanged("a", 1, 2))
        bus.publish(LevelChanged("b", 2, 3))
        assert seen == []

        await bus.drain()
        assert [e.student_id for e in seen] == ["a", "b"]
        assert bus.published == 2
        assert bus.delivered == 2

    async def test_routed_by_type(self):
        bus = _bus()
        levels: list = []
        catalogs: list = []

        async def on_level(event):
            levels.append(event)

        async def on_catalog(event):
            catalogs.append(event)

        bus.subscribe(LevelChanged, on_level)
        bus.subscribe(CatalogChanged, on_catalog)
        bus.publish(CatalogChanged("avatar", "fox"))
        await bus.drain()

        assert levels == []
        assert catalogs == [CatalogChanged("avatar", "fox")]

    async def test_event_without_subscribers(self):
        bus = _bus()
        bus.publish(SelectionRevoked("s1", "effect", "sparkles", "disabled"))
        await bus.drain()
        assert bus.delivered == 1

    async def test_failing_handler_does_not_block_others(self, caplog):
        bus = _bus()
        seen: list = []

        async def broken(event):
            raise RuntimeError("boom")

        async def working(event):
            seen.append(event)

        bus.subscribe(LevelChanged, broken)
        bus.subscribe(LevelChanged, working)
        with caplog.at_level(logging.ERROR):
            bus.publish(LevelChanged("a", 1, 2))
            await bus.drain()

        assert len(seen) == 1
        assert "failed for LevelChanged" in caplog.text

    async def test_handler_publishing_is_delivered_in_same_drain(self):
        bus = _bus()
        seen: list = []

        async def on_level(event):
            bus.publish(CatalogChanged("avatar"))

        async def on_catalog(event):
            seen.append(event)

        bus.subscribe(LevelChanged, on_level)
        bus.subscribe(CatalogChanged, on_catalog)
        bus.publish(LevelChanged("a", 1, 2))
        await bus.drain()
        assert seen == [CatalogChanged("avatar")]


class TestPump:

    async def test_pump_delivers_and_stops(self):
        bus = _bus()
        seen: list = []

        async def handler(event):
            seen.append(event)

        bus.subscribe(LevelChanged, handler)
        await bus.start()
        assert bus.running

        bus.publish(LevelChanged("a", 1, 2))
        await bus.drain()
        assert len(seen) == 1

        bus.publish(LevelChanged("b", 1, 2))
        await bus.stop()
        assert not bus.running
        assert len(seen) == 2

    async def test_start_twice_keeps_single_pump(self):
        bus = _bus()
        await bus.start()
        task = bus._pump_task
        await bus.start()
        assert bus._pump_task is task
        await bus.stop()
