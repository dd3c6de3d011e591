"""Tests for the engine event bus."""

from unittest.mock import MagicMock

import pytest

from chargur.engine.events import EngineEventType, EventBus


class TestEventBus:
    """Tests for EventBus."""

    def test_wire_names(self):
        assert EngineEventType.AUTO_FILL.value == "autoFill"
        assert EngineEventType.STAGE_COMPLETE.value == "stageComplete"
        assert EngineEventType.NAVIGATE.value == "navigate"

    def test_fan_out(self):
        bus = EventBus()
        first, second = MagicMock(), MagicMock()
        bus.subscribe(EngineEventType.NAVIGATE, first)
        bus.subscribe(EngineEventType.NAVIGATE, second)

        bus.emit(EngineEventType.NAVIGATE, "feature-planning")

        first.assert_called_once_with("feature-planning")
        second.assert_called_once_with("feature-planning")

    def test_only_matching_type(self):
        bus = EventBus()
        received = []
        bus.subscribe(EngineEventType.AUTO_FILL, received.append)
        bus.emit(EngineEventType.STAGE_COMPLETE, "ideation-discovery")
        assert received == []

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(EngineEventType.STATE, received.append)
        unsubscribe()
        unsubscribe()

        bus.emit(EngineEventType.STATE, "x")

        assert received == []
        assert bus.listener_count(EngineEventType.STATE) == 0

    def test_listener_error_isolated(self):
        bus = EventBus()
        received = []

        def broken(payload):
            raise RuntimeError("bug")

        bus.subscribe(EngineEventType.STATE, broken)
        bus.subscribe(EngineEventType.STATE, received.append)

        bus.emit(EngineEventType.STATE, 1)

        assert received == [1]

    @pytest.mark.asyncio
    async def test_async_listener(self):
        bus = EventBus()
        received = []

        async def listener(payload):
            received.append(payload)

        async def broken(payload):
            raise RuntimeError("bug")

        bus.subscribe(EngineEventType.NAVIGATE, listener)
        bus.subscribe(EngineEventType.NAVIGATE, broken)
        bus.emit(EngineEventType.NAVIGATE, "structure-flow")
        await bus.drain()

        assert received == ["structure-flow"]

    def test_clear(self):
        bus = EventBus()
        bus.subscribe(EngineEventType.STATE, print)
        bus.clear()
        assert bus.listener_count(EngineEventType.STATE) == 0
