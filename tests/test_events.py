"""
Event emitter tests
"""
import pytest

from gateway.events import EventEmitter
from gateway.protocol import EventType


class TestEventEmitter:
    @pytest.mark.asyncio
    async def test_listeners_receive_events(self):
        emitter = EventEmitter()
        seen = []

        async def async_listener(event):
            seen.append(("async", event.payload["n"]))

        emitter.on(EventType.HEARTBEAT, async_listener)
        emitter.on(EventType.HEARTBEAT, lambda event: seen.append(("sync", event.payload["n"])))

        message = await emitter.emit(EventType.HEARTBEAT, {"n": 1})

        assert message.seq == 1
        assert sorted(seen) == [("async", 1), ("sync", 1)]

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self):
        emitter = EventEmitter()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        async def broken_async(event):
            raise RuntimeError("async listener bug")

        emitter.on(EventType.CONNECTED, broken)
        emitter.on(EventType.CONNECTED, broken_async)
        emitter.on(EventType.CONNECTED, seen.append)

        await emitter.emit(EventType.CONNECTED, {"connection_id": "c1"})
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_off_and_history(self):
        emitter = EventEmitter(max_history=2)
        seen = []
        emitter.on(EventType.CONNECTED, seen.append)
        emitter.off(EventType.CONNECTED, seen.append)

        for i in range(3):
            await emitter.emit(EventType.CONNECTED, {"i": i})

        assert seen == []
        history = emitter.get_history(EventType.CONNECTED)
        assert [e.payload["i"] for e in history] == [1, 2]
