"""
Connection registry tests
"""
import asyncio

import pytest

from fakes import FakeChannel
from gateway.connection import ConnectionRegistry
from gateway.events import EventEmitter
from gateway.protocol import EventType


class TestConnectionRegistry:
    """Registry lifecycle"""

    @pytest.mark.asyncio
    async def test_register_returns_unique_ids(self):
        registry = ConnectionRegistry()
        ids = await asyncio.gather(*(registry.register(FakeChannel()) for _ in range(50)))
        assert len(set(ids)) == 50
        assert registry.get_active_count() == 50

    @pytest.mark.asyncio
    async def test_ids_are_not_reused_after_removal(self):
        registry = ConnectionRegistry()
        first = await registry.register(FakeChannel())
        await registry.unregister(first)
        second = await registry.register(FakeChannel())
        assert first != second

    @pytest.mark.asyncio
    async def test_send_routes_to_channel(self):
        registry = ConnectionRegistry()
        channel = FakeChannel()
        conn_id = await registry.register(channel)
        assert await registry.send(conn_id, {"type": "pong"}) is True
        assert channel.sent == [{"type": "pong"}]

    @pytest.mark.asyncio
    async def test_send_to_unknown_or_removed_id_is_noop(self):
        registry = ConnectionRegistry()
        channel = FakeChannel()
        conn_id = await registry.register(channel)
        await registry.unregister(conn_id)

        assert await registry.send(conn_id, {"type": "pong"}) is False
        assert await registry.send("conn_does_not_exist", {"type": "pong"}) is False
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_send_failure_is_swallowed(self):
        registry = ConnectionRegistry()
        conn_id = await registry.register(FakeChannel(fail=True))
        assert await registry.send(conn_id, {"type": "pong"}) is False

    @pytest.mark.asyncio
    async def test_unregister_is_idempotent(self):
        registry = ConnectionRegistry()
        conn_id = await registry.register(FakeChannel())
        assert await registry.unregister(conn_id) is True
        assert await registry.unregister(conn_id) is False
        assert await registry.unregister("unknown") is False
        assert conn_id not in registry

    @pytest.mark.asyncio
    async def test_idle_sweep_removes_and_closes(self):
        registry = ConnectionRegistry()
        idle_channel, busy_channel = FakeChannel(), FakeChannel()
        idle = await registry.register(idle_channel, now=0)
        busy = await registry.register(busy_channel, now=0)
        assert registry.touch(busy, now=900) is True

        removed = await registry.sweep_idle(idle_timeout_ms=500, now=1000)

        assert removed == [idle]
        assert idle not in registry
        assert busy in registry
        assert idle_channel.closed[0] == 1001
        assert await registry.send(idle, {"type": "pong"}) is False

    @pytest.mark.asyncio
    async def test_touch_unknown_id(self):
        assert ConnectionRegistry().touch("nope") is False

    @pytest.mark.asyncio
    async def test_broadcast_isolates_failures(self):
        registry = ConnectionRegistry()
        good_a, broken, good_b = FakeChannel(), FakeChannel(fail=True), FakeChannel()
        for channel in (good_a, broken, good_b):
            await registry.register(channel)

        delivered = await registry.broadcast({"type": "heartbeat"})

        assert delivered == 2
        assert good_a.sent == [{"type": "heartbeat"}]
        assert good_b.sent == [{"type": "heartbeat"}]

    @pytest.mark.asyncio
    async def test_broadcast_with_predicate(self):
        registry = ConnectionRegistry()
        admin, user = FakeChannel(), FakeChannel()
        await registry.register(admin, {"role": "admin"})
        await registry.register(user, {"role": "user"})

        delivered = await registry.broadcast(
            {"type": "heartbeat"}, predicate=lambda _id, meta: meta.get("role") == "admin"
        )
        assert delivered == 1
        assert admin.sent and not user.sent

    @pytest.mark.asyncio
    async def test_lifecycle_events(self):
        emitter = EventEmitter()
        registry = ConnectionRegistry(emitter)
        conn_id = await registry.register(FakeChannel(), {"client_key": "ip:1.2.3.4"})
        await registry.unregister(conn_id)

        connected = emitter.get_history(EventType.CONNECTED)
        disconnected = emitter.get_history(EventType.DISCONNECTED)
        assert connected[0].payload["connection_id"] == conn_id
        assert connected[0].payload["client_key"] == "ip:1.2.3.4"
        assert disconnected[0].payload == {"connection_id": conn_id}

    @pytest.mark.asyncio
    async def test_close_all(self):
        registry = ConnectionRegistry()
        channels = [FakeChannel() for _ in range(3)]
        for channel in channels:
            await registry.register(channel)
        assert await registry.close_all() == 3
        assert registry.get_active_count() == 0
        assert all(c.closed for c in channels)
