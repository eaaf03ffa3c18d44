"""
Connection registry - the single owner of every open streaming channel.

Other components address a connection only by its id; a send to an id that
has gone away is dropped and logged.
"""
import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from fastapi import WebSocket
from loguru import logger

from .events import EventEmitter
from .policy import now_ms
from .protocol import EventType


class Channel(Protocol):
    """Sink able to push a reply to the remote peer."""

    async def send(self, message: Dict[str, Any]) -> None:  # pragma: no cover - protocol
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:  # pragma: no cover - protocol
        ...


class WebSocketChannel:
    """Channel backed by a FastAPI/Starlette WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps(message, ensure_ascii=False))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code=code, reason=reason)


@dataclass
class Connection:
    connection_id: str
    channel: Channel
    opened_at: datetime = field(default_factory=datetime.now)
    last_seen_ms: float = field(default_factory=now_ms)
    metadata: Dict[str, Any] = field(default_factory=dict)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


ConnectionPredicate = Callable[[str, Dict[str, Any]], bool]

# Metadata kept for routing and rate limiting but never reported by introspection
PRIVATE_METADATA_KEYS = frozenset({"client_key"})


class ConnectionRegistry:
    """Tracks open channels by opaque id."""

    def __init__(self, event_emitter: Optional[EventEmitter] = None):
        self._connections: Dict[str, Connection] = {}
        self.event_emitter = event_emitter
        self._connection_counter = 0
        self._lock = asyncio.Lock()

    async def register(
        self,
        channel: Channel,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[float] = None,
    ) -> str:
        """Store a new channel and return its id. Ids are never reused."""
        async with self._lock:
            self._connection_counter += 1
            connection_id = f"conn_{self._connection_counter}_{uuid.uuid4().hex[:12]}"
            self._connections[connection_id] = Connection(
                connection_id=connection_id,
                channel=channel,
                last_seen_ms=now_ms() if now is None else now,
                metadata=dict(metadata or {}),
            )

        logger.info("Connection registered: {}", connection_id)
        if self.event_emitter:
            await self.event_emitter.emit(
                EventType.CONNECTED,
                {"connection_id": connection_id, **(metadata or {})},
            )
        return connection_id

    async def unregister(self, connection_id: str) -> bool:
        """Remove a connection. Unknown or already removed ids are a no-op."""
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False

        logger.info("Connection unregistered: {}", connection_id)
        if self.event_emitter:
            await self.event_emitter.emit(
                EventType.DISCONNECTED,
                {"connection_id": connection_id},
            )
        return True

    async def send(self, connection_id: str, message: Dict[str, Any]) -> bool:
        """Deliver a formatted reply; returns False when it was dropped."""
        connection = self._connections.get(connection_id)
        if connection is None:
            logger.debug("Dropping message for closed connection: {}", connection_id)
            return False
        try:
            async with connection.send_lock:
                await connection.channel.send(message)
            return True
        except Exception as e:
            logger.warning("Send to {} failed: {}", connection_id, e)
            return False

    def touch(self, connection_id: str, now: Optional[float] = None) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        connection.last_seen_ms = now_ms() if now is None else now
        return True

    async def broadcast(
        self,
        message: Dict[str, Any],
        predicate: Optional[ConnectionPredicate] = None,
    ) -> int:
        """Push to every matching connection; per-channel failures are isolated."""
        targets = [
            conn_id for conn_id, conn in list(self._connections.items())
            if predicate is None or predicate(conn_id, conn.metadata)
        ]
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self.send(conn_id, message) for conn_id in targets),
            return_exceptions=True,
        )
        return sum(1 for r in results if r is True)

    async def sweep_idle(self, idle_timeout_ms: float, now: Optional[float] = None) -> List[str]:
        """Unregister and close connections not seen for longer than ``idle_timeout_ms``."""
        now = now_ms() if now is None else now
        stale = [
            conn for conn in list(self._connections.values())
            if now - conn.last_seen_ms > idle_timeout_ms
        ]
        removed = []
        for conn in stale:
            if not await self.unregister(conn.connection_id):
                continue
            removed.append(conn.connection_id)
            logger.warning("Evicted idle connection: {}", conn.connection_id)
            try:
                await conn.channel.close(code=1001, reason="Idle timeout")
            except Exception as e:
                logger.debug("Closing idle connection {} failed: {}", conn.connection_id, e)
        return removed

    async def close_all(self, code: int = 1001, reason: str = "Server shutting down") -> int:
        closed = 0
        for conn in list(self._connections.values()):
            if not await self.unregister(conn.connection_id):
                continue
            try:
                await conn.channel.close(code=code, reason=reason)
            except Exception as e:
                logger.debug("Closing {} failed: {}", conn.connection_id, e)
            closed += 1
        return closed

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def get_active_count(self) -> int:
        return len(self._connections)

    def get_connections_info(self) -> Dict[str, Dict[str, Any]]:
        return {
            conn_id: {
                "connection_id": conn_id,
                "opened_at": conn.opened_at.isoformat(),
                "metadata": {
                    k: v for k, v in conn.metadata.items() if k not in PRIVATE_METADATA_KEYS
                },
            }
            for conn_id, conn in list(self._connections.items())
        }
