"""
Gateway server - owns the policy layer, connection registry, normalizer and
dispatcher, and runs both transport adapters on top of them.

The request/response adapter and the channel adapter share one dispatch
contract; each transport only differs in how the reply travels back.
"""
import asyncio
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from fastapi import WebSocketDisconnect
from loguru import logger

from .agent import Agent
from .capabilities import register_agent_capabilities
from .config import GatewayConfig
from .connection import Channel, ConnectionRegistry
from .dispatcher import Dispatcher
from .errors import BadInputError
from .events import EventEmitter
from .normalizer import CommandNormalizer, FrameError, HttpReply, REPLY_TYPES
from .policy import Admission, PolicyLayer
from .protocol import ChannelMessageType, Command, EventType, Result

Receive = Callable[[], Awaitable[Any]]


def _denied(admission: Admission) -> Result:
    return Result.fail(admission.error.kind, admission.error.message)


class GatewayServer:
    """Gateway server.

    Collaborators can be injected for testing; otherwise they are built from
    the config.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        dispatcher: Optional[Dispatcher] = None,
        registry: Optional[ConnectionRegistry] = None,
        policy: Optional[PolicyLayer] = None,
        normalizer: Optional[CommandNormalizer] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.config = config or GatewayConfig()
        self.event_emitter = event_emitter or EventEmitter()
        self.dispatcher = dispatcher or Dispatcher(
            default_timeout_ms=self.config.dispatch.default_timeout_ms
        )
        self.registry = registry or ConnectionRegistry(self.event_emitter)
        self.policy = policy or PolicyLayer.from_config(self.config)
        self.normalizer = normalizer or CommandNormalizer()

        self.agent: Optional[Agent] = None
        self.started_at: Optional[datetime] = None
        self.is_running = False
        self._background_tasks: List[asyncio.Task] = []
        self._inflight: Set[asyncio.Task] = set()

    @property
    def version(self) -> str:
        return self.config.server.version

    def attach_agent(self, agent: Agent) -> List[str]:
        """Register the agent's built-in capabilities and extension actions."""
        self.agent = agent
        names = register_agent_capabilities(self.dispatcher, agent)
        logger.info("Agent {} attached with {} capabilities", agent.id, len(names))
        return names

    # ============ Lifecycle ============

    async def start(self) -> None:
        """Start the server and its periodic tasks."""
        if self.is_running:
            return
        self.started_at = datetime.now()
        self.is_running = True

        ws_cfg = self.config.websocket
        if ws_cfg.heartbeat_interval_ms > 0:
            self._background_tasks.append(asyncio.create_task(self._heartbeat_task()))
        self._background_tasks.append(asyncio.create_task(self._sweep_task()))
        logger.info("Gateway server started (version {})", self.version)

    async def stop(self) -> None:
        self.is_running = False
        tasks = self._background_tasks + list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks = []
        closed = await self.registry.close_all()
        logger.info("Gateway server stopped ({} connections closed)", closed)

    def uptime_seconds(self) -> float:
        if not self.started_at:
            return 0.0
        return (datetime.now() - self.started_at).total_seconds()

    # ============ Shared dispatch path ============

    async def execute(self, command: Command, timeout_ms: Optional[float] = None) -> Result:
        await self.event_emitter.emit(
            EventType.COMMAND_RECEIVED,
            {
                "name": command.name,
                "transport": command.origin_kind.value,
                "origin_id": command.origin_id,
            },
        )
        result = await self.dispatcher.dispatch(command, timeout_ms)
        if result.success:
            await self.event_emitter.emit(
                EventType.COMMAND_COMPLETED,
                {
                    "name": command.name,
                    "origin_id": command.origin_id,
                    "elapsed_ms": result.elapsed_ms,
                },
            )
        else:
            await self.event_emitter.emit(
                EventType.COMMAND_FAILED,
                {
                    "name": command.name,
                    "origin_id": command.origin_id,
                    "kind": result.error.kind.value,
                    "error": result.error.message,
                },
            )
        return result

    # ============ Request/response adapter ============

    async def handle_http_request(
        self,
        raw_body: Any,
        client_key: str,
        auth_token: Optional[str] = None,
        origin: Optional[str] = None,
        now: Optional[float] = None,
        name: Optional[str] = None,
        name_field: str = "name",
    ) -> HttpReply:
        """Policy -> parse -> dispatch -> format for one synchronous call.

        ``name``/``name_field`` are passed to the normalizer for endpoints
        that fix the command name or carry it under another key.
        """
        admission = self.policy.admit(client_key, auth_token, now=now, origin=origin)
        if not admission.allowed:
            logger.info("Request from {} rejected: {}", client_key, admission.error.kind.value)
            return self.normalizer.format_http(_denied(admission))

        request_id = f"http_{uuid.uuid4().hex}"
        try:
            command = self.normalizer.parse_request(
                raw_body, origin_id=request_id, name=name, name_field=name_field
            )
        except BadInputError as e:
            return self.normalizer.format_http(e.to_result())

        result = await self.execute(command)
        return self.normalizer.format_http(result)

    # ============ Channel adapter ============

    def admit_channel(
        self,
        auth_token: Optional[str],
        origin: Optional[str] = None,
    ) -> Admission:
        """Handshake-time checks; rate limiting is applied per frame instead."""
        admission = self.policy.check_origin(origin)
        if not admission.allowed:
            return admission
        return self.policy.authenticate(auth_token)

    async def run_channel(
        self,
        channel: Channel,
        receive: Receive,
        client_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Serve one connected channel until it closes or errors.

        Frames are dispatched concurrently (bounded per connection); the
        connection is unregistered on every exit path.
        """
        meta = {"client_key": client_key, **(metadata or {})}
        connection_id = await self.registry.register(channel, meta)
        limiter = asyncio.Semaphore(self.config.websocket.max_inflight)
        try:
            await self.registry.send(connection_id, self.normalizer.welcome(connection_id))
            while True:
                raw = await receive()
                self.registry.touch(connection_id)
                await limiter.acquire()
                task = asyncio.create_task(self.handle_frame(connection_id, raw, client_key))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                task.add_done_callback(lambda _t: limiter.release())
        except WebSocketDisconnect:
            logger.info("Channel {} closed by peer", connection_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Channel {} error: {}", connection_id, e)
        finally:
            await self.registry.unregister(connection_id)
        return connection_id

    async def handle_frame(
        self,
        connection_id: str,
        raw_frame: Any,
        client_key: str,
        now: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """Process one inbound frame and push the reply to its connection.

        Returns the reply envelope (also when delivery was dropped).
        """
        try:
            frame = self.normalizer.parse_channel_frame(raw_frame, connection_id)
        except FrameError as e:
            # Malformed frames count against the window; only a parsed ping is exempt
            admission = self.policy.throttle(client_key, now)
            if admission.allowed:
                logger.debug("Bad frame on {}: {}", connection_id, e.message)
                result = e.to_result()
            else:
                result = _denied(admission)
            reply = self.normalizer.format_channel(result, frame_id=e.frame_id)
            await self.registry.send(connection_id, reply)
            return reply

        if frame.type == ChannelMessageType.PING:
            reply = self.normalizer.pong(frame.frame_id)
            await self.registry.send(connection_id, reply)
            return reply

        reply_type = REPLY_TYPES[frame.type]
        admission = self.policy.throttle(client_key, now)
        if not admission.allowed:
            reply = self.normalizer.format_channel(_denied(admission), reply_type, frame.frame_id)
        else:
            result = await self.execute(frame.command)
            reply = self.normalizer.format_channel(result, reply_type, frame.frame_id)

        if not await self.registry.send(connection_id, reply):
            logger.debug("Reply for {} on {} was not delivered", frame.command.name, connection_id)
        return reply

    # ============ Background tasks ============

    async def _heartbeat_task(self) -> None:
        interval = self.config.websocket.heartbeat_interval_ms / 1000.0
        while self.is_running:
            await asyncio.sleep(interval)
            try:
                payload = {
                    "timestamp": datetime.now().isoformat(),
                    "connections": self.registry.get_active_count(),
                }
                await self.event_emitter.emit(EventType.HEARTBEAT, payload)
                await self.registry.broadcast(self.normalizer.heartbeat(payload))
            except Exception as e:
                logger.error("Heartbeat failed: {}", e)

    async def _sweep_task(self) -> None:
        interval = self.config.websocket.sweep_interval_ms / 1000.0
        while self.is_running:
            await asyncio.sleep(interval)
            await self.sweep()

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """Evict idle connections and expired rate-limit windows."""
        removed: List[str] = []
        try:
            removed = await self.registry.sweep_idle(self.config.websocket.idle_timeout_ms, now)
            if self.policy.rate_limiter is not None:
                self.policy.rate_limiter.evict_expired(now)
        except Exception as e:
            logger.error("Sweep failed: {}", e)
        return removed

    # ============ Introspection ============

    def get_health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "version": self.version,
            "timestamp": datetime.now().isoformat(),
        }

    def get_status(self) -> Dict[str, Any]:
        agent = self.agent
        extensions = agent.extensions if agent else []
        return {
            "agent": {
                "id": agent.id if agent else "unknown",
                "status": agent.status if agent else "unknown",
                "uptime": self.uptime_seconds(),
            },
            "extensions": {
                "loaded": len(extensions),
                "active": sum(1 for ext in extensions if ext.enabled),
            },
            "connections": self.registry.get_active_count(),
            "capabilities": self.dispatcher.handler_names(),
        }
