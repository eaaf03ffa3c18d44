"""Event bus for gateway lifecycle notifications."""
import asyncio
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from .protocol import EventType


class EventMessage(BaseModel):
    event: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    seq: int
    timestamp: datetime = Field(default_factory=datetime.now)


class EventEmitter:
    """Async event emitter with listener registry and bounded history."""

    def __init__(self, max_history: int = 1000):
        self._listeners: Dict[EventType, List[Callable]] = defaultdict(list)
        self._seq_counter = 0
        self._event_history: Deque[EventMessage] = deque(maxlen=max_history)

    def on(self, event: EventType, handler: Callable) -> None:
        if handler not in self._listeners[event]:
            self._listeners[event].append(handler)
            logger.debug("Registered listener for event: {}", event.value)

    def off(self, event: EventType, handler: Callable) -> None:
        if handler in self._listeners[event]:
            self._listeners[event].remove(handler)

    async def emit(self, event: EventType, payload: Dict[str, Any]) -> EventMessage:
        """Deliver to every listener; a failing listener never affects the others."""
        self._seq_counter += 1
        event_msg = EventMessage(event=event, payload=payload, seq=self._seq_counter)
        self._event_history.append(event_msg)

        tasks = []
        for handler in list(self._listeners.get(event, [])):
            try:
                if asyncio.iscoroutinefunction(handler):
                    tasks.append(handler(event_msg))
                else:
                    handler(event_msg)
            except Exception as e:
                logger.error("Error in event listener for {}: {}", event.value, e)

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Error in event listener for {}: {}", event.value, result)
        return event_msg

    def get_history(self, event: Optional[EventType] = None, limit: int = 100) -> List[EventMessage]:
        history = list(self._event_history)
        if event:
            history = [e for e in history if e.event == event]
        return history[-limit:]

    def clear_listeners(self, event: Optional[EventType] = None) -> None:
        if event:
            self._listeners[event].clear()
        else:
            self._listeners.clear()
