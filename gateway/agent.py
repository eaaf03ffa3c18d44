"""
Collaborator interfaces for the hosted agent.

The gateway only calls these from inside capability handlers; reasoning,
memory persistence and extension behaviour live behind them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Type

from pydantic import BaseModel


class ChatCompletion(BaseModel):
    content: str
    tokens_used: Optional[int] = None


class Portal(Protocol):
    """Reasoning backend of the agent."""

    async def generate_chat(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
    ) -> ChatCompletion:  # pragma: no cover - protocol
        ...


class MemoryStore(Protocol):
    async def retrieve(self, agent_id: str, kind: str, limit: int) -> List[Any]:  # pragma: no cover - protocol
        ...

    async def store(self, agent_id: str, record: Dict[str, Any]) -> None:  # pragma: no cover - protocol
        ...


class ActionOutcome(BaseModel):
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None


ActionCallable = Callable[["Agent", Dict[str, Any]], Awaitable[Any]]


@dataclass
class ExtensionAction:
    name: str
    execute: ActionCallable
    description: str = ""
    timeout_ms: Optional[float] = None
    schema: Optional[Type[BaseModel]] = None


@dataclass
class Extension:
    id: str
    name: str = ""
    enabled: bool = True
    actions: Dict[str, ExtensionAction] = field(default_factory=dict)


@dataclass
class Agent:
    id: str
    status: str = "active"
    portal: Optional[Portal] = None
    memory: Optional[MemoryStore] = None
    extensions: List[Extension] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
