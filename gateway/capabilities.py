"""
Built-in agent capabilities: chat, memory retrieval/storage and the actions
exposed by the agent's extensions.
"""
from __future__ import annotations

import secrets
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from .agent import ActionOutcome, Agent, ChatCompletion, Extension, ExtensionAction
from .dispatcher import Dispatcher
from .errors import GatewayError, HandlerConflictError
from .protocol import Command, ErrorKind, Result

CHAT = "chat"
MEMORY_RETRIEVE = "memory.retrieve"
MEMORY_STORE = "memory.store"


class ChatOptions(BaseModel):
    max_tokens: Optional[int] = Field(default=None, ge=1)


class ChatContext(BaseModel):
    session_id: Optional[str] = None


class ChatParams(BaseModel):
    message: str = Field(min_length=1)
    options: ChatOptions = Field(default_factory=ChatOptions)
    context: ChatContext = Field(default_factory=ChatContext)


class MemoryRetrieveParams(BaseModel):
    kind: str = "recent"
    limit: int = Field(default=20, ge=1, le=1000)


class MemoryStoreParams(BaseModel):
    content: str = Field(min_length=1)
    type: str = "experience"
    metadata: Dict[str, Any] = Field(default_factory=dict)


def _new_memory_id() -> str:
    return f"mem_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


class AgentCapabilities:
    """Handlers backed by the agent's portal and memory store."""

    def __init__(self, agent: Agent):
        self.agent = agent

    async def chat(self, command: Command) -> Dict[str, Any]:
        if self.agent.portal is None:
            raise GatewayError(ErrorKind.HANDLER_FAILURE, "No portal configured for agent")

        params = ChatParams.model_validate(command.parameters)
        messages = [{"role": "user", "content": params.message}]
        start = time.perf_counter()
        completion = await self.agent.portal.generate_chat(
            messages, max_tokens=params.options.max_tokens
        )
        if not isinstance(completion, ChatCompletion):
            completion = ChatCompletion.model_validate(completion, from_attributes=True)

        return {
            "response": completion.content,
            "session_id": params.context.session_id,
            "timestamp": datetime.now().isoformat(),
            "metadata": {
                "tokens_used": completion.tokens_used,
                "processing_time": int((time.perf_counter() - start) * 1000),
            },
        }

    async def retrieve_memories(self, command: Command) -> Dict[str, List[Any]]:
        if self.agent.memory is None:
            raise GatewayError(ErrorKind.HANDLER_FAILURE, "No memory store configured for agent")
        params = MemoryRetrieveParams.model_validate(command.parameters)
        memories = await self.agent.memory.retrieve(self.agent.id, params.kind, params.limit)
        return {"memories": list(memories or [])}

    async def store_memory(self, command: Command) -> Dict[str, Any]:
        if self.agent.memory is None:
            raise GatewayError(ErrorKind.HANDLER_FAILURE, "No memory store configured for agent")
        params = MemoryStoreParams.model_validate(command.parameters)
        now = datetime.now()
        record = {
            "id": _new_memory_id(),
            "agent_id": self.agent.id,
            "type": params.type,
            "content": params.content,
            "metadata": params.metadata,
            "importance": 0.5,
            "timestamp": now,
            "tags": [],
            "duration": "long_term",
        }
        await self.agent.memory.store(self.agent.id, record)
        return {"id": record["id"], "timestamp": now.isoformat()}

    def register(self, dispatcher: Dispatcher, override: bool = False) -> None:
        dispatcher.register_handler(
            CHAT, self.chat, schema=ChatParams, override=override,
            description="Send one user message to the agent's portal",
        )
        dispatcher.register_handler(
            MEMORY_RETRIEVE, self.retrieve_memories, schema=MemoryRetrieveParams,
            override=override, description="Recent memories of the agent",
        )
        dispatcher.register_handler(
            MEMORY_STORE, self.store_memory, schema=MemoryStoreParams,
            override=override, description="Store one memory record",
        )


def make_action_handler(agent: Agent, action: ExtensionAction):
    """Adapt an extension action ``(agent, parameters)`` to the dispatcher signature."""

    async def handle(command: Command) -> Any:
        outcome = await action.execute(agent, dict(command.parameters))
        if isinstance(outcome, dict) and "success" in outcome:
            outcome = ActionOutcome.model_validate(outcome)
        if isinstance(outcome, ActionOutcome):
            if not outcome.success:
                return Result.fail(ErrorKind.HANDLER_FAILURE, outcome.error or "Action failed")
            return outcome.result
        return outcome

    handle.__name__ = f"action_{action.name}"
    return handle


def register_extension_actions(dispatcher: Dispatcher, agent: Agent) -> List[str]:
    """Register every action of every enabled extension under its own name.

    When two extensions expose the same action name the first one registered wins.
    """
    registered = []
    for extension in agent.extensions:
        if not extension.enabled:
            continue
        for action_name, action in extension.actions.items():
            try:
                dispatcher.register_handler(
                    action_name,
                    make_action_handler(agent, action),
                    schema=action.schema,
                    timeout_ms=action.timeout_ms,
                    description=action.description or f"{_label(extension)} action",
                )
            except HandlerConflictError:
                logger.warning(
                    "Action {} from extension {} shadows an existing handler; skipped",
                    action_name, extension.id,
                )
                continue
            registered.append(action_name)
    return registered


def _label(extension: Extension) -> str:
    return extension.name or extension.id


def register_agent_capabilities(dispatcher: Dispatcher, agent: Agent) -> List[str]:
    AgentCapabilities(agent).register(dispatcher)
    return [CHAT, MEMORY_RETRIEVE, MEMORY_STORE] + register_extension_actions(dispatcher, agent)
