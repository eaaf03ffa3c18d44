"""
Agent capability tests: chat, memory and extension actions
"""
from unittest.mock import AsyncMock

import pytest

from gateway.agent import ActionOutcome, Agent, ChatCompletion, Extension, ExtensionAction
from gateway.capabilities import CHAT, MEMORY_RETRIEVE, MEMORY_STORE, register_agent_capabilities
from gateway.dispatcher import Dispatcher
from gateway.protocol import ErrorKind


def make_dispatcher(agent):
    dispatcher = Dispatcher(default_timeout_ms=2000)
    register_agent_capabilities(dispatcher, agent)
    return dispatcher


class TestChat:
    """chat capability"""

    @pytest.mark.asyncio
    async def test_chat_calls_portal(self, make_command):
        portal = AsyncMock()
        portal.generate_chat.return_value = ChatCompletion(content="Hello human", tokens_used=12)
        dispatcher = make_dispatcher(Agent(id="agent-1", portal=portal))

        result = await dispatcher.dispatch(
            make_command(CHAT, message="hi", options={"max_tokens": 64}, context={"session_id": "s1"})
        )

        assert result.success is True
        assert result.payload["response"] == "Hello human"
        assert result.payload["session_id"] == "s1"
        assert result.payload["metadata"]["tokens_used"] == 12
        portal.generate_chat.assert_awaited_once_with(
            [{"role": "user", "content": "hi"}], max_tokens=64
        )

    @pytest.mark.asyncio
    async def test_chat_without_portal_fails(self, make_command):
        dispatcher = make_dispatcher(Agent(id="agent-1"))
        result = await dispatcher.dispatch(make_command(CHAT, message="hi"))
        assert result.error.kind == ErrorKind.HANDLER_FAILURE
        assert result.error.message == "No portal configured for agent"

    @pytest.mark.asyncio
    async def test_chat_requires_message(self, make_command):
        portal = AsyncMock()
        dispatcher = make_dispatcher(Agent(id="agent-1", portal=portal))
        result = await dispatcher.dispatch(make_command(CHAT))
        assert result.error.kind == ErrorKind.BAD_INPUT
        portal.generate_chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_portal_error_is_handler_failure(self, make_command):
        portal = AsyncMock()
        portal.generate_chat.side_effect = RuntimeError("model offline")
        dispatcher = make_dispatcher(Agent(id="agent-1", portal=portal))
        result = await dispatcher.dispatch(make_command(CHAT, message="hi"))
        assert result.error.kind == ErrorKind.HANDLER_FAILURE
        assert result.error.message == "model offline"


class TestMemory:
    """memory.retrieve / memory.store"""

    @pytest.mark.asyncio
    async def test_store_then_retrieve(self, make_command):
        memory = AsyncMock()
        memory.retrieve.return_value = [{"content": "met Alice"}]
        dispatcher = make_dispatcher(Agent(id="agent-1", memory=memory))

        stored = await dispatcher.dispatch(make_command(MEMORY_STORE, content="met Alice"))
        assert stored.success is True
        assert stored.payload["id"].startswith("mem_")

        agent_id, record = memory.store.await_args.args
        assert agent_id == "agent-1"
        assert record["content"] == "met Alice"
        assert record["type"] == "experience"
        assert record["importance"] == 0.5

        retrieved = await dispatcher.dispatch(make_command(MEMORY_RETRIEVE, limit="5"))
        assert retrieved.payload == {"memories": [{"content": "met Alice"}]}
        memory.retrieve.assert_awaited_once_with("agent-1", "recent", 5)

    @pytest.mark.asyncio
    async def test_memory_without_store_fails(self, make_command):
        dispatcher = make_dispatcher(Agent(id="agent-1"))
        result = await dispatcher.dispatch(make_command(MEMORY_RETRIEVE))
        assert result.error.kind == ErrorKind.HANDLER_FAILURE

    @pytest.mark.asyncio
    async def test_store_requires_content(self, make_command):
        dispatcher = make_dispatcher(Agent(id="agent-1", memory=AsyncMock()))
        result = await dispatcher.dispatch(make_command(MEMORY_STORE, content=""))
        assert result.error.kind == ErrorKind.BAD_INPUT


class TestExtensionActions:
    """Actions exposed by extensions"""

    @pytest.mark.asyncio
    async def test_action_success_and_failure(self, make_command):
        async def send_message(agent, parameters):
            return ActionOutcome(success=True, result={"sent_to": parameters["to"], "by": agent.id})

        async def refuse(agent, parameters):
            return {"success": False, "error": "channel closed"}

        extension = Extension(
            id="social",
            name="Social",
            actions={
                "send_message": ExtensionAction("send_message", send_message),
                "refuse": ExtensionAction("refuse", refuse),
            },
        )
        dispatcher = make_dispatcher(Agent(id="agent-1", extensions=[extension]))

        ok = await dispatcher.dispatch(make_command("send_message", to="bob"))
        assert ok.payload == {"sent_to": "bob", "by": "agent-1"}

        failed = await dispatcher.dispatch(make_command("refuse"))
        assert failed.error.kind == ErrorKind.HANDLER_FAILURE
        assert failed.error.message == "channel closed"

    def test_disabled_extensions_and_duplicates_are_skipped(self):
        async def noop(agent, parameters):
            return None

        first = Extension(id="a", actions={"wave": ExtensionAction("wave", noop)})
        second = Extension(id="b", actions={"wave": ExtensionAction("wave", noop, description="dup")})
        disabled = Extension(id="c", enabled=False, actions={"sleep": ExtensionAction("sleep", noop)})

        dispatcher = Dispatcher()
        names = register_agent_capabilities(
            dispatcher, Agent(id="agent-1", extensions=[first, second, disabled])
        )

        assert names == [CHAT, MEMORY_RETRIEVE, MEMORY_STORE, "wave"]
        assert "sleep" not in dispatcher.handler_names()
        assert dispatcher.get_registration("wave").description == "a action"
