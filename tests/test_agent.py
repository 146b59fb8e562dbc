"""Тесты ChatAgent: сессия целиком на фейках."""

import asyncio

import httpx
import pytest

from tabpilot.ai.llm_client import ToolCall
from tabpilot.browser.actuator import BrowserError
from tabpilot.config import Config, ServerConfig
from tabpilot.core.agent import AgentError, ChatAgent
from tabpilot.core.state import LoopStatus
from tabpilot.protocols.a2a import A2ARegistry
from tabpilot.protocols.mcp import MCPManager
from tests.conftest import (
    WEATHER_TOOL,
    FakeActuator,
    FakeLLM,
    FakeTransport,
    mcp_handler,
    mcp_server_config,
    text_response,
    tool_response,
)


class BrokenActuator(FakeActuator):
    async def start(self):
        raise BrowserError("Failed to launch browser: no display")


def make_config(**loop):
    config = Config()
    config.loop.inter_tool_delay = 0
    for key, value in loop.items():
        setattr(config.loop, key, value)
    return config


def make_agent(llm, actuator=None, servers=None, a2a_handler=None, **loop):
    config = make_config(**loop)
    manager = MCPManager(
        config.protocols,
        transport_factory=lambda url, headers: FakeTransport(mcp_handler([WEATHER_TOOL]), url=url),
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(
        a2a_handler or (lambda request: httpx.Response(200, json={"response": "Booked"}))
    ))
    agent = ChatAgent(
        config=config,
        llm_client=llm,
        actuator=actuator,
        mcp_manager=manager,
        a2a_registry=A2ARegistry(client=client),
        server_configs=servers if servers is not None else [mcp_server_config("weather")],
    )
    return agent, client


TRAVEL = ServerConfig(id="travel", name="Travel", url="http://localhost:8080/invoke", protocol="a2a")


class TestChatAgent:
    @pytest.mark.anyio
    async def test_chat_builds_catalog_and_prompt(self):
        llm = FakeLLM([text_response("Hi there")])
        agent, client = make_agent(llm, actuator=FakeActuator(), servers=[mcp_server_config("weather"), TRAVEL])

        result = await agent.chat("hello")

        assert result.status == LoopStatus.COMPLETED
        request = llm.calls[0]
        tool_names = [t["name"] for t in request["tools"]]
        assert tool_names[-2:] == ["get_weather", "a2a_travel"]
        assert "navigate" in tool_names
        assert "SPECIALIZED TOOLS" in request["system_prompt"]
        assert "  - get_weather: Current weather for a city" in request["system_prompt"]
        assert "TOOL USAGE GUIDELINES" in request["system_prompt"]
        await agent.close()
        await client.aclose()

    @pytest.mark.anyio
    async def test_browser_disabled_without_actuator(self):
        llm = FakeLLM([text_response("ok")])
        agent, client = make_agent(llm, actuator=None)

        await agent.chat("hello")

        assert not agent.browser_tools_enabled
        names = [t["name"] for t in llm.calls[0]["tools"]]
        assert names == ["get_weather"]
        assert "NOT available" in llm.calls[0]["system_prompt"]
        await agent.close()
        await client.aclose()

    @pytest.mark.anyio
    async def test_browser_start_failure_disables_browser_tools(self):
        llm = FakeLLM([text_response("ok")])
        agent, client = make_agent(llm, actuator=BrokenActuator())

        await agent.chat("hello")

        assert not agent.browser_tools_enabled
        assert "navigate" not in [t["name"] for t in llm.calls[0]["tools"]]
        await agent.close()
        await client.aclose()

    @pytest.mark.anyio
    async def test_history_carried_between_tasks(self):
        llm = FakeLLM([text_response("First answer"), text_response("Second answer")])
        agent, client = make_agent(llm)

        await agent.chat("first")
        await agent.chat("second")

        assert llm.calls[1]["messages"] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "First answer"},
            {"role": "user", "content": "second"},
        ]
        assert len(agent.messages) == 4
        agent.clear_history()
        assert agent.messages == []
        await agent.close()
        await client.aclose()

    @pytest.mark.anyio
    async def test_a2a_tool_call_through_session(self):
        llm = FakeLLM([
            tool_response(ToolCall(id="a", name="a2a_travel", input={"task": "Book Rome"})),
            text_response("Your trip is booked."),
        ])
        agent, client = make_agent(llm, servers=[TRAVEL])

        result = await agent.chat("book a trip")

        results = llm.calls[1]["messages"][-1]["content"]
        assert results[0]["content"] == "Booked"
        assert result.text == "Your trip is booked."
        await agent.close()
        await client.aclose()

    @pytest.mark.anyio
    async def test_start_loads_agent_cards(self):
        def handler(request):
            if request.url.path == "/.well-known/agent-card.json":
                return httpx.Response(200, json={"name": "Travel", "skills": [{"id": "book"}]})
            return httpx.Response(200, json={"response": "Booked"})

        agent, client = make_agent(FakeLLM(), servers=[TRAVEL], a2a_handler=handler)
        await agent.start()

        assert agent.a2a_registry.get_agent("travel").card["skills"] == [{"id": "book"}]
        assert agent.get_status()["a2a_agents"]["travel"]["card"] is True
        await agent.close()
        await client.aclose()

    @pytest.mark.anyio
    async def test_second_chat_while_running_rejected(self):
        gate = asyncio.Event()

        class SlowLLM(FakeLLM):
            async def send_message(self, *args, **kwargs):
                await gate.wait()
                return await super().send_message(*args, **kwargs)

        agent, client = make_agent(SlowLLM([text_response("done")]))
        await agent.start()
        first = asyncio.create_task(agent.chat("one"))
        await asyncio.sleep(0.01)

        assert agent.is_running
        with pytest.raises(AgentError):
            await agent.chat("two")

        gate.set()
        assert (await first).status == LoopStatus.COMPLETED
        assert not agent.is_running
        await agent.close()
        await client.aclose()

    @pytest.mark.anyio
    async def test_stop_cancels_running_task(self):
        agent_ref = {}

        def stop_on_tool(name, origin):
            agent_ref["agent"].stop()

        llm = FakeLLM([
            tool_response(ToolCall(id="k", name="pressKey", input={"key": "Enter"})),
            text_response("never"),
        ])
        agent, client = make_agent(llm, actuator=FakeActuator())
        agent.loop.on_tool_start = stop_on_tool
        agent_ref["agent"] = agent

        result = await agent.chat("press enter")

        assert result.status == LoopStatus.CANCELLED
        assert len(llm.calls) == 1
        assert agent.stop() is False
        await agent.close()
        await client.aclose()

    @pytest.mark.anyio
    async def test_status_and_close(self):
        llm = FakeLLM()
        actuator = FakeActuator()
        agent, client = make_agent(llm, actuator=actuator)
        await agent.start()
        agent.router.build_catalog(include_actuator=agent.browser_tools_enabled)

        status = agent.get_status()
        assert status["mcp_servers"]["weather"]["state"] == "connected"
        assert status["browser_tools"] is True
        assert status["tools"] == 9

        await agent.close()

        assert actuator.closed
        assert llm.closed
        assert not agent.mcp_manager.has_connections()
        await client.aclose()
