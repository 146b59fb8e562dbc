"""Тесты цикла tool calling."""

import asyncio
import json

import pytest

from tabpilot.ai.llm_client import LLMConnectionError, ToolCall
from tabpilot.ai.tools import ToolOrigin
from tabpilot.browser.screenshot import ScreenshotNormalizer
from tabpilot.config import HistoryConfig, LoopConfig, ProtocolConfig
from tabpilot.constants import Markers
from tabpilot.core.history import HistoryManager
from tabpilot.core.loop import ConversationLoop, sanitize_text
from tabpilot.core.state import CancelToken, LoopStatus
from tabpilot.core.tool_router import ToolRouter
from tabpilot.errors import LoopCancelledError, TransportError
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


USER = [{"role": "user", "content": "What's the weather in Berlin?"}]


async def connected_manager(call=None):
    def factory(url, headers):
        return FakeTransport(mcp_handler([WEATHER_TOOL], call=call), url=url)

    manager = MCPManager(
        ProtocolConfig(call_timeout=0.1, discovery_timeout=0.5),
        transport_factory=factory,
    )
    await manager.connect_to_server(mcp_server_config("weather"))
    return manager


def make_loop(llm, actuator=None, mcp_manager=None, max_turns=10, history=None, **callbacks):
    router = ToolRouter(actuator=actuator, mcp_manager=mcp_manager)
    router.build_catalog()
    loop = ConversationLoop(
        llm_client=llm,
        router=router,
        history=history,
        normalizer=ScreenshotNormalizer(1280, 800),
        config=LoopConfig(max_turns=max_turns, inter_tool_delay=0),
        **callbacks,
    )
    return loop, router


def tool_results(message):
    return [b for b in message["content"] if b.get("type") == "tool_result"]


def weather_call(call_id="toolu_1", city="Berlin"):
    return ToolCall(id=call_id, name="get_weather", input={"city": city})


class TestSanitizeText:
    def test_strips_markup(self):
        text = 'Hi<function_calls><invoke name="x"><parameter name="a">1</parameter></invoke></function_calls> there'
        assert sanitize_text(text) == "Hi there"

    def test_strips_stray_tags(self):
        assert sanitize_text("<tool_call>{}</tool_call>Done</invoke>") == "Done"

    def test_browser_phrases_only_when_disabled(self):
        text = "I'll navigate to the site. Result [Executing: navigate] ok"
        assert "navigate to" in sanitize_text(text, browser_tools_enabled=True)
        assert sanitize_text(text, browser_tools_enabled=False) == "Result  ok"

    def test_collapses_blank_runs(self):
        assert sanitize_text("a\n\n\n\n\nb") == "a\n\nb"


class TestCompletion:
    @pytest.mark.anyio
    async def test_plain_answer(self):
        chunks = []
        llm = FakeLLM([text_response("Hello!")])
        loop, _ = make_loop(llm, on_text=chunks.append)

        result = await loop.run(USER, system_prompt="sys")

        assert result.status == LoopStatus.COMPLETED
        assert result.success
        assert result.text == "Hello!"
        assert result.turns == 1
        assert chunks == ["Hello!"]
        assert result.messages[-1] == {"role": "assistant", "content": "Hello!"}
        assert llm.calls[0]["system_prompt"] == "sys"

    @pytest.mark.anyio
    async def test_empty_answer_reports_completion(self):
        loop, _ = make_loop(FakeLLM([text_response("")]))

        result = await loop.run(USER)

        assert result.status == LoopStatus.COMPLETED
        assert result.text == Markers.EMPTY_COMPLETION

    @pytest.mark.anyio
    async def test_hallucinated_markup_not_shown(self):
        chunks = []
        llm = FakeLLM([text_response("<function_calls><invoke name=\"navigate\"></invoke></function_calls>")])
        loop, _ = make_loop(llm, on_text=chunks.append)

        result = await loop.run(USER)

        assert all("<" not in chunk for chunk in chunks)
        assert result.text == Markers.EMPTY_COMPLETION

    @pytest.mark.anyio
    async def test_llm_transport_error_propagates(self):
        llm = FakeLLM([LLMConnectionError("endpoint down", hint="check the base URL")])
        loop, _ = make_loop(llm)

        with pytest.raises(TransportError):
            await loop.run(USER)


class TestToolRoundTrip:
    @pytest.mark.anyio
    async def test_mcp_tool_result_returned_to_model(self):
        chunks = []
        started = []
        finished = []
        manager = await connected_manager()
        transport = manager.get_connection("weather").transport
        llm = FakeLLM([
            tool_response(weather_call(), text="Let me check."),
            text_response("It is sunny."),
        ])
        loop, _ = make_loop(
            llm,
            mcp_manager=manager,
            on_text=chunks.append,
            on_tool_start=lambda name, origin: started.append((name, origin)),
            on_tool_result=lambda name, result: finished.append((name, result)),
        )

        result = await loop.run(USER)

        assert result.status == LoopStatus.COMPLETED
        assert result.text == "Let me check.\n\nIt is sunny."
        assert result.turns == 2
        assert result.tool_calls == 1
        assert chunks[1] == '\n[Executing: get_weather] (MCP tool)\n{"city": "Berlin"}\n'
        assert started == [("get_weather", ToolOrigin.MCP)]
        assert finished == [("get_weather", "ok:get_weather")]
        assert [m["method"] for m in transport.sent if m.get("method") == "tools/call"] == ["tools/call"]

        second_request = llm.calls[1]["messages"]
        assert len(second_request) == len(USER) + 2
        assistant, results = second_request[-2], second_request[-1]
        assert assistant["role"] == "assistant"
        assert assistant["content"][0] == {"type": "text", "text": "Let me check."}
        assert assistant["content"][1]["type"] == "tool_use"
        assert tool_results(results) == [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "ok:get_weather"}
        ]

    @pytest.mark.anyio
    async def test_one_result_per_call_in_order(self):
        actuator = FakeActuator()
        llm = FakeLLM([
            tool_response(
                ToolCall(id="a", name="navigate", input={"url": "example.com"}),
                ToolCall(id="b", name="pressKey", input={"key": "Enter"}),
                ToolCall(id="c", name="scroll", input={"direction": "down"}),
            ),
            text_response("Done"),
        ])
        loop, _ = make_loop(llm, actuator=actuator)

        result = await loop.run(USER)

        results = tool_results(llm.calls[1]["messages"][-1])
        assert [r["tool_use_id"] for r in results] == ["a", "b", "c"]
        assert [a[0] for a in actuator.actions] == ["navigate", "pressKey", "scroll"]
        assert result.tool_calls == 3

    @pytest.mark.anyio
    async def test_tool_error_becomes_error_result(self):
        async def failing(params):
            return {"isError": True, "content": [{"type": "text", "text": "city not found"}]}

        manager = await connected_manager(call=failing)
        llm = FakeLLM([tool_response(weather_call(city="Atlantis")), text_response("Sorry.")])
        loop, _ = make_loop(llm, mcp_manager=manager)

        result = await loop.run(USER)

        assert result.status == LoopStatus.COMPLETED
        block = tool_results(llm.calls[1]["messages"][-1])[0]
        assert block["is_error"] is True
        assert json.loads(block["content"]) == {"error": "get_weather: MCP tool error: city not found"}

    @pytest.mark.anyio
    async def test_tool_timeout_marked(self):
        async def hang(params):
            await asyncio.sleep(10)
            return {}

        manager = await connected_manager(call=hang)
        llm = FakeLLM([tool_response(weather_call()), text_response("Timed out.")])
        loop, _ = make_loop(llm, mcp_manager=manager)

        await loop.run(USER)

        block = tool_results(llm.calls[1]["messages"][-1])[0]
        payload = json.loads(block["content"])
        assert block["is_error"] is True
        assert payload["timeout"] is True
        assert payload["error"] == f"get_weather: {Markers.TOOL_TIMEOUT_MESSAGE}"

    @pytest.mark.anyio
    async def test_unknown_tool_is_error_result(self):
        llm = FakeLLM([tool_response(ToolCall(id="x", name="teleport", input={})), text_response("ok")])
        loop, _ = make_loop(llm)

        result = await loop.run(USER)

        block = tool_results(llm.calls[1]["messages"][-1])[0]
        assert block["is_error"] is True
        assert "teleport" in json.loads(block["content"])["error"]
        assert result.status == LoopStatus.COMPLETED

    @pytest.mark.anyio
    async def test_callback_errors_do_not_break_loop(self):
        def broken(*args):
            raise RuntimeError("UI crashed")

        loop, _ = make_loop(FakeLLM([text_response("Hi")]), on_text=broken)

        result = await loop.run(USER)

        assert result.text == "Hi"

    @pytest.mark.anyio
    async def test_async_callbacks_awaited(self):
        chunks = []

        async def on_text(chunk):
            chunks.append(chunk)

        loop, _ = make_loop(FakeLLM([text_response("Hi")]), on_text=on_text)
        await loop.run(USER)

        assert chunks == ["Hi"]


class TestBrowserResults:
    @pytest.mark.anyio
    async def test_screenshot_becomes_image_and_scale_note(self):
        actuator = FakeActuator(screenshot_size=(1920, 1200), viewport=(1920, 1200))
        llm = FakeLLM([tool_response(ToolCall(id="s", name="screenshot", input={})), text_response("I see it")])
        loop, _ = make_loop(llm, actuator=actuator)

        await loop.run(USER)

        block = tool_results(llm.calls[1]["messages"][-1])[0]
        image, note = block["content"]
        assert image["type"] == "image"
        assert image["source"]["media_type"] == "image/png"
        assert "1280x800" in note["text"]
        assert "scale_x=1.5000" in note["text"]
        assert "is_error" not in block

    @pytest.mark.anyio
    async def test_navigate_success_asks_for_verification(self):
        llm = FakeLLM([
            tool_response(ToolCall(id="n", name="navigate", input={"url": "https://example.com"})),
            text_response("Opened"),
        ])
        loop, _ = make_loop(llm, actuator=FakeActuator())

        await loop.run(USER)

        payload = json.loads(tool_results(llm.calls[1]["messages"][-1])[0]["content"])
        assert payload["success"] is True
        assert payload["url"] == "https://example.com"
        assert "verify" in payload["message"]

    @pytest.mark.anyio
    async def test_navigate_failure_is_error(self):
        llm = FakeLLM([
            tool_response(ToolCall(id="n", name="navigate", input={"url": "https://down.example"})),
            text_response("Could not open"),
        ])
        loop, _ = make_loop(llm, actuator=FakeActuator(fail_navigation=True))

        await loop.run(USER)

        block = tool_results(llm.calls[1]["messages"][-1])[0]
        payload = json.loads(block["content"])
        assert block["is_error"] is True
        assert payload["success"] is False
        assert payload["error"].startswith("Navigation failed: Failed to load https://down.example")
        assert payload["attemptedUrl"] == "https://down.example"


class TestTermination:
    @pytest.mark.anyio
    async def test_turn_limit(self):
        calls = iter(range(100))
        llm = FakeLLM([
            lambda messages: tool_response(ToolCall(id=f"t{next(calls)}", name="pressKey", input={"key": "Tab"}))
            for _ in range(5)
        ])
        loop, _ = make_loop(llm, actuator=FakeActuator(), max_turns=3)

        result = await loop.run(USER)

        assert result.status == LoopStatus.TURN_LIMIT
        assert result.turns == 3
        assert len(llm.calls) == 3
        assert result.text.endswith(Markers.TURN_LIMIT_NOTICE.format(max_turns=3))

    @pytest.mark.anyio
    async def test_cancel_skips_remaining_tools(self):
        token = CancelToken()
        actuator = FakeActuator()
        llm = FakeLLM([
            tool_response(
                ToolCall(id="a", name="pressKey", input={"key": "Enter"}),
                ToolCall(id="b", name="pressKey", input={"key": "Tab"}),
            ),
            text_response("never sent"),
        ])
        loop, _ = make_loop(llm, actuator=actuator, on_tool_start=lambda name, origin: token.cancel())

        result = await loop.run(USER, cancel_token=token)

        assert result.status == LoopStatus.CANCELLED
        assert len(llm.calls) == 1
        assert actuator.actions == [("pressKey", "Enter")]
        skipped = tool_results(result.messages[-1])[1]
        assert skipped["is_error"] is True
        assert json.loads(skipped["content"]) == {"error": "pressKey: Cancelled by user"}
        assert result.text.endswith(Markers.CANCELLED_NOTICE)

    @pytest.mark.anyio
    async def test_cancel_before_start(self):
        token = CancelToken()
        token.cancel()
        llm = FakeLLM()
        loop, _ = make_loop(llm)

        result = await loop.run(USER, cancel_token=token)

        assert result.status == LoopStatus.CANCELLED
        assert llm.calls == []


class TestHistoryInLoop:
    @pytest.mark.anyio
    async def test_requests_are_trimmed_without_orphans(self):
        calls = iter(range(100))
        llm = FakeLLM([
            lambda messages: tool_response(ToolCall(id=f"t{next(calls)}", name="pressKey", input={"key": "Tab"}))
            for _ in range(6)
        ])
        history = HistoryManager(HistoryConfig(loop_history_length=4))
        loop, _ = make_loop(llm, actuator=FakeActuator(), max_turns=6, history=history)

        await loop.run(USER)

        for call in llm.calls:
            messages = call["messages"]
            assert len(messages) <= 5
            first = messages[0]
            assert not (
                first["role"] == "user"
                and isinstance(first["content"], list)
                and any(b.get("type") == "tool_result" for b in first["content"])
            )

    @pytest.mark.anyio
    async def test_summarization_replaces_old_messages(self):
        llm = FakeLLM([text_response("Fine")], summary="Earlier we talked about Berlin.")
        history = HistoryManager(HistoryConfig(enable_summarization=True, summarization_threshold=4))
        loop, _ = make_loop(llm, history=history)
        long_history = []
        for i in range(5):
            long_history.append({"role": "user", "content": f"q{i}"})
            long_history.append({"role": "assistant", "content": f"a{i}"})

        await loop.run(long_history + USER)

        sent = llm.calls[0]["messages"]
        assert "Earlier we talked about Berlin." in sent[0]["content"]
        assert sent[-1] == USER[0]
        assert len(sent) == 7


class TestCancelToken:
    def test_token_states(self):
        token = CancelToken()
        assert not token.cancelled
        token.raise_if_cancelled()

        token.cancel()
        token.cancel()

        assert token.cancelled
        with pytest.raises(LoopCancelledError):
            token.raise_if_cancelled()
