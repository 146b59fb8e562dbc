"""Тесты обрезки и сжатия истории."""

import pytest

from tabpilot.config import HistoryConfig
from tabpilot.constants import Markers
from tabpilot.core.history import (
    HistoryManager,
    is_tool_result_message,
    render_for_summary,
    trim_separate,
    trim_unified,
)
from tests.conftest import FakeLLM


def user(text):
    return {"role": "user", "content": text}


def assistant(text):
    return {"role": "assistant", "content": text}


def tool_use(tool_id, name="get_weather", args=None):
    return {
        "role": "assistant",
        "content": [{"type": "tool_use", "id": tool_id, "name": name, "input": args or {}}],
    }


def tool_result(tool_id, content="ok"):
    return {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": content}],
    }


def screenshot_result(tool_id):
    return tool_result(tool_id, [
        {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"}},
        {"type": "text", "text": "Screenshot size: 10x10 px."},
    ])


class TestTrimUnified:
    def test_short_history_unchanged(self):
        messages = [user("a"), assistant("b")]
        assert trim_unified(messages, 10) == messages

    def test_returns_copy(self):
        messages = [user("a")]
        trimmed = trim_unified(messages, 10)
        trimmed.append(user("b"))
        assert len(messages) == 1

    def test_keeps_last_n(self):
        messages = [user(str(i)) if i % 2 == 0 else assistant(str(i)) for i in range(12)]
        trimmed = trim_unified(messages, 4)
        assert trimmed == messages[-4:]

    def test_extends_back_for_orphan_tool_result(self):
        messages = [
            user("weather?"),
            tool_use("t1"),
            tool_result("t1"),
            assistant("Sunny"),
        ]
        trimmed = trim_unified(messages, 2)

        assert len(trimmed) == 3
        assert trimmed[0] == tool_use("t1")
        assert trimmed[1] == tool_result("t1")

    def test_zero_limit_means_unbounded(self):
        messages = [user(str(i)) for i in range(30)]
        assert trim_unified(messages, 0) == messages

    def test_every_result_has_its_tool_use(self):
        messages = [user("start")]
        for i in range(10):
            messages.append(tool_use(f"t{i}"))
            messages.append(tool_result(f"t{i}"))
        messages.append(assistant("done"))

        for limit in range(1, len(messages)):
            trimmed = trim_unified(messages, limit)
            seen_ids = set()
            for message in trimmed:
                if message["role"] == "assistant" and isinstance(message["content"], list):
                    seen_ids.update(b["id"] for b in message["content"])
                if is_tool_result_message(message):
                    for block in message["content"]:
                        assert block["tool_use_id"] in seen_ids


class TestTrimSeparate:
    def test_old_screenshots_replaced_with_placeholder(self):
        messages = [user("look")]
        for i in range(4):
            messages.append(tool_use(f"s{i}", name="screenshot"))
            messages.append(screenshot_result(f"s{i}"))
        messages.append(assistant("seen"))

        trimmed = trim_separate(messages, chat_limit=50, page_context_limit=2)

        results = [m for m in trimmed if is_tool_result_message(m)]
        assert [r["content"][0]["content"] for r in results[:2]] == [
            Markers.SCREENSHOT_PLACEHOLDER,
            Markers.SCREENSHOT_PLACEHOLDER,
        ]
        for recent in results[2:]:
            assert isinstance(recent["content"][0]["content"], list)

    def test_page_context_placeholder_keeps_url(self):
        messages = [
            user("read"),
            tool_use("p1", name="getPageContext"),
            tool_result("p1", '{"success": true, "pageContext": {"url": "https://a.example"}}'),
            tool_use("p2", name="getPageContext"),
            tool_result("p2", '{"success": true, "pageContext": {"url": "https://b.example"}}'),
        ]

        trimmed = trim_separate(messages, chat_limit=50, page_context_limit=1)

        assert trimmed[2]["content"][0]["content"] == "[Page context: https://a.example]"
        assert "b.example" in trimmed[4]["content"][0]["content"]
        assert messages[2]["content"][0]["content"].startswith("{")

    def test_chat_limit_applies(self):
        messages = [user(str(i)) for i in range(30)]
        assert len(trim_separate(messages, chat_limit=20)) == 20


class TestRenderForSummary:
    def test_blocks_rendered_as_text(self):
        text = render_for_summary([
            user("Find flights"),
            tool_use("t1", name="a2a_travel"),
            tool_result("t1", "3 flights found"),
        ])
        assert "User: Find flights" in text
        assert "[Used tool: a2a_travel]" in text
        assert "[Tool result] 3 flights found" in text


class TestHistoryManager:
    @pytest.mark.anyio
    async def test_summarize_keeps_recent_half(self):
        llm = FakeLLM(summary="They asked about weather.")
        manager = HistoryManager(HistoryConfig(), summary_model="fast-model")
        messages = [user(f"u{i}") if i % 2 == 0 else assistant(f"a{i}") for i in range(10)]

        summarized = await manager.summarize(messages, llm)

        assert len(summarized) == 6
        assert summarized[0]["role"] == "user"
        assert "They asked about weather." in summarized[0]["content"]
        assert summarized[1:] == messages[5:]
        assert llm.completions[0]["model"] == "fast-model"

    @pytest.mark.anyio
    async def test_summarize_failure_returns_original(self):
        llm = FakeLLM(summary=RuntimeError("endpoint down"))
        manager = HistoryManager(HistoryConfig())
        messages = [user(str(i)) for i in range(10)]

        assert await manager.summarize(messages, llm) is messages

    @pytest.mark.anyio
    async def test_summarize_empty_text_returns_original(self):
        llm = FakeLLM(summary="   ")
        manager = HistoryManager(HistoryConfig())
        messages = [user(str(i)) for i in range(10)]

        assert await manager.summarize(messages, llm) is messages

    @pytest.mark.anyio
    async def test_summarize_does_not_orphan_tool_result(self):
        llm = FakeLLM()
        manager = HistoryManager(HistoryConfig())
        messages = [user("a"), tool_use("t1"), tool_result("t1"), assistant("b")]

        summarized = await manager.summarize(messages, llm, keep_recent=2)

        assert not is_tool_result_message(summarized[1])

    @pytest.mark.anyio
    async def test_prepare_summarizes_only_above_threshold(self):
        llm = FakeLLM()
        config = HistoryConfig(enable_summarization=True, summarization_threshold=8)
        manager = HistoryManager(config)

        short = [user(str(i)) for i in range(8)]
        assert await manager.prepare(short, llm) == short
        assert llm.completions == []

        long = [user(str(i)) for i in range(9)]
        prepared = await manager.prepare(long, llm)
        assert len(prepared) == 6
        assert len(llm.completions) == 1

    @pytest.mark.anyio
    async def test_prepare_turn_returns_working_and_request(self):
        llm = FakeLLM()
        config = HistoryConfig(enable_summarization=True, summarization_threshold=8, loop_history_length=3)
        manager = HistoryManager(config)

        working, request = await manager.prepare_turn([user(str(i)) for i in range(9)], llm)

        assert len(working) == 6
        assert working[0]["content"].startswith("[Previous conversation summary]")
        assert request == working[-3:]

    def test_trim_uses_mode(self):
        messages = [user(str(i)) for i in range(30)]
        unified = HistoryManager(HistoryConfig(loop_history_length=5))
        separate = HistoryManager(HistoryConfig(mode="separate", chat_history_length=7))

        assert len(unified.trim(messages)) == 5
        assert len(unified.trim(messages, max_messages=3)) == 3
        assert len(separate.trim(messages)) == 7
