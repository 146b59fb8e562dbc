"""Общие фикстуры и фейки для тестов."""

import asyncio
import base64
import copy
import io
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest
from PIL import Image

from tabpilot.ai.llm_client import LLMResponse, ToolCall
from tabpilot.browser.actuator import Actuator, NavigationError
from tabpilot.config import ServerConfig


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def png_bytes(width: int, height: int, color: str = "white") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_url(width: int, height: int) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes(width, height)).decode("ascii")


def text_response(text: str) -> LLMResponse:
    return LLMResponse(content=text, blocks=[{"type": "text", "text": text}], stop_reason="end_turn")


def tool_response(*calls: ToolCall, text: str = "") -> LLMResponse:
    blocks: List[Dict[str, Any]] = []
    if text:
        blocks.append({"type": "text", "text": text})
    for call in calls:
        blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.input})
    return LLMResponse(content=text, tool_calls=list(calls), blocks=blocks, stop_reason="tool_use")


class FakeLLM:
    """LLM со скриптованными ответами; запоминает каждый запрос."""

    provider = "anthropic"
    model = "fake-model"

    def __init__(self, responses: Optional[List[Any]] = None, summary: Any = "Short summary."):
        self.responses = list(responses or [])
        self.summary = summary
        self.calls: List[Dict[str, Any]] = []
        self.completions: List[Dict[str, Any]] = []
        self.closed = False

    async def send_message(self, messages, tools=None, system_prompt=None, model=None, max_tokens=None):
        self.calls.append({
            "messages": copy.deepcopy(messages),
            "tools": tools,
            "system_prompt": system_prompt,
        })
        item = self.responses.pop(0) if self.responses else text_response("done")
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(messages)
        return item

    async def get_completion(self, prompt, system_prompt=None, model=None, max_tokens=None):
        self.completions.append({"prompt": prompt, "model": model, "max_tokens": max_tokens})
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary

    async def close(self):
        self.closed = True


class FakeActuator(Actuator):
    """Браузер в памяти."""

    def __init__(self, screenshot_size=(1280, 800), viewport=(1280, 800), fail_navigation: bool = False):
        self.screenshot_size = screenshot_size
        self.viewport = viewport
        self.fail_navigation = fail_navigation
        self.actions: List[tuple] = []
        self.started = False
        self.closed = False
        self.url = "about:blank"

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def navigate(self, url):
        self.actions.append(("navigate", url))
        if self.fail_navigation:
            raise NavigationError(f"Failed to load {url}")
        self.url = url
        return {"success": True, "url": url}

    async def click_element(self, selector=None, text=None):
        self.actions.append(("clickElement", selector, text))
        return {"success": True, "selector": selector}

    async def click(self, x, y):
        self.actions.append(("click", x, y))
        return {"success": True, "x": x, "y": y}

    async def type_text(self, text, selector=None):
        self.actions.append(("type", text, selector))
        return {"success": True}

    async def scroll(self, direction="down", amount=500):
        self.actions.append(("scroll", direction, amount))
        return {"success": True, "direction": direction}

    async def get_page_context(self):
        self.actions.append(("getPageContext",))
        return {"success": True, "pageContext": {"url": self.url, "title": "Example"}}

    async def screenshot(self):
        self.actions.append(("screenshot",))
        width, height = self.screenshot_size
        return {
            "success": True,
            "image": png_data_url(width, height),
            "viewport": {"width": self.viewport[0], "height": self.viewport[1]},
        }

    async def press_key(self, key):
        self.actions.append(("pressKey", key))
        return {"success": True, "key": key}


Handler = Callable[[Dict[str, Any], "FakeTransport"], Awaitable[Optional[Dict[str, Any]]]]


class FakeTransport:
    """Транспорт MCP в памяти: handler отвечает на каждое сообщение."""

    def __init__(self, handler: Handler, url: str = "", headers: Optional[Dict[str, str]] = None):
        self.handler = handler
        self.url = url
        self.headers = headers or {}
        self.on_message = None
        self.sent: List[Dict[str, Any]] = []
        self.partial: Dict[Any, str] = {}
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def send(self, message):
        self.sent.append(message)
        reply = await self.handler(message, self)
        if reply is not None and self.on_message is not None:
            self.on_message(reply)

    def partial_buffer(self, request_id):
        return self.partial.get(request_id, "")

    def clear_partial(self, request_id):
        self.partial.pop(request_id, None)

    async def close(self):
        self.closed = True


def mcp_handler(
    tools: List[Dict[str, Any]],
    call: Optional[Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = None,
    list_delay: float = 0.0,
    init_delay: float = 0.0
) -> Handler:
    """Handler простого MCP сервера."""

    async def handler(message, transport):
        if "id" not in message:
            return None
        method = message.get("method")
        reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"]}

        if method == "initialize":
            if init_delay:
                await asyncio.sleep(init_delay)
            reply["result"] = {"protocolVersion": "2025-03-26", "serverInfo": {"name": "fake"}}
        elif method == "tools/list":
            if list_delay:
                await asyncio.sleep(list_delay)
            reply["result"] = {"tools": tools}
        elif method == "tools/call":
            if call is not None:
                reply["result"] = await call(message["params"])
            else:
                reply["result"] = {"content": [{"type": "text", "text": f"ok:{message['params']['name']}"}]}
        else:
            reply["error"] = {"code": -32601, "message": "Method not found"}
        return reply

    return handler


def mcp_server_config(server_id: str = "weather", **kwargs: Any) -> ServerConfig:
    data = {
        "id": server_id,
        "name": kwargs.pop("name", server_id.title()),
        "url": kwargs.pop("url", f"http://localhost:9000/{server_id}"),
        "protocol": "mcp",
    }
    data.update(kwargs)
    return ServerConfig(**data)


WEATHER_TOOL = {
    "name": "get_weather",
    "description": "Current weather for a city",
    "inputSchema": {
        "type": "object",
        "properties": {"city": {"type": "string"}},
        "required": ["city"],
    },
}
