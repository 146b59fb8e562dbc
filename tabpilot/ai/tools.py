"""
Определения инструментов для Claude function calling.

Этот модуль содержит:
- ACTUATOR_TOOLS: фиксированные инструменты браузера
- ToolDefinition: единое представление инструмента любого происхождения
- Нормализацию input schema MCP инструментов (один раз, при получении)
- Синтез инструментов для A2A агентов
"""

import copy
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class ToolOrigin(Enum):
    """Откуда пришёл инструмент."""
    ACTUATOR = "actuator"
    MCP = "mcp"
    A2A = "a2a"


@dataclass
class ToolDefinition:
    """
    Инструмент в каталоге, который видит модель.

    Attributes:
        name: Имя (уникально в пределах одного каталога)
        description: Описание для модели
        input_schema: JSON Schema параметров, корень всегда type=object
        origin: Источник инструмента
        owner_id: ID MCP сервера или A2A агента (None для actuator)
        owner_name: Отображаемое имя владельца
    """
    name: str
    description: str
    input_schema: Dict[str, Any]
    origin: ToolOrigin = ToolOrigin.ACTUATOR
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        """Формат tools[] для Messages API."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


ACTUATOR_TOOLS: List[Dict[str, Any]] = [
    {
        "name": "navigate",
        "description": "Navigate to a specific URL",
        "input_schema": {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The URL to navigate to (must include http:// or https://)"
                }
            },
            "required": ["url"]
        }
    },
    {
        "name": "clickElement",
        "description": "Click an element using CSS selector or text content. PREFERRED method.",
        "input_schema": {
            "type": "object",
            "properties": {
                "selector": {
                    "type": "string",
                    "description": "CSS selector for the element"
                },
                "text": {
                    "type": "string",
                    "description": "Alternative: text content to search for"
                }
            }
        }
    },
    {
        "name": "click",
        "description": (
            "Click at viewport coordinates. Last resort only. If the coordinates "
            "come from a screenshot, multiply them by the scale factors reported "
            "with that screenshot."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "x": {"type": "number", "description": "X coordinate (viewport pixels)"},
                "y": {"type": "number", "description": "Y coordinate (viewport pixels)"}
            },
            "required": ["x", "y"]
        }
    },
    {
        "name": "type",
        "description": "Type text into input field",
        "input_schema": {
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "Text to type"},
                "selector": {"type": "string", "description": "CSS selector for input"}
            },
            "required": ["text"]
        }
    },
    {
        "name": "scroll",
        "description": "Scroll the page",
        "input_schema": {
            "type": "object",
            "properties": {
                "direction": {
                    "type": "string",
                    "enum": ["up", "down"],
                    "description": "Scroll direction"
                },
                "amount": {"type": "number", "description": "Pixels to scroll (default: 500)"}
            },
            "required": ["direction"]
        }
    },
    {
        "name": "getPageContext",
        "description": "Get page info: URL, title, visible text and interactive elements. Call first.",
        "input_schema": {
            "type": "object",
            "properties": {}
        }
    },
    {
        "name": "screenshot",
        "description": "Take screenshot. Last resort if DOM fails.",
        "input_schema": {
            "type": "object",
            "properties": {}
        }
    },
    {
        "name": "pressKey",
        "description": "Press key (Enter, Tab, Escape, etc)",
        "input_schema": {
            "type": "object",
            "properties": {
                "key": {"type": "string", "description": "Key name"}
            },
            "required": ["key"]
        }
    }
]

ACTUATOR_TOOL_NAMES = frozenset(tool["name"] for tool in ACTUATOR_TOOLS)

# Ключи, под которыми разные MCP серверы отдают схему параметров
_SCHEMA_KEYS = ("inputSchema", "input_schema", "parameters", "schema")


def actuator_tool_definitions() -> List[ToolDefinition]:
    """ACTUATOR_TOOLS в виде ToolDefinition."""
    return [
        ToolDefinition(
            name=tool["name"],
            description=tool["description"],
            input_schema=copy.deepcopy(tool["input_schema"]),
            origin=ToolOrigin.ACTUATOR,
        )
        for tool in ACTUATOR_TOOLS
    ]


def normalize_input_schema(raw_tool: Dict[str, Any]) -> Dict[str, Any]:
    """
    Приводит схему параметров MCP инструмента к одному виду.

    Принимает inputSchema / input_schema / parameters / schema,
    разворачивает обёртку {"jsonSchema": {...}}, гарантирует
    type=object и наличие properties.

    Args:
        raw_tool: Инструмент в том виде, как его вернул сервер

    Returns:
        Dict: Каноническая JSON Schema

    Example:
        ```python
        normalize_input_schema({"name": "x", "parameters": {"properties": {"q": {}}}})
        # {'type': 'object', 'properties': {'q': {}}}
        ```
    """
    schema: Any = None
    for key in _SCHEMA_KEYS:
        if isinstance(raw_tool.get(key), dict):
            schema = raw_tool[key]
            break

    if isinstance(schema, dict) and isinstance(schema.get("jsonSchema"), dict):
        schema = schema["jsonSchema"]

    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}}

    normalized = copy.deepcopy(schema)
    normalized["type"] = "object"
    if not isinstance(normalized.get("properties"), dict):
        normalized["properties"] = {}
    if "required" in normalized and not isinstance(normalized["required"], list):
        del normalized["required"]
    return normalized


def tool_from_mcp(raw_tool: Dict[str, Any], server_id: str, server_name: str) -> ToolDefinition:
    """Создаёт ToolDefinition из элемента ответа tools/list."""
    name = str(raw_tool.get("name", "")).strip()
    if not name:
        raise ValueError("MCP tool without name")
    return ToolDefinition(
        name=name,
        description=raw_tool.get("description") or f"Tool: {name}",
        input_schema=normalize_input_schema(raw_tool),
        origin=ToolOrigin.MCP,
        owner_id=server_id,
        owner_name=server_name,
    )


def make_a2a_tool_name(display_name: str) -> str:
    """
    Имя инструмента для A2A агента.

    Example:
        ```python
        make_a2a_tool_name("Travel Agent v2")  # 'a2a_travel_agent_v2'
        ```
    """
    return "a2a_" + re.sub(r"[^a-z0-9_]", "_", display_name.lower())


def a2a_tool_definition(agent_id: str, display_name: str) -> ToolDefinition:
    """Синтезирует инструмент с одним параметром task для A2A агента."""
    return ToolDefinition(
        name=make_a2a_tool_name(display_name),
        description=(
            f"Execute a task on the {display_name} agent (A2A protocol). "
            f"Provide a natural language task description."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "task": {
                    "type": "string",
                    "description": "The task or question to send to the agent"
                }
            },
            "required": ["task"]
        },
        origin=ToolOrigin.A2A,
        owner_id=agent_id,
        owner_name=display_name,
    )
