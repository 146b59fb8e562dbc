"""
ToolRouter - единый каталог инструментов и маршрутизация вызовов.

Собирает инструменты из трёх источников (actuator, MCP серверы,
A2A агенты) в один список для модели и хранит индекс
имя -> (источник, владелец) для вызова.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Union

from ..ai.tools import ToolDefinition, ToolOrigin, actuator_tool_definitions
from ..errors import ToolCollisionError, ToolExecutionError, ToolNotFoundError


logger = logging.getLogger(__name__)


def format_tool_result(result: Any) -> str:
    """
    Текст результата инструмента для tool_result.

    Args:
        result: Строка, dict с result/audioLink или любой JSON-совместимый объект

    Returns:
        str: Текст для модели
    """
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("result"), str):
        text = result["result"]
        if result.get("audioLink"):
            text += f"\nAudio: {result['audioLink']}"
        return text
    return json.dumps(result, ensure_ascii=False, default=str)


def create_tool_error_message(tool_name: str, error: Union[str, Exception]) -> str:
    """Сообщение об ошибке инструмента в формате, понятном модели."""
    return json.dumps({"error": f"{tool_name}: {error}"}, ensure_ascii=False)


class ToolRouter:
    """
    Каталог инструментов одной сессии.

    Порядок регистрации: actuator, затем MCP серверы (в порядке
    подключения), затем A2A агенты. При совпадении имён побеждает
    последняя регистрация, коллизия логируется. В режиме
    collision_policy="error" коллизия - ошибка.

    Example:
        ```python
        router = ToolRouter(actuator, mcp_manager, a2a_registry)
        catalog = router.build_catalog()
        result = await router.execute("get_weather", {"city": "Berlin"})
        ```
    """

    def __init__(
        self,
        actuator: Any = None,
        mcp_manager: Any = None,
        a2a_registry: Any = None,
        collision_policy: str = "last_wins"
    ):
        self.actuator = actuator
        self.mcp_manager = mcp_manager
        self.a2a_registry = a2a_registry
        self.collision_policy = collision_policy
        self._index: Dict[str, ToolDefinition] = {}

    def build_catalog(self, include_actuator: bool = True) -> List[ToolDefinition]:
        """
        Пересобирает каталог и индекс маршрутизации.

        Args:
            include_actuator: Включать ли инструменты браузера

        Returns:
            List[ToolDefinition]: Каталог с уникальными именами

        Raises:
            ToolCollisionError: Коллизия имён при collision_policy="error"
        """
        candidates: List[ToolDefinition] = []
        if include_actuator and self.actuator is not None:
            candidates.extend(actuator_tool_definitions())
        if self.mcp_manager is not None:
            candidates.extend(self.mcp_manager.get_all_tools())
        if self.a2a_registry is not None:
            candidates.extend(self.a2a_registry.get_tool_definitions())

        index: Dict[str, ToolDefinition] = {}
        for tool in candidates:
            previous = index.get(tool.name)
            if previous is not None:
                message = (
                    f"Tool name collision: '{tool.name}' from "
                    f"{tool.owner_name or tool.origin.value} shadows "
                    f"{previous.owner_name or previous.origin.value}"
                )
                if self.collision_policy == "error":
                    raise ToolCollisionError(message)
                logger.warning(message)
                # Переставляем в конец, чтобы порядок каталога отражал победителя
                del index[tool.name]
            index[tool.name] = tool

        self._index = index
        logger.debug(
            f"Каталог инструментов: {len(index)} "
            f"({', '.join(sorted(index))})"
        )
        return list(index.values())

    @property
    def catalog(self) -> List[ToolDefinition]:
        return list(self._index.values())

    def tools_for_api(self) -> List[Dict[str, Any]]:
        """Каталог в формате tools[] для Messages API."""
        return [tool.to_api() for tool in self._index.values()]

    def resolve(self, name: str) -> ToolDefinition:
        """
        Находит инструмент по имени.

        Raises:
            ToolNotFoundError: Инструмента нет в текущем каталоге
        """
        tool = self._index.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Unknown tool: {name}")
        return tool

    def get_origin(self, name: str) -> Optional[ToolOrigin]:
        tool = self._index.get(name)
        return tool.origin if tool else None

    def validate_arguments(self, tool: ToolDefinition, arguments: Dict[str, Any]) -> None:
        """
        Проверяет наличие обязательных параметров.

        Raises:
            ToolExecutionError: Не хватает обязательных параметров
        """
        required = tool.input_schema.get("required") or []
        missing = [
            key for key in required
            if key not in arguments or arguments[key] is None
        ]
        if missing:
            raise ToolExecutionError(f"Missing required parameters: {', '.join(missing)}")

    async def execute(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """
        Вызывает инструмент у его владельца.

        Args:
            name: Имя инструмента
            arguments: Параметры вызова

        Returns:
            Any: Результат владельца (dict для actuator, str/dict для MCP, str для A2A)

        Raises:
            ToolNotFoundError: Инструмент не найден
            ToolExecutionError: Ошибка выполнения (и подклассы)
        """
        arguments = arguments or {}
        tool = self.resolve(name)
        self.validate_arguments(tool, arguments)

        match tool.origin:
            case ToolOrigin.ACTUATOR:
                if self.actuator is None:
                    raise ToolExecutionError("Browser actuator is not available")
                return await self.actuator.execute(name, arguments)

            case ToolOrigin.MCP:
                return await self.mcp_manager.execute_tool_call(
                    name, arguments, server_id=tool.owner_id
                )

            case ToolOrigin.A2A:
                task = arguments.get("task")
                if not isinstance(task, str) or not task.strip():
                    raise ToolExecutionError("Parameter 'task' must be a non-empty string")
                return await self.a2a_registry.execute_task(tool.owner_id, task)

        raise ToolNotFoundError(f"Unsupported tool origin for {name}: {tool.origin}")

    def describe_tools(self, origins: Optional[List[ToolOrigin]] = None) -> str:
        """Одна строка на инструмент: '- name: description'."""
        lines = []
        for tool in self._index.values():
            if origins is not None and tool.origin not in origins:
                continue
            description = (tool.description or "No description available").strip().splitlines()[0]
            lines.append(f"  - {tool.name}: {description}")
        return "\n".join(lines)
