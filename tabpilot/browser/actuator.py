"""
Actuator - набор примитивов управления браузером для модели.

Базовый класс маршрутизирует имя инструмента на метод.
Конкретная реализация на Playwright - в controller.py.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..errors import ToolExecutionError


logger = logging.getLogger(__name__)


ActionResult = Dict[str, Any]


class BrowserError(ToolExecutionError):
    """Базовое исключение для ошибок браузера."""
    pass


class ElementNotFoundError(BrowserError):
    """Элемент не найден на странице."""
    pass


class NavigationError(BrowserError):
    """Ошибка навигации."""
    pass


class Actuator(ABC):
    """
    Примитивы браузера, доступные модели как инструменты.

    Каждый примитив возвращает {"success": True, ...}. Ошибки
    BrowserError превращаются в {"error": msg} в execute().

    Example:
        ```python
        result = await actuator.execute("navigate", {"url": "example.com"})
        # {'success': True, 'url': 'https://example.com/'}
        ```
    """

    async def start(self) -> None:
        """Подготовка ресурсов (по умолчанию ничего)."""

    async def close(self) -> None:
        """Освобождение ресурсов (по умолчанию ничего)."""

    @abstractmethod
    async def navigate(self, url: str) -> ActionResult:
        ...

    @abstractmethod
    async def click_element(
        self,
        selector: Optional[str] = None,
        text: Optional[str] = None
    ) -> ActionResult:
        ...

    @abstractmethod
    async def click(self, x: float, y: float) -> ActionResult:
        ...

    @abstractmethod
    async def type_text(self, text: str, selector: Optional[str] = None) -> ActionResult:
        ...

    @abstractmethod
    async def scroll(self, direction: str = "down", amount: int = 500) -> ActionResult:
        ...

    @abstractmethod
    async def get_page_context(self) -> ActionResult:
        ...

    @abstractmethod
    async def screenshot(self) -> ActionResult:
        ...

    @abstractmethod
    async def press_key(self, key: str) -> ActionResult:
        ...

    async def execute(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ActionResult:
        """
        Вызывает примитив по имени инструмента.

        Args:
            name: Имя инструмента (navigate, clickElement, click, ...)
            arguments: Параметры из tool_use

        Returns:
            ActionResult: {"success": True, ...} или {"error": msg}
        """
        args = arguments or {}

        try:
            match name:
                case "navigate":
                    return await self.navigate(args.get("url", ""))
                case "clickElement":
                    return await self.click_element(args.get("selector"), args.get("text"))
                case "click":
                    return await self.click(args.get("x", 0), args.get("y", 0))
                case "type":
                    return await self.type_text(args.get("text", ""), args.get("selector"))
                case "scroll":
                    return await self.scroll(args.get("direction", "down"), int(args.get("amount") or 500))
                case "getPageContext":
                    return await self.get_page_context()
                case "screenshot":
                    return await self.screenshot()
                case "pressKey":
                    return await self.press_key(args.get("key", ""))
                case _:
                    return {"error": f"Unknown tool: {name}"}
        except BrowserError as e:
            logger.error(f"Ошибка браузера в {name}: {e}")
            return {"error": str(e)}
