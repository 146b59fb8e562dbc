"""
ConversationLoop - многоходовый цикл tool calling.

Один запуск: модель отвечает, инструменты из ответа выполняются
последовательно, результаты возвращаются модели. Так до ответа
без инструментов, отмены или лимита ходов.
"""

import asyncio
import inspect
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..ai.llm_client import LLMClient, LLMResponse
from ..ai.tools import ToolOrigin
from ..browser.screenshot import ScreenshotNormalizer
from ..config import HistoryConfig, LoopConfig
from ..constants import Markers
from ..errors import LoopCancelledError, ToolExecutionError, ToolTimeoutError, sanitize_error
from .history import HistoryManager
from .state import CancelToken, LoopResult, LoopState, LoopStatus
from .tool_router import ToolRouter, create_tool_error_message, format_tool_result


logger = logging.getLogger(__name__)


Callback = Optional[Callable[..., Union[None, Awaitable[None]]]]

_MARKUP_PATTERNS = [
    re.compile(r"<function_calls>[\s\S]*?</function_calls>", re.IGNORECASE),
    re.compile(r"<invoke\s+name=\"[^\"]*\">[\s\S]*?</invoke>", re.IGNORECASE),
    re.compile(r"<parameter\s+name=\"[^\"]*\">[^<]*</parameter>", re.IGNORECASE),
    re.compile(r"<tool_call>[\s\S]*?</tool_call>", re.IGNORECASE),
    re.compile(r"<function(?:\s[^>]*)?>[\s\S]*?</function>", re.IGNORECASE),
    # Незакрытые остатки
    re.compile(r"</?(?:function_calls|invoke|parameter|tool_call|function)\b[^>]*>", re.IGNORECASE),
]

_NO_BROWSER_PATTERNS = [
    re.compile(r"\[Executing:\s*[^\]]+\]", re.IGNORECASE),
    re.compile(r"I'll navigate to[^.]*\.", re.IGNORECASE),
    re.compile(r"I've successfully navigated to[^.]*\.", re.IGNORECASE),
]

_BLANK_RUNS = re.compile(r"\n\s*\n\s*\n+")

NAVIGATION_FAILED = (
    "Navigation failed: {error}. The page did not change. "
    "Please verify the URL is correct and try again."
)
NAVIGATION_EXECUTED = (
    "Navigation command executed. IMPORTANT: You must verify navigation succeeded "
    "by taking a screenshot to confirm the page actually changed."
)


def sanitize_text(text: str, browser_tools_enabled: bool = True) -> str:
    """
    Убирает из текста модели галлюцинированную разметку вызовов.

    Args:
        text: Текст ответа
        browser_tools_enabled: При False также убираются фразы
            о навигации и заголовки "[Executing: ...]"

    Returns:
        str: Очищенный текст (может быть пустым)
    """
    for pattern in _MARKUP_PATTERNS:
        text = pattern.sub("", text)
    if not browser_tools_enabled:
        for pattern in _NO_BROWSER_PATTERNS:
            text = pattern.sub("", text)
    return _BLANK_RUNS.sub("\n\n", text).strip()


def tool_result_block(
    tool_use_id: str,
    content: Union[str, List[Dict[str, Any]]],
    is_error: bool = False
) -> Dict[str, Any]:
    """Блок tool_result для user сообщения."""
    block: Dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": content,
    }
    if is_error:
        block["is_error"] = True
    return block


async def _emit(callback: Callback, *args: Any) -> None:
    """Вызывает callback (sync или async); ошибки UI не ломают цикл."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Callback {getattr(callback, '__name__', callback)} failed: {e}")


class ConversationLoop:
    """
    Цикл tool calling одного запуска.

    Attributes:
        llm_client: Клиент Chat Completion API
        router: Каталог и маршрутизация инструментов
        history: Политика обрезки истории
        normalizer: Нормализатор скриншотов

    Example:
        ```python
        loop = ConversationLoop(llm_client, router, history, normalizer,
                                on_text=lambda chunk: print(chunk, end=""))
        result = await loop.run(
            [{"role": "user", "content": "Какая погода в Берлине?"}],
            router.tools_for_api(),
            build_system_prompt(),
        )
        print(result.status, result.text)
        ```
    """

    def __init__(
        self,
        llm_client: LLMClient,
        router: ToolRouter,
        history: Optional[HistoryManager] = None,
        normalizer: Optional[ScreenshotNormalizer] = None,
        config: Optional[LoopConfig] = None,
        on_text: Callback = None,
        on_tool_start: Callback = None,
        on_tool_result: Callback = None
    ):
        """
        Args:
            llm_client: Клиент LLM
            router: ToolRouter с собранным каталогом
            history: HistoryManager (по умолчанию unified trim)
            normalizer: ScreenshotNormalizer (по умолчанию 1280x800)
            config: Настройки цикла
            on_text: Callback(chunk) для потокового текста
            on_tool_start: Callback(name, origin) перед вызовом инструмента
            on_tool_result: Callback(name, result) после вызова
        """
        self.llm_client = llm_client
        self.router = router
        self.history = history or HistoryManager(HistoryConfig())
        self.normalizer = normalizer or ScreenshotNormalizer()
        self.config = config or LoopConfig()
        self.on_text = on_text
        self.on_tool_start = on_tool_start
        self.on_tool_result = on_tool_result

    async def _say(self, state: LoopState, text: str) -> None:
        state.text_parts.append(text)
        await _emit(self.on_text, text)

    async def _prepare_messages(self, state: LoopState) -> List[Dict[str, Any]]:
        # Сжатая история заменяет рабочую, чтобы не сжимать её каждый ход
        state.messages, request = await self.history.prepare_turn(state.messages, self.llm_client)
        return request

    async def run(
        self,
        initial_messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None
    ) -> LoopResult:
        """
        Выполняет цикл до завершения.

        Args:
            initial_messages: История с последним сообщением пользователя
            tools: Инструменты в формате API (по умолчанию каталог router)
            system_prompt: Системный промпт
            cancel_token: Токен отмены

        Returns:
            LoopResult: Текст и статус запуска

        Raises:
            TransportError: Endpoint LLM недоступен или отклонил запрос
        """
        state = LoopState(max_turns=self.config.max_turns, messages=list(initial_messages))
        if tools is None:
            tools = self.router.tools_for_api()
        cancel_token = cancel_token or CancelToken()

        logger.info(f"▶️ Запуск цикла: {len(tools)} инструментов, лимит {state.max_turns} ходов")

        while state.has_turns_left:
            if cancel_token.cancelled:
                await self._say(state, Markers.CANCELLED_NOTICE)
                return state.finish(LoopStatus.CANCELLED)

            state.turn += 1
            messages = await self._prepare_messages(state)
            logger.debug(f"Ход {state.turn}: {len(messages)} сообщений в запросе")

            response = await self.llm_client.send_message(
                messages=messages,
                tools=tools,
                system_prompt=system_prompt,
            )

            text = sanitize_text(response.content, self.config.browser_tools_enabled)
            if text:
                await self._say(state, text)

            if not response.tool_calls:
                if not state.text:
                    await self._say(state, Markers.EMPTY_COMPLETION)
                state.messages.append({
                    "role": "assistant",
                    "content": text or Markers.EMPTY_COMPLETION,
                })
                return state.finish(LoopStatus.COMPLETED)

            results = await self._execute_tool_calls(state, response, cancel_token)

            state.messages.append(self._assistant_message(response, text))
            state.messages.append({"role": "user", "content": results})

        logger.warning(f"Достигнут лимит ходов ({state.max_turns})")
        await self._say(state, Markers.TURN_LIMIT_NOTICE.format(max_turns=state.max_turns))
        return state.finish(LoopStatus.TURN_LIMIT)

    def _assistant_message(self, response: LLMResponse, text: str) -> Dict[str, Any]:
        """Assistant сообщение: очищенный текст и tool_use блоки в исходном порядке."""
        content: List[Dict[str, Any]] = []
        if text:
            content.append({"type": "text", "text": text})
        for block in response.blocks:
            if block.get("type") == "tool_use":
                content.append(block)
        if not response.blocks:
            content.extend(
                {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.input}
                for tc in response.tool_calls
            )
        return {"role": "assistant", "content": content}

    async def _execute_tool_calls(
        self,
        state: LoopState,
        response: LLMResponse,
        cancel_token: CancelToken
    ) -> List[Dict[str, Any]]:
        """Выполняет вызовы по очереди, по одному tool_result на вызов."""
        results: List[Dict[str, Any]] = []

        for index, tool_call in enumerate(response.tool_calls):
            try:
                cancel_token.raise_if_cancelled()
            except LoopCancelledError as e:
                logger.info(f"Пропуск {tool_call.name}: остановлено пользователем")
                results.append(tool_result_block(
                    tool_call.id,
                    create_tool_error_message(tool_call.name, e),
                    is_error=True,
                ))
                continue

            if index > 0 and self.config.inter_tool_delay > 0:
                await asyncio.sleep(self.config.inter_tool_delay)

            results.append(await self._execute_one(state, tool_call.id, tool_call.name, tool_call.input))

        return results

    async def _execute_one(
        self,
        state: LoopState,
        tool_use_id: str,
        name: str,
        arguments: Dict[str, Any]
    ) -> Dict[str, Any]:
        origin = self.router.get_origin(name)
        suffix = {ToolOrigin.MCP: " (MCP tool)", ToolOrigin.A2A: " (A2A tool)"}.get(origin, "")

        await _emit(
            self.on_text,
            f"\n[Executing: {name}]{suffix}\n{json.dumps(arguments, ensure_ascii=False)}\n",
        )
        await _emit(self.on_tool_start, name, origin)
        state.tool_calls += 1
        logger.info(f"🔧 {name}{suffix} {arguments}")

        try:
            result = await self.router.execute(name, arguments)
            block = self._result_to_block(tool_use_id, name, arguments, result)
        except ToolTimeoutError as e:
            logger.warning(f"Таймаут инструмента {name}: {e}")
            result = {"error": str(e), "timeout": True}
            block = tool_result_block(
                tool_use_id,
                json.dumps({"error": f"{name}: {e}", "timeout": True}, ensure_ascii=False),
                is_error=True,
            )
        except ToolExecutionError as e:
            logger.error(f"Инструмент {name} завершился ошибкой: {e}")
            result = {"error": str(e)}
            block = tool_result_block(tool_use_id, create_tool_error_message(name, e), is_error=True)
        except Exception as e:
            logger.error(f"Инструмент {name} упал: {sanitize_error(str(e))}", exc_info=True)
            result = {"error": sanitize_error(str(e))}
            block = tool_result_block(
                tool_use_id,
                create_tool_error_message(name, sanitize_error(str(e))),
                is_error=True,
            )

        await _emit(self.on_tool_result, name, result)
        return block

    def _result_to_block(
        self,
        tool_use_id: str,
        name: str,
        arguments: Dict[str, Any],
        result: Any
    ) -> Dict[str, Any]:
        """Превращает результат инструмента в tool_result блок."""
        is_actuator = self.router.get_origin(name) == ToolOrigin.ACTUATOR

        if is_actuator and isinstance(result, dict):
            failed = result.get("success") is False or bool(result.get("error"))

            if name == "screenshot" and not failed and result.get("image"):
                viewport = result.get("viewport") or {}
                size = None
                if viewport.get("width") and viewport.get("height"):
                    size = (int(viewport["width"]), int(viewport["height"]))
                shot = self.normalizer.normalize(result["image"], viewport=size)
                return tool_result_block(tool_use_id, shot.to_content_blocks())

            if name == "navigate":
                if failed:
                    error = result.get("error") or "Navigation failed for unknown reason"
                    return tool_result_block(tool_use_id, json.dumps({
                        "success": False,
                        "error": NAVIGATION_FAILED.format(error=error),
                        "attemptedUrl": result.get("url") or arguments.get("url"),
                    }, ensure_ascii=False), is_error=True)
                return tool_result_block(tool_use_id, json.dumps({
                    "success": True,
                    "url": result.get("url"),
                    "message": NAVIGATION_EXECUTED,
                }, ensure_ascii=False))

            if failed:
                error = result.get("error") or "Tool execution failed"
                return tool_result_block(tool_use_id, create_tool_error_message(name, error), is_error=True)

        return tool_result_block(tool_use_id, format_tool_result(result))
