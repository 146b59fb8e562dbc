"""
HistoryManager - ограничение и сжатие истории сообщений.

Отвечает за:
- Unified trim: последние N сообщений без разрыва пары tool_use/tool_result
- Separate-track trim: отдельные лимиты для чата и для page context,
  тяжёлые payload заменяются короткими текстовыми заглушками
- Summarization старой половины истории быстрой моделью
"""

import copy
import json
import logging
import math
from typing import Any, Dict, List, Optional, Protocol, Tuple

from ..config import HistoryConfig
from ..constants import Limits, Markers


logger = logging.getLogger(__name__)


Message = Dict[str, Any]

PAGE_CONTEXT_TOOLS = {"screenshot", "getPageContext"}

SUMMARY_PROMPT = (
    "Please provide a concise summary of this conversation history. "
    "Focus on key actions taken, decisions made, and important context that "
    "would be useful for continuing the conversation. "
    "Keep it under {max_words} words.\n\n"
    "Conversation to summarize:\n{conversation}"
)


class CompletionClient(Protocol):
    """То, что HistoryManager требует от LLM клиента."""

    async def get_completion(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        ...


def _blocks(message: Message) -> List[Dict[str, Any]]:
    content = message.get("content")
    if isinstance(content, list):
        return [b for b in content if isinstance(b, dict)]
    return []


def is_tool_result_message(message: Message) -> bool:
    """True если user сообщение несёт tool_result блоки (и без своего tool_use невалидно)."""
    blocks = _blocks(message)
    return (
        message.get("role") == "user"
        and bool(blocks)
        and any(b.get("type") == "tool_result" for b in blocks)
    )


def trim_unified(messages: List[Message], max_messages: int) -> List[Message]:
    """
    Оставляет последние max_messages сообщений.

    Если первое оставленное сообщение - это tool_result без своего
    tool_use, окно расширяется назад на одно сообщение.

    Args:
        messages: История
        max_messages: Размер окна (<= 0 означает без ограничений)

    Returns:
        List[Message]: Новый список (исходный не меняется)
    """
    if max_messages <= 0 or len(messages) <= max_messages:
        return list(messages)

    start = len(messages) - max_messages
    if start > 0 and is_tool_result_message(messages[start]):
        start -= 1

    trimmed = messages[start:]
    logger.debug(f"Unified trim: {len(messages)} -> {len(trimmed)} messages")
    return trimmed


def _tool_names_by_id(messages: List[Message]) -> Dict[str, str]:
    names: Dict[str, str] = {}
    for message in messages:
        for block in _blocks(message):
            if block.get("type") == "tool_use":
                names[block.get("id", "")] = block.get("name", "")
    return names


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            b.get("text", "") for b in content
            if isinstance(b, dict) and b.get("type") == "text"
        )
    return ""


def _extract_url(text: str) -> str:
    """Достаёт url из JSON результата getPageContext или из текста с 'URL:'."""
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return str(data.get("url") or data.get("pageContext", {}).get("url") or "unknown")
    except (ValueError, TypeError, AttributeError):
        pass
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.lower().startswith("url:"):
            return stripped[4:].strip()
    return "unknown"


def _is_page_context_message(message: Message, tool_names: Dict[str, str]) -> bool:
    for block in _blocks(message):
        kind = block.get("type")
        if kind == "image":
            return True
        if kind == "text" and block.get("text", "").startswith(Markers.PAGE_CONTEXT_HEADER):
            return True
        if kind == "tool_result":
            if tool_names.get(block.get("tool_use_id", "")) in PAGE_CONTEXT_TOOLS:
                return True
            if any(
                isinstance(inner, dict) and inner.get("type") == "image"
                for inner in (block.get("content") if isinstance(block.get("content"), list) else [])
            ):
                return True
    if isinstance(message.get("content"), str):
        return message["content"].startswith(Markers.PAGE_CONTEXT_HEADER)
    return False


def _strip_payload(message: Message, tool_names: Dict[str, str]) -> Message:
    """Заменяет изображения и page context текстовыми заглушками."""
    stripped = copy.deepcopy(message)

    if isinstance(stripped.get("content"), str):
        text = stripped["content"]
        if text.startswith(Markers.PAGE_CONTEXT_HEADER):
            stripped["content"] = Markers.PAGE_CONTEXT_PLACEHOLDER.format(url=_extract_url(text))
        return stripped

    new_blocks = []
    for block in _blocks(stripped):
        kind = block.get("type")
        if kind == "image":
            new_blocks.append({"type": "text", "text": Markers.SCREENSHOT_PLACEHOLDER})
        elif kind == "text" and block.get("text", "").startswith(Markers.PAGE_CONTEXT_HEADER):
            url = _extract_url(block["text"])
            new_blocks.append({"type": "text", "text": Markers.PAGE_CONTEXT_PLACEHOLDER.format(url=url)})
        elif kind == "tool_result":
            name = tool_names.get(block.get("tool_use_id", ""))
            inner = block.get("content")
            has_image = isinstance(inner, list) and any(
                isinstance(b, dict) and b.get("type") == "image" for b in inner
            )
            if name == "screenshot" or has_image:
                block["content"] = Markers.SCREENSHOT_PLACEHOLDER
            elif name == "getPageContext":
                url = _extract_url(_text_of(inner))
                block["content"] = Markers.PAGE_CONTEXT_PLACEHOLDER.format(url=url)
            new_blocks.append(block)
        else:
            new_blocks.append(block)

    stripped["content"] = new_blocks
    return stripped


def trim_separate(
    messages: List[Message],
    chat_limit: int = Limits.CHAT_HISTORY,
    page_context_limit: int = Limits.PAGE_CONTEXT_HISTORY
) -> List[Message]:
    """
    Separate-track trim.

    Сначала окно chat_limit (с сохранением пар tool_use/tool_result),
    затем payload остаётся только у page_context_limit самых новых
    сообщений со скриншотом или page context. У более старых он
    заменяется на "[Screenshot taken]" / "[Page context: url]".

    Args:
        messages: История
        chat_limit: Лимит сообщений
        page_context_limit: Сколько сообщений с page context оставить целиком

    Returns:
        List[Message]: Новый список
    """
    window = trim_unified(messages, chat_limit)
    tool_names = _tool_names_by_id(messages)

    page_indices = [
        i for i, message in enumerate(window)
        if _is_page_context_message(message, tool_names)
    ]
    keep = set(page_indices[-page_context_limit:]) if page_context_limit > 0 else set()

    result = []
    stripped_count = 0
    for i, message in enumerate(window):
        if i in page_indices and i not in keep:
            result.append(_strip_payload(message, tool_names))
            stripped_count += 1
        else:
            result.append(message)

    if stripped_count:
        logger.debug(f"Separate trim: заменено payload в {stripped_count} сообщениях")
    return result


def render_for_summary(messages: List[Message]) -> str:
    """Превращает сообщения в plain text для summarization промпта."""
    lines = []
    for message in messages:
        speaker = "User" if message.get("role") == "user" else "Assistant"
        content = message.get("content")
        if isinstance(content, str):
            parts = [content]
        else:
            parts = []
            for block in _blocks(message):
                match block.get("type"):
                    case "text":
                        parts.append(block.get("text", ""))
                    case "tool_use":
                        parts.append(f"[Used tool: {block.get('name')}]")
                    case "tool_result":
                        result_text = _text_of(block.get("content"))[:200]
                        parts.append(f"[Tool result] {result_text}".rstrip())
                    case "image":
                        parts.append("[Image]")
        lines.append(f"{speaker}: {' '.join(p for p in parts if p)}")
    return "\n\n".join(lines)


class HistoryManager:
    """
    Применяет политику истории перед каждым запросом к LLM.

    Example:
        ```python
        history = HistoryManager(config.history, summary_model="claude-3-5-haiku-latest")
        trimmed = await history.prepare(messages, llm_client)
        ```
    """

    def __init__(
        self,
        config: Optional[HistoryConfig] = None,
        summary_model: Optional[str] = None
    ):
        self.config = config or HistoryConfig()
        self.summary_model = summary_model

    def trim(self, messages: List[Message], max_messages: Optional[int] = None) -> List[Message]:
        """Обрезает историю согласно режиму (unified или separate)."""
        if self.config.mode == "separate":
            return trim_separate(
                messages,
                chat_limit=self.config.chat_history_length,
                page_context_limit=self.config.page_context_history_length,
            )
        limit = max_messages if max_messages is not None else self.config.loop_history_length
        return trim_unified(messages, limit)

    async def summarize(
        self,
        messages: List[Message],
        llm_client: CompletionClient,
        keep_recent: Optional[int] = None
    ) -> List[Message]:
        """
        Заменяет старую часть истории одним summary сообщением.

        Любая ошибка возвращает исходный список без изменений.

        Args:
            messages: История
            llm_client: Клиент с методом get_completion
            keep_recent: Сколько последних сообщений оставить
                (по умолчанию половина, округление вверх)

        Returns:
            List[Message]: Не длиннее keep_recent + 1 при успехе
        """
        if keep_recent is None:
            keep_recent = math.ceil(len(messages) * 0.5)

        if keep_recent <= 0 or len(messages) <= keep_recent:
            return messages

        split = len(messages) - keep_recent
        # tool_result не может остаться без своего tool_use
        if is_tool_result_message(messages[split]):
            split += 1

        old_messages = messages[:split]
        recent_messages = messages[split:]

        logger.info(
            f"🤖 Summarizing {len(old_messages)} old messages, "
            f"keeping {len(recent_messages)} recent"
        )

        try:
            prompt = SUMMARY_PROMPT.format(
                max_words=Limits.SUMMARY_MAX_WORDS,
                conversation=render_for_summary(old_messages),
            )
            summary = await llm_client.get_completion(
                prompt,
                model=self.summary_model,
                max_tokens=Limits.SUMMARY_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning(f"Summarization failed, keeping original messages: {e}")
            return messages

        if not isinstance(summary, str) or not summary.strip():
            logger.warning("Summarization returned empty text, keeping original messages")
            return messages

        summary_message = {
            "role": "user",
            "content": Markers.SUMMARY_TEMPLATE.format(summary=summary.strip()),
        }
        return [summary_message] + recent_messages

    async def prepare_turn(
        self,
        messages: List[Message],
        llm_client: Optional[CompletionClient] = None,
        max_messages: Optional[int] = None
    ) -> Tuple[List[Message], List[Message]]:
        """
        Summarization (если включена и превышен порог), затем trim.

        Args:
            messages: Рабочая история цикла
            llm_client: Клиент для summarization
            max_messages: Окно unified trim (по умолчанию loop_history_length)

        Returns:
            Tuple: (рабочая история после summarization, история для отправки в LLM)
        """
        working = messages
        if (
            self.config.enable_summarization
            and llm_client is not None
            and len(working) > self.config.summarization_threshold
        ):
            working = await self.summarize(working, llm_client)
        return working, self.trim(working, max_messages)

    async def prepare(
        self,
        messages: List[Message],
        llm_client: Optional[CompletionClient] = None,
        max_messages: Optional[int] = None
    ) -> List[Message]:
        """История для отправки в LLM (см. prepare_turn)."""
        _, request = await self.prepare_turn(messages, llm_client, max_messages)
        return request
