"""
LLM Client - клиент для Chat Completion API.

Обрабатывает отправку сообщений, получение ответов и
извлечение tool_use блоков из ответа. История всегда хранится
в формате Anthropic Messages API; для OpenAI-совместимых
провайдеров (OpenRouter, custom) сообщения и инструменты
конвертируются на границе клиента.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from ..config import LLMConfig
from ..constants import Timeouts
from ..errors import TransportError, sanitize_error


logger = logging.getLogger(__name__)


OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

_CONTEXT_LIMIT_MARKERS = ("prompt is too long", "context length", "context_length", "too many tokens")


@dataclass
class ToolCall:
    """
    Представляет вызов инструмента от LLM.

    Attributes:
        id: Уникальный идентификатор вызова (для tool_result)
        name: Имя инструмента
        input: Параметры вызова
    """
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMResponse:
    """
    Ответ от LLM.

    Attributes:
        content: Текстовый ответ (все text блоки подряд)
        tool_calls: Список вызовов инструментов
        blocks: Блоки ответа в исходном порядке (text / tool_use)
        stop_reason: Причина остановки (end_turn, tool_use, max_tokens)
        usage: Информация об использовании токенов
    """
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    blocks: List[Dict[str, Any]] = field(default_factory=list)
    stop_reason: str = ""
    usage: Dict[str, int] = field(default_factory=dict)


class LLMClientError(TransportError):
    """Базовое исключение для ошибок LLM клиента."""
    pass


class LLMConnectionError(LLMClientError):
    """Ошибка подключения к API."""
    pass


class LLMAuthError(LLMClientError):
    """API отклонил ключ."""
    pass


class LLMRateLimitError(LLMClientError):
    """Превышен лимит запросов."""
    pass


class LLMContextLimitError(LLMClientError):
    """Запрос не помещается в контекст модели."""
    pass


def anthropic_tools_to_openai(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Конвертирует Anthropic tool format в OpenAI format."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema", {"type": "object", "properties": {}}),
            },
        }
        for tool in tools
    ]


def _image_to_openai(block: Dict[str, Any]) -> Dict[str, Any]:
    source = block.get("source", {})
    url = f"data:{source.get('media_type', 'image/png')};base64,{source.get('data', '')}"
    return {"type": "image_url", "image_url": {"url": url}}


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            b.get("text", "") for b in content
            if isinstance(b, dict) and b.get("type") == "text"
        )
    return json.dumps(content, ensure_ascii=False, default=str)


def anthropic_messages_to_openai(
    messages: List[Dict[str, Any]],
    system_prompt: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Переводит историю из формата Anthropic в Chat Completions.

    - text / image блоки -> content parts (image как data URL)
    - tool_use блоки assistant -> tool_calls
    - tool_result блоки user -> отдельные сообщения role="tool";
      изображения из tool_result идут следующим user сообщением,
      так как role="tool" принимает только текст

    Args:
        messages: История в формате Anthropic
        system_prompt: Системный промпт (станет первым сообщением)

    Returns:
        List[Dict]: Сообщения для chat.completions.create
    """
    converted: List[Dict[str, Any]] = []
    if system_prompt:
        converted.append({"role": "system", "content": system_prompt})

    for message in messages:
        role = message.get("role")
        content = message.get("content")

        if isinstance(content, str):
            converted.append({"role": role, "content": content})
            continue

        blocks = [b for b in (content or []) if isinstance(b, dict)]

        if role == "assistant":
            text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
            entry: Dict[str, Any] = {"role": "assistant", "content": text or None}
            tool_calls = [
                {
                    "id": b["id"],
                    "type": "function",
                    "function": {
                        "name": b["name"],
                        "arguments": json.dumps(b.get("input", {}), ensure_ascii=False),
                    },
                }
                for b in blocks if b.get("type") == "tool_use"
            ]
            if tool_calls:
                entry["tool_calls"] = tool_calls
            converted.append(entry)
            continue

        parts: List[Dict[str, Any]] = []
        images: List[Dict[str, Any]] = []
        for block in blocks:
            match block.get("type"):
                case "tool_result":
                    inner = block.get("content")
                    converted.append({
                        "role": "tool",
                        "tool_call_id": block.get("tool_use_id"),
                        "content": _tool_result_text(inner),
                    })
                    if isinstance(inner, list):
                        images.extend(
                            _image_to_openai(b) for b in inner
                            if isinstance(b, dict) and b.get("type") == "image"
                        )
                case "text":
                    parts.append({"type": "text", "text": block.get("text", "")})
                case "image":
                    parts.append(_image_to_openai(block))

        parts.extend(images)
        if parts:
            converted.append({"role": "user", "content": parts})

    return converted


class LLMClient:
    """
    Клиент для взаимодействия с Chat Completion API.

    Поддерживает:
    - Anthropic Messages API (с кастомным base_url)
    - OpenRouter и любой OpenAI-совместимый endpoint
    - Function/Tool calling
    - Простые completion запросы (для summarization)

    Attributes:
        model: Модель по умолчанию
        max_tokens: Максимальное количество токенов в ответе
        provider: Провайдер API

    Example:
        ```python
        client = LLMClient(api_key="sk-ant-...")

        response = await client.send_message(
            messages=[{"role": "user", "content": "Какая погода в Берлине?"}],
            tools=router.tools_for_api(),
            system_prompt=build_system_prompt()
        )

        for tool_call in response.tool_calls:
            print(f"Вызов: {tool_call.name}({tool_call.input})")
        ```
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 4096,
        provider: Literal["anthropic", "openrouter", "custom"] = "anthropic",
        base_url: Optional[str] = None,
        timeout: float = Timeouts.LLM_REQUEST,
        client: Any = None
    ):
        """
        Инициализирует LLM клиент.

        Args:
            api_key: API ключ (Anthropic, OpenRouter или Custom)
            model: Модель для использования
            max_tokens: Максимальное количество токенов в ответе
            provider: Провайдер API ("anthropic", "openrouter" или "custom")
            base_url: Кастомный base URL для API
            timeout: Таймаут запроса в секундах
            client: Готовый SDK клиент (для тестов)
        """
        self.model = model
        self.max_tokens = max_tokens
        self.provider = provider
        self.base_url = base_url
        self.timeout = timeout

        if client is not None:
            self._client = client
        elif provider == "openrouter":
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url or OPENROUTER_BASE_URL,
                timeout=timeout,
            )
        elif provider == "custom":
            if not base_url:
                raise ValueError("base_url is required for custom provider")
            self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        else:
            self._client = AsyncAnthropic(api_key=api_key, base_url=base_url, timeout=timeout)

        logger.info(
            f"LLMClient инициализирован: provider={provider}, model={model}"
            + (f", base_url={base_url}" if base_url else "")
        )

    @classmethod
    def from_config(cls, config: LLMConfig) -> "LLMClient":
        """Создаёт клиент из секции LLMConfig."""
        if not config.api_key:
            raise LLMAuthError(
                f"API key for provider '{config.provider}' is not set",
                hint="set ANTHROPIC_API_KEY, OPENROUTER_API_KEY or CUSTOM_API_KEY in .env",
            )
        return cls(
            api_key=config.api_key,
            model=config.model,
            max_tokens=config.max_tokens,
            provider=config.provider,
            base_url=config.base_url,
            timeout=config.request_timeout,
        )

    @property
    def uses_openai_format(self) -> bool:
        return self.provider in ("openrouter", "custom")

    async def send_message(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None
    ) -> LLMResponse:
        """
        Отправляет сообщения в API и получает ответ.

        Args:
            messages: Список сообщений в формате Anthropic Messages API
            tools: Определения инструментов (None или [] - без инструментов)
            system_prompt: Системный промпт
            model: Переопределение модели для одного запроса
            max_tokens: Переопределение лимита токенов

        Returns:
            LLMResponse: Ответ от модели с текстом и/или tool_calls

        Raises:
            LLMConnectionError: Ошибка подключения к API
            LLMAuthError: Неверный API ключ
            LLMRateLimitError: Превышен лимит запросов
            LLMContextLimitError: Превышен контекст модели
            LLMClientError: Другие ошибки API
        """
        logger.debug(f"Отправка сообщения: {len(messages)} сообщений, {len(tools or [])} инструментов")

        try:
            if self.uses_openai_format:
                return await self._send_openai(messages, tools, system_prompt, model, max_tokens)
            return await self._send_anthropic(messages, tools, system_prompt, model, max_tokens)
        except LLMClientError:
            raise
        except (anthropic.APIConnectionError, openai.APIConnectionError) as e:
            logger.error(f"Ошибка подключения к API: {sanitize_error(str(e))}")
            raise LLMConnectionError(
                f"Cannot reach the chat-completion endpoint: {sanitize_error(str(e))}",
                hint="check the base URL and your network connection",
            ) from e
        except (anthropic.AuthenticationError, openai.AuthenticationError,
                anthropic.PermissionDeniedError, openai.PermissionDeniedError) as e:
            logger.error(f"Ошибка авторизации: {sanitize_error(str(e))}")
            raise LLMAuthError(
                f"Authentication failed: {sanitize_error(str(e))}",
                hint="check API key",
            ) from e
        except (anthropic.RateLimitError, openai.RateLimitError) as e:
            logger.error(f"Превышен лимит запросов: {sanitize_error(str(e))}")
            raise LLMRateLimitError(
                f"Rate limit exceeded: {sanitize_error(str(e))}",
                hint="wait a moment and retry",
            ) from e
        except (anthropic.APIError, openai.APIError) as e:
            text = sanitize_error(str(e))
            logger.error(f"Ошибка API: {text}")
            if any(marker in text.lower() for marker in _CONTEXT_LIMIT_MARKERS):
                raise LLMContextLimitError(
                    f"Context limit exceeded: {text}",
                    hint="Context limit exceeded. Please start a new chat or reduce history length.",
                ) from e
            raise LLMClientError(f"API error: {text}") from e

    async def _send_anthropic(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        system_prompt: Optional[str],
        model: Optional[str],
        max_tokens: Optional[int]
    ) -> LLMResponse:
        """Отправка через Anthropic API."""
        kwargs: Dict[str, Any] = {
            "model": model or self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": messages,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if tools:
            kwargs["tools"] = tools

        response = await self._client.messages.create(**kwargs)
        return self._parse_response(response)

    async def _send_openai(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        system_prompt: Optional[str],
        model: Optional[str],
        max_tokens: Optional[int]
    ) -> LLMResponse:
        """Отправка через OpenAI-совместимый API."""
        kwargs: Dict[str, Any] = {
            "model": model or self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": anthropic_messages_to_openai(messages, system_prompt),
        }
        if tools:
            kwargs["tools"] = anthropic_tools_to_openai(tools)

        response = await self._client.chat.completions.create(**kwargs)
        return self._parse_openai_response(response)

    def _parse_openai_response(self, response: Any) -> LLMResponse:
        """Парсит ответ Chat Completions в LLMResponse."""
        if not response.choices:
            raise LLMClientError("API error: response contains no choices")

        choice = response.choices[0]
        message = choice.message
        usage = getattr(response, "usage", None)

        result = LLMResponse(
            stop_reason=choice.finish_reason or "",
            usage={
                "input_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "output_tokens": getattr(usage, "completion_tokens", 0) or 0,
            },
        )

        if message.content:
            result.content = message.content
            result.blocks.append({"type": "text", "text": message.content})

        for tc in message.tool_calls or []:
            arguments = tc.function.arguments
            if not arguments:
                tool_input = {}
            else:
                try:
                    tool_input = json.loads(arguments)
                except (json.JSONDecodeError, TypeError) as e:
                    logger.error(f"Failed to parse tool arguments: {arguments}, error: {e}")
                    tool_input = {}
            if not isinstance(tool_input, dict):
                tool_input = {"value": tool_input}

            tool_call = ToolCall(id=tc.id, name=tc.function.name, input=tool_input)
            result.tool_calls.append(tool_call)
            result.blocks.append({
                "type": "tool_use",
                "id": tool_call.id,
                "name": tool_call.name,
                "input": tool_call.input,
            })
            logger.debug(f"Tool call: {tool_call.name}({tool_call.input})")

        self._log_response(result)
        return result

    def _parse_response(self, response: Any) -> LLMResponse:
        """
        Парсит ответ от Anthropic API.

        Args:
            response: Сырой ответ от API

        Returns:
            LLMResponse: Распарсенный ответ
        """
        result = LLMResponse(
            stop_reason=response.stop_reason or "",
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
        )

        for block in response.content:
            if block.type == "text":
                result.content += block.text
                result.blocks.append({"type": "text", "text": block.text})
            elif block.type == "tool_use":
                tool_call = ToolCall(id=block.id, name=block.name, input=dict(block.input or {}))
                result.tool_calls.append(tool_call)
                result.blocks.append({
                    "type": "tool_use",
                    "id": tool_call.id,
                    "name": tool_call.name,
                    "input": tool_call.input,
                })
                logger.debug(f"Tool call: {tool_call.name}({tool_call.input})")

        self._log_response(result)
        return result

    def _log_response(self, result: LLMResponse) -> None:
        logger.debug(
            f"Ответ получен: {len(result.content)} символов, "
            f"{len(result.tool_calls)} tool calls, "
            f"stop_reason={result.stop_reason}"
        )

    async def get_completion(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        """
        Простой метод для получения текстового ответа без tool calling.

        Args:
            prompt: Текст запроса
            system_prompt: Системный промпт (опционально)
            model: Модель (например, быстрая модель для summarization)
            max_tokens: Лимит токенов ответа

        Returns:
            str: Текстовый ответ модели
        """
        response = await self.send_message(
            messages=[{"role": "user", "content": prompt}],
            tools=None,
            system_prompt=system_prompt or "You are a helpful assistant.",
            model=model,
            max_tokens=max_tokens,
        )
        return response.content

    async def close(self):
        """
        Закрывает клиент и освобождает ресурсы.

        Вызывайте при завершении работы с клиентом.
        """
        await self._client.close()
        logger.info("LLMClient закрыт")

    async def __aenter__(self) -> "LLMClient":
        """Поддержка async context manager."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Закрытие при выходе из контекста."""
        await self.close()
