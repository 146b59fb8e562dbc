"""
AI модуль TabPilot.

Содержит компоненты для взаимодействия с LLM:
- LLMClient: Клиент для отправки сообщений и обработки tool calls
- ToolDefinition и инструменты браузера
- build_system_prompt: Системный промпт для цикла
"""

from .llm_client import LLMClient, LLMClientError, LLMResponse, ToolCall
from .tools import ACTUATOR_TOOLS, ToolDefinition, ToolOrigin
from .prompts import build_system_prompt

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMResponse",
    "ToolCall",
    "ACTUATOR_TOOLS",
    "ToolDefinition",
    "ToolOrigin",
    "build_system_prompt",
]
