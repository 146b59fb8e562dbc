"""
Иерархия исключений TabPilot.

Две большие ветки:
- TransportError: системные сбои (endpoint недоступен, неверный ключ).
  Прерывают всю операцию и несут подсказку для пользователя (hint).
- ToolExecutionError: инструмент был вызван, но не отработал.
  Превращается в tool_result с флагом is_error, цикл продолжается.
"""

import re
from typing import Optional


class TabPilotError(Exception):
    """Базовое исключение приложения."""
    pass


class TransportError(TabPilotError):
    """
    Endpoint недоступен или отклонил авторизацию.

    Attributes:
        hint: Подсказка, что проверить пользователю
    """

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint

    def __str__(self) -> str:
        base = super().__str__()
        if self.hint:
            return f"{base} ({self.hint})"
        return base


class ToolExecutionError(TabPilotError):
    """Инструмент отработал с ошибкой."""
    pass


class ToolTimeoutError(ToolExecutionError):
    """Истёк таймаут вызова инструмента или discovery."""
    pass


class ProtocolError(ToolExecutionError):
    """
    Некорректный ответ сервера или JSON-RPC ошибка.

    Attributes:
        code: JSON-RPC код ошибки (если есть)
    """

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class ToolNotFoundError(ToolExecutionError):
    """Инструмент с таким именем не зарегистрирован."""
    pass


class ToolCollisionError(ToolExecutionError):
    """Два источника зарегистрировали инструмент с одним именем (strict режим)."""
    pass


class ScreenshotError(ToolExecutionError):
    """Не удалось декодировать или нормализовать скриншот."""
    pass


class LoopCancelledError(TabPilotError):
    """Цикл остановлен пользователем."""
    pass


_CREDENTIAL_PATTERNS = [
    (re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE), r"\1***"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"), "sk-***"),
    (re.compile(r"((?:api_?key|token|secret|password)=)[^&\s]+", re.IGNORECASE), r"\1***"),
]


def sanitize_error(text: str) -> str:
    """
    Убирает credentials из текста ошибки перед логированием/показом.

    Args:
        text: Исходный текст (может содержать URL с токенами или заголовки)

    Returns:
        str: Текст с замаскированными секретами

    Example:
        ```python
        sanitize_error("401 for https://x.io/mcp?token=abc")
        # '401 for https://x.io/mcp?token=***'
        ```
    """
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        text = pattern.sub(replacement, text)
    return text
