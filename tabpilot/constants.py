"""
Централизованные константы для TabPilot.

Все magic numbers и hardcoded values собраны здесь
для удобства настройки и поддержки.
"""

from typing import Set


class Timeouts:
    """Таймауты в секундах (кроме browser-таймаутов, они в мс)."""

    # Chat-completion endpoint
    LLM_REQUEST = 180.0

    # MCP
    MCP_INITIALIZE = 10.0  # initialize handshake
    MCP_DISCOVERY = 3.0  # tools/list, дальше fallback на частичный поток
    MCP_TOOL_CALL = 150.0  # один tools/call
    MCP_CONNECT_WAIT = 30.0  # ожидание параллельного connect того же id
    MCP_CONNECT_POLL = 0.5  # интервал опроса состояния

    # A2A
    A2A_INVOKE = 120.0
    A2A_AGENT_CARD = 10.0

    # Цикл
    INTER_TOOL_DELAY = 0.5  # пауза между последовательными вызовами

    # Браузер (мс)
    NAVIGATION = 30000
    CLICK = 5000
    SCREENSHOT = 10000


class Limits:
    """Лимиты истории и цикла."""

    MAX_TURNS = 20

    # История
    CONVERSATION_HISTORY = 10  # между задачами
    LOOP_HISTORY = 15  # внутри одного цикла
    CHAT_HISTORY = 20  # separate-track: обычные сообщения
    PAGE_CONTEXT_HISTORY = 2  # separate-track: сообщения со страницей
    SUMMARIZATION_THRESHOLD = 8

    # Summarization
    SUMMARY_MAX_TOKENS = 500
    SUMMARY_MAX_WORDS = 300

    # Page context
    MAX_PAGE_TEXT = 4000
    MAX_INTERACTIVE_ELEMENTS = 50

    # Скриншоты
    SCREENSHOT_MAX_WIDTH = 1280
    SCREENSHOT_MAX_HEIGHT = 800


class Markers:
    """Текстовые маркеры, которые цикл и история вставляют в сообщения."""

    SCREENSHOT_PLACEHOLDER = "[Screenshot taken]"
    PAGE_CONTEXT_PLACEHOLDER = "[Page context: {url}]"
    PAGE_CONTEXT_HEADER = "[Current Page Context]"

    SUMMARY_TEMPLATE = (
        "[Previous conversation summary]\n\n{summary}\n\n"
        "[End of summary - conversation continues below]"
    )

    TURN_LIMIT_NOTICE = (
        "⚠️ Note: Reached maximum turn limit ({max_turns}). "
        "If you need to continue, please send a new message."
    )
    CANCELLED_NOTICE = "⏹️ Stopped by user."
    EMPTY_COMPLETION = "Task completed."

    TOOL_TIMEOUT_MESSAGE = (
        "I'm sorry, the request took too long and timed out. Please try again later."
    )


class MCP:
    """Константы протокола MCP."""

    PROTOCOL_VERSION = "2025-03-26"
    CLIENT_NAME = "tabpilot"
    CLIENT_VERSION = "1.0.0"
    SESSION_HEADER = "Mcp-Session-Id"


class Security:
    """Настройки безопасности."""

    # Разрешённые схемы URL
    ALLOWED_URL_SCHEMES: Set[str] = {"http", "https"}

    # Запрещённые схемы (явный blacklist)
    BLOCKED_URL_SCHEMES: Set[str] = {
        "file",
        "javascript",
        "data",
        "vbscript",
        "about",  # кроме about:blank
    }

    # Разрешённые исключения
    ALLOWED_SPECIAL_URLS: Set[str] = {"about:blank"}
