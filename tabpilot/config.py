"""
Конфигурация приложения.

Модуль содержит настройки LLM, истории, цикла, протоколов MCP/A2A,
скриншотов и браузера, загружаемые из переменных окружения.
Список MCP серверов и A2A агентов хранится отдельно в JSON файле.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
from dataclasses import dataclass, field
from dotenv import load_dotenv

from .constants import Limits, Timeouts

# Загружаем переменные окружения из .env файла
load_dotenv()


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("true", "1", "yes")


@dataclass
class ServerConfig:
    """
    Описание MCP сервера или A2A агента.

    Attributes:
        id: Уникальный идентификатор
        name: Отображаемое имя
        url: Endpoint (MCP streamable HTTP или A2A invoke URL)
        api_key: Bearer токен (опционально)
        enabled: Подключать ли при старте
        protocol: "mcp" или "a2a"
        is_trusted: Доверенный сервер (из встроенного списка)
        is_custom: Добавлен пользователем
    """
    id: str
    name: str
    url: str
    api_key: Optional[str] = None
    enabled: bool = True
    protocol: Literal["mcp", "a2a"] = "mcp"
    is_trusted: bool = False
    is_custom: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        """Создаёт конфиг из JSON объекта (принимает camelCase и snake_case)."""
        protocol = data.get("protocol") or "mcp"
        if protocol not in ("mcp", "a2a"):
            raise ValueError(f"Unknown protocol: {protocol}")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            url=str(data["url"]),
            api_key=data.get("api_key") or data.get("apiKey"),
            enabled=bool(data.get("enabled", True)),
            protocol=protocol,
            is_trusted=bool(data.get("is_trusted", data.get("isTrusted", False))),
            is_custom=bool(data.get("is_custom", data.get("isCustom", False))),
        )


@dataclass
class LLMConfig:
    """Настройки chat-completion endpoint."""

    # Provider: "anthropic", "openrouter", or "custom"
    provider: Literal["anthropic", "openrouter", "custom"] = "anthropic"

    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    # Кастомный base URL для Anthropic-совместимого прокси
    anthropic_base_url: Optional[str] = None

    openrouter_api_key: Optional[str] = None
    openrouter_model: str = "anthropic/claude-sonnet-4.5"

    custom_api_base_url: str = ""
    custom_api_key: Optional[str] = None
    custom_model: str = "claude-sonnet-4-latest"

    # Быстрая модель для summarization истории
    summary_model: str = "claude-3-5-haiku-latest"

    max_tokens: int = 4096
    request_timeout: float = Timeouts.LLM_REQUEST

    @property
    def api_key(self) -> Optional[str]:
        """Ключ активного провайдера."""
        if self.provider == "openrouter":
            return self.openrouter_api_key
        if self.provider == "custom":
            return self.custom_api_key
        return self.anthropic_api_key

    @property
    def model(self) -> str:
        """Модель активного провайдера."""
        if self.provider == "openrouter":
            return self.openrouter_model
        if self.provider == "custom":
            return self.custom_model
        return self.anthropic_model

    @property
    def base_url(self) -> Optional[str]:
        if self.provider == "custom":
            return self.custom_api_base_url or None
        if self.provider == "anthropic":
            return self.anthropic_base_url
        return None


@dataclass
class HistoryConfig:
    """Политика ограничения истории."""

    # "unified" - одно окно из N сообщений
    # "separate" - отдельные лимиты для чата и для page context
    mode: Literal["unified", "separate"] = "unified"

    # Сообщений между задачами (persistent chat history)
    conversation_history_length: int = Limits.CONVERSATION_HISTORY

    # Окно внутри одного цикла
    loop_history_length: int = Limits.LOOP_HISTORY

    # Separate-track лимиты
    chat_history_length: int = Limits.CHAT_HISTORY
    page_context_history_length: int = Limits.PAGE_CONTEXT_HISTORY

    # Summarization старых сообщений быстрой моделью
    enable_summarization: bool = False
    summarization_threshold: int = Limits.SUMMARIZATION_THRESHOLD


@dataclass
class LoopConfig:
    """Настройки цикла tool calling."""

    max_turns: int = Limits.MAX_TURNS
    inter_tool_delay: float = Timeouts.INTER_TOOL_DELAY

    # Давать модели инструменты браузера
    browser_tools_enabled: bool = True


@dataclass
class ProtocolConfig:
    """Настройки MCP и A2A."""

    servers_file: Path = field(default_factory=lambda: Path("./servers.json"))

    discovery_timeout: float = Timeouts.MCP_DISCOVERY
    initialize_timeout: float = Timeouts.MCP_INITIALIZE
    call_timeout: float = Timeouts.MCP_TOOL_CALL
    connect_wait_timeout: float = Timeouts.MCP_CONNECT_WAIT
    connect_poll_interval: float = Timeouts.MCP_CONNECT_POLL

    a2a_timeout: float = Timeouts.A2A_INVOKE

    # "last_wins" - логируем и берём последнюю регистрацию
    # "error" - коллизия имён считается ошибкой
    tool_collision_policy: Literal["last_wins", "error"] = "last_wins"


@dataclass
class VisionConfig:
    """Конфигурация нормализации скриншотов."""

    # Максимальный размер изображения, отправляемого в LLM
    max_width: int = Limits.SCREENSHOT_MAX_WIDTH
    max_height: int = Limits.SCREENSHOT_MAX_HEIGHT

    # Качество JPEG сжатия (0-100, только если use_jpeg=True)
    jpeg_quality: int = 70

    # Использовать JPEG вместо PNG для уменьшенных скриншотов
    use_jpeg: bool = False


@dataclass
class BrowserConfig:
    """Конфигурация браузера (Playwright actuator)."""

    # Тип браузера: chromium, firefox или webkit
    browser_type: Literal["chromium", "firefox", "webkit"] = "chromium"

    # Запускать браузер в headless режиме (без UI)
    headless: bool = False

    # Директория для хранения данных пользователя (cookies, localStorage)
    user_data_dir: Path = field(default_factory=lambda: Path("./user_data"))

    # Размер viewport
    viewport_width: int = 1280
    viewport_height: int = 800

    # Таймаут по умолчанию для ожидания элементов (мс)
    default_timeout: int = Timeouts.CLICK

    # Таймаут навигации (мс)
    navigation_timeout: int = Timeouts.NAVIGATION


@dataclass
class Config:
    """Основная конфигурация приложения."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    protocols: ProtocolConfig = field(default_factory=ProtocolConfig)
    vision: VisionConfig = field(default_factory=VisionConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)

    # Уровень логирования
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        """
        Создаёт конфигурацию из переменных окружения.

        Returns:
            Config: Объект конфигурации с настройками из .env
        """
        provider = os.getenv("AI_PROVIDER", "anthropic")
        if provider not in ("anthropic", "openrouter", "custom"):
            logger.warning(f"Неизвестный AI_PROVIDER={provider}, используем anthropic")
            provider = "anthropic"

        llm_config = LLMConfig(
            provider=provider,
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"),
            anthropic_base_url=os.getenv("ANTHROPIC_BASE_URL") or None,
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY"),
            openrouter_model=os.getenv("OPENROUTER_MODEL", "anthropic/claude-sonnet-4.5"),
            custom_api_base_url=os.getenv("CUSTOM_API_BASE_URL", ""),
            custom_api_key=os.getenv("CUSTOM_API_KEY"),
            custom_model=os.getenv("LLM_MODEL", "claude-sonnet-4-latest"),
            summary_model=os.getenv("SUMMARY_MODEL", "claude-3-5-haiku-latest"),
            max_tokens=int(os.getenv("MAX_TOKENS", "4096")),
            request_timeout=float(os.getenv("LLM_TIMEOUT", str(Timeouts.LLM_REQUEST))),
        )

        history_mode = os.getenv("HISTORY_MODE", "unified")
        if history_mode not in ("unified", "separate"):
            history_mode = "unified"

        history_config = HistoryConfig(
            mode=history_mode,
            conversation_history_length=int(
                os.getenv("CONVERSATION_HISTORY_LENGTH", str(Limits.CONVERSATION_HISTORY))
            ),
            loop_history_length=int(
                os.getenv("LOOP_HISTORY_LENGTH", str(Limits.LOOP_HISTORY))
            ),
            chat_history_length=int(
                os.getenv("CHAT_HISTORY_LENGTH", str(Limits.CHAT_HISTORY))
            ),
            page_context_history_length=int(
                os.getenv("PAGE_CONTEXT_HISTORY_LENGTH", str(Limits.PAGE_CONTEXT_HISTORY))
            ),
            enable_summarization=_env_bool("ENABLE_SUMMARIZATION", False),
            summarization_threshold=int(
                os.getenv("SUMMARIZATION_THRESHOLD", str(Limits.SUMMARIZATION_THRESHOLD))
            ),
        )

        loop_config = LoopConfig(
            max_turns=int(os.getenv("MAX_TURNS", str(Limits.MAX_TURNS))),
            inter_tool_delay=float(
                os.getenv("INTER_TOOL_DELAY", str(Timeouts.INTER_TOOL_DELAY))
            ),
            browser_tools_enabled=_env_bool("BROWSER_TOOLS_ENABLED", True),
        )

        collision_policy = os.getenv("TOOL_COLLISION_POLICY", "last_wins")
        if collision_policy not in ("last_wins", "error"):
            collision_policy = "last_wins"

        protocol_config = ProtocolConfig(
            servers_file=Path(os.getenv("SERVERS_FILE", "./servers.json")),
            discovery_timeout=float(
                os.getenv("MCP_DISCOVERY_TIMEOUT", str(Timeouts.MCP_DISCOVERY))
            ),
            initialize_timeout=float(
                os.getenv("MCP_INITIALIZE_TIMEOUT", str(Timeouts.MCP_INITIALIZE))
            ),
            call_timeout=float(os.getenv("MCP_CALL_TIMEOUT", str(Timeouts.MCP_TOOL_CALL))),
            connect_wait_timeout=float(
                os.getenv("MCP_CONNECT_WAIT_TIMEOUT", str(Timeouts.MCP_CONNECT_WAIT))
            ),
            a2a_timeout=float(os.getenv("A2A_TIMEOUT", str(Timeouts.A2A_INVOKE))),
            tool_collision_policy=collision_policy,
        )

        vision_config = VisionConfig(
            max_width=int(os.getenv("SCREENSHOT_MAX_WIDTH", str(Limits.SCREENSHOT_MAX_WIDTH))),
            max_height=int(os.getenv("SCREENSHOT_MAX_HEIGHT", str(Limits.SCREENSHOT_MAX_HEIGHT))),
            jpeg_quality=int(os.getenv("SCREENSHOT_JPEG_QUALITY", "70")),
            use_jpeg=_env_bool("SCREENSHOT_USE_JPEG", False),
        )

        browser_config = BrowserConfig(
            browser_type=os.getenv("BROWSER_TYPE", "chromium"),
            headless=_env_bool("HEADLESS", False),
            user_data_dir=Path(os.getenv("USER_DATA_DIR", "./user_data")),
            viewport_width=int(os.getenv("VIEWPORT_WIDTH", "1280")),
            viewport_height=int(os.getenv("VIEWPORT_HEIGHT", "800")),
            default_timeout=int(os.getenv("DEFAULT_TIMEOUT", str(Timeouts.CLICK))),
            navigation_timeout=int(os.getenv("NAVIGATION_TIMEOUT", str(Timeouts.NAVIGATION))),
        )

        return cls(
            llm=llm_config,
            history=history_config,
            loop=loop_config,
            protocols=protocol_config,
            vision=vision_config,
            browser=browser_config,
            log_level=os.getenv("LOG_LEVEL", "WARNING"),
        )


def load_server_configs(path: Path) -> List[ServerConfig]:
    """
    Загружает список MCP серверов и A2A агентов из JSON файла.

    Поддерживаются два формата: список объектов или {"servers": [...]}.
    Некорректные записи пропускаются с предупреждением.

    Args:
        path: Путь к JSON файлу

    Returns:
        List[ServerConfig]: Конфигурации (пустой список если файла нет)

    Example:
        ```json
        [
            {"id": "weather", "name": "Weather", "url": "https://w.example/mcp"},
            {"id": "travel", "name": "Travel Agent", "url": "https://t.example/invoke",
             "protocol": "a2a", "apiKey": "..."}
        ]
        ```
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"Файл серверов не найден: {path}")
        return []

    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("servers", [])

    configs: List[ServerConfig] = []
    for entry in data:
        try:
            configs.append(ServerConfig.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Пропущена некорректная запись сервера {entry!r}: {e}")

    logger.info(f"Загружено серверов: {len(configs)} из {path}")
    return configs


# Глобальный экземпляр конфигурации
_config: Optional[Config] = None


def get_config() -> Config:
    """
    Получает глобальный экземпляр конфигурации.

    Returns:
        Config: Объект конфигурации
    """
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Сбрасывает глобальную конфигурацию (для тестов)."""
    global _config
    _config = None
