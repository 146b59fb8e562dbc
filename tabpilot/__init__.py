"""
TabPilot - AI-чат с инструментами браузера, MCP серверов и A2A агентов.

Модель получает единый каталог инструментов и вызывает их
в многоходовом цикле tool calling.
"""

from .config import Config, ServerConfig, get_config

# AI module
from .ai import LLMClient, LLMResponse, ToolCall

# Core module
from .core import ChatAgent, ConversationLoop, HistoryManager, ToolRouter, CancelToken, LoopResult, LoopStatus

# Protocols
from .protocols import MCPManager, A2ARegistry

# Browser module
from .browser import Actuator, PlaywrightActuator, ScreenshotNormalizer

__version__ = "1.0.0"
__all__ = [
    # Config
    "Config",
    "ServerConfig",
    "get_config",
    # AI
    "LLMClient",
    "LLMResponse",
    "ToolCall",
    # Core
    "ChatAgent",
    "ConversationLoop",
    "HistoryManager",
    "ToolRouter",
    "CancelToken",
    "LoopResult",
    "LoopStatus",
    # Protocols
    "MCPManager",
    "A2ARegistry",
    # Browser
    "Actuator",
    "PlaywrightActuator",
    "ScreenshotNormalizer",
]
