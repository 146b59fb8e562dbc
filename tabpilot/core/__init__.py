"""
Core модуль TabPilot.

Содержит основные компоненты:
- ChatAgent: Сессия чата
- ConversationLoop: Цикл tool calling
- HistoryManager: Обрезка и summarization истории
- ToolRouter: Единый каталог инструментов
"""

from .agent import ChatAgent, AgentError
from .history import HistoryManager
from .loop import ConversationLoop
from .state import CancelToken, LoopResult, LoopState, LoopStatus
from .tool_router import ToolRouter

__all__ = [
    "ChatAgent",
    "AgentError",
    "HistoryManager",
    "ConversationLoop",
    "CancelToken",
    "LoopResult",
    "LoopState",
    "LoopStatus",
    "ToolRouter",
]
