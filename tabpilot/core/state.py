"""
Состояние одного запуска цикла и токен отмены.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from ..constants import Limits
from ..errors import LoopCancelledError


logger = logging.getLogger(__name__)


class LoopStatus(Enum):
    """
    Статус запуска цикла.

    Values:
        RUNNING: Цикл выполняется
        COMPLETED: Модель ответила без вызовов инструментов
        CANCELLED: Остановлен пользователем
        TURN_LIMIT: Исчерпан лимит ходов
    """
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TURN_LIMIT = "turn_limit"


@dataclass
class LoopState:
    """
    Рабочее состояние одного запуска.

    Attributes:
        max_turns: Лимит ходов
        messages: Рабочая история (растёт на 2 сообщения за ход с инструментами)
        turn: Номер текущего хода
        text_parts: Накопленный текст для пользователя
        status: Статус
        tool_calls: Сколько инструментов вызвано
        started_at: Время старта
    """
    max_turns: int = Limits.MAX_TURNS
    messages: List[Dict[str, Any]] = field(default_factory=list)
    turn: int = 0
    text_parts: List[str] = field(default_factory=list)
    status: LoopStatus = LoopStatus.RUNNING
    tool_calls: int = 0
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def text(self) -> str:
        return "\n\n".join(part for part in self.text_parts if part)

    @property
    def has_turns_left(self) -> bool:
        return self.turn < self.max_turns

    def get_duration(self) -> float:
        """Длительность запуска в секундах."""
        return (datetime.now() - self.started_at).total_seconds()

    def finish(self, status: LoopStatus) -> "LoopResult":
        """Фиксирует статус и собирает LoopResult."""
        self.status = status
        logger.info(
            f"Цикл завершён: {status.value}, ходов {self.turn}, "
            f"инструментов {self.tool_calls}, {self.get_duration():.1f}s"
        )
        return LoopResult(
            text=self.text,
            status=status,
            turns=self.turn,
            tool_calls=self.tool_calls,
            messages=self.messages,
        )


@dataclass
class LoopResult:
    """
    Итог запуска цикла.

    Attributes:
        text: Финальный текст для пользователя
        status: Чем закончился запуск
        turns: Сколько ходов LLM сделано
        tool_calls: Сколько инструментов вызвано
        messages: Рабочая история на момент завершения
    """
    text: str
    status: LoopStatus
    turns: int = 0
    tool_calls: int = 0
    messages: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == LoopStatus.COMPLETED


class CancelToken:
    """
    Кооперативная отмена запуска.

    Цикл проверяет токен перед каждым ходом и перед каждым
    инструментом; уже начатый вызов не прерывается.

    Example:
        ```python
        token = CancelToken()
        task = asyncio.create_task(loop.run(messages, tools, prompt, token))
        token.cancel()
        result = await task  # result.status == LoopStatus.CANCELLED
        ```
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("⏹️ Запрошена остановка")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise LoopCancelledError("Cancelled by user")
