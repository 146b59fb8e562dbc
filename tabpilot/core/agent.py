"""
ChatAgent - сессия чата с инструментами.

Объединяет все компоненты одной сессии:
- LLMClient для Chat Completion API
- MCPManager и A2ARegistry для внешних инструментов
- ToolRouter для единого каталога
- HistoryManager и ConversationLoop для выполнения задач
- Actuator (браузер) - опционально
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from ..ai.llm_client import LLMClient
from ..ai.prompts import build_system_prompt
from ..ai.tools import ToolOrigin
from ..browser.actuator import Actuator, BrowserError
from ..browser.screenshot import ScreenshotNormalizer
from ..config import Config, ServerConfig, get_config, load_server_configs
from ..protocols.a2a import A2ARegistry
from ..protocols.mcp import ConnectionState, MCPManager
from .history import HistoryManager, trim_unified
from .loop import Callback, ConversationLoop
from .state import CancelToken, LoopResult
from .tool_router import ToolRouter


logger = logging.getLogger(__name__)


class AgentError(Exception):
    """Базовое исключение для ошибок агента."""
    pass


class ChatAgent:
    """
    Одна сессия чата.

    Хранит текстовую историю между задачами (последние
    conversation_history_length сообщений) и владеет всеми
    подключениями. Закрытие сессии закрывает их все.

    Example:
        ```python
        async with ChatAgent(on_text=print) as agent:
            result = await agent.chat("Какая погода в Берлине?")
            print(result.status, result.text)
        ```
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        llm_client: Optional[LLMClient] = None,
        actuator: Optional[Actuator] = None,
        mcp_manager: Optional[MCPManager] = None,
        a2a_registry: Optional[A2ARegistry] = None,
        server_configs: Optional[List[ServerConfig]] = None,
        on_text: Callback = None,
        on_tool_start: Callback = None,
        on_tool_result: Callback = None
    ):
        """
        Инициализирует сессию.

        Args:
            config: Конфигурация (по умолчанию глобальная)
            llm_client: LLM клиент (по умолчанию из config.llm)
            actuator: Браузер; None отключает инструменты браузера
            mcp_manager: Менеджер MCP (по умолчанию новый)
            a2a_registry: Реестр A2A (по умолчанию новый)
            server_configs: Серверы (по умолчанию из servers_file)
            on_text: Callback(chunk) для текста
            on_tool_start: Callback(name, origin)
            on_tool_result: Callback(name, result)
        """
        self.config = config or get_config()
        self.llm_client = llm_client or LLMClient.from_config(self.config.llm)
        self.actuator = actuator
        self.mcp_manager = mcp_manager or MCPManager(self.config.protocols)
        self.a2a_registry = a2a_registry or A2ARegistry(timeout=self.config.protocols.a2a_timeout)
        self._server_configs = server_configs

        self.router = ToolRouter(
            actuator=actuator,
            mcp_manager=self.mcp_manager,
            a2a_registry=self.a2a_registry,
            collision_policy=self.config.protocols.tool_collision_policy,
        )
        self.history = HistoryManager(self.config.history, summary_model=self.config.llm.summary_model)
        self.loop = ConversationLoop(
            llm_client=self.llm_client,
            router=self.router,
            history=self.history,
            normalizer=ScreenshotNormalizer.from_config(self.config.vision),
            config=self.config.loop,
            on_text=on_text,
            on_tool_start=on_tool_start,
            on_tool_result=on_tool_result,
        )

        self.messages: List[Dict[str, Any]] = []
        self._cancel_token: Optional[CancelToken] = None
        self._browser_ready = False
        self._is_started = False

    @property
    def browser_tools_enabled(self) -> bool:
        return self.config.loop.browser_tools_enabled and self._browser_ready

    @property
    def is_running(self) -> bool:
        return self._cancel_token is not None

    async def start(self) -> None:
        """
        Подключает MCP серверы, регистрирует A2A агентов и запускает браузер.

        Ошибки отдельных серверов и браузера не прерывают запуск.
        """
        if self._is_started:
            logger.warning("Сессия уже запущена")
            return

        servers = self._server_configs
        if servers is None:
            servers = load_server_configs(self.config.protocols.servers_file)

        states = await self.mcp_manager.connect_to_servers(servers)
        self.a2a_registry.register_agents(servers)
        agents = self.a2a_registry.get_registered_agents()
        if agents:
            await asyncio.gather(*(self.a2a_registry.fetch_agent_card(a.id) for a in agents))
        connected = sum(1 for state in states.values() if state == ConnectionState.CONNECTED)
        logger.info(
            f"Серверы: MCP {connected}/{len(states)}, "
            f"A2A {len(agents)}"
        )

        if self.actuator is not None and self.config.loop.browser_tools_enabled:
            try:
                await self.actuator.start()
                self._browser_ready = True
            except BrowserError as e:
                logger.error(f"Браузер недоступен, инструменты браузера отключены: {e}")

        self._is_started = True

    async def chat(self, user_text: str, cancel_token: Optional[CancelToken] = None) -> LoopResult:
        """
        Выполняет одну задачу пользователя.

        Args:
            user_text: Сообщение пользователя
            cancel_token: Токен отмены (по умолчанию новый; см. stop())

        Returns:
            LoopResult: Текст и статус запуска

        Raises:
            AgentError: Предыдущая задача ещё выполняется
            TransportError: Endpoint LLM недоступен
        """
        if self._cancel_token is not None:
            raise AgentError("A task is already running in this session")
        if not self._is_started:
            await self.start()

        user_message = {"role": "user", "content": user_text}
        prior = trim_unified(self.messages, self.config.history.conversation_history_length)

        self.router.build_catalog(include_actuator=self.browser_tools_enabled)
        system_prompt = build_system_prompt(
            browser_tools_enabled=self.browser_tools_enabled,
            protocol_tools=self.router.describe_tools([ToolOrigin.MCP, ToolOrigin.A2A]),
        )

        self._cancel_token = cancel_token or CancelToken()
        try:
            result = await self.loop.run(
                prior + [user_message],
                self.router.tools_for_api(),
                system_prompt,
                self._cancel_token,
            )
        finally:
            self._cancel_token = None

        self.messages.append(user_message)
        if result.text:
            self.messages.append({"role": "assistant", "content": result.text})
        self.messages = trim_unified(self.messages, self.config.history.conversation_history_length)
        return result

    def stop(self) -> bool:
        """
        Останавливает текущую задачу.

        Returns:
            bool: Была ли задача для остановки
        """
        if self._cancel_token is None:
            return False
        self._cancel_token.cancel()
        return True

    def clear_history(self) -> None:
        self.messages.clear()
        logger.info("История чата очищена")

    def get_status(self) -> Dict[str, Any]:
        """Состояние сессии для UI."""
        return {
            "provider": self.llm_client.provider,
            "model": self.llm_client.model,
            "browser_tools": self.browser_tools_enabled,
            "running": self.is_running,
            "history_messages": len(self.messages),
            "mcp_servers": self.mcp_manager.get_connection_status(),
            "a2a_agents": self.a2a_registry.get_connection_status(),
            "tools": len(self.router.catalog),
        }

    async def close(self) -> None:
        """Отключает серверы, закрывает браузер и LLM клиент."""
        self.stop()
        await self.mcp_manager.disconnect_all()
        await self.a2a_registry.disconnect_all()
        if self.actuator is not None and self._browser_ready:
            await self.actuator.close()
            self._browser_ready = False
        await self.llm_client.close()
        self._is_started = False
        logger.info("Сессия закрыта")

    async def __aenter__(self) -> "ChatAgent":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
