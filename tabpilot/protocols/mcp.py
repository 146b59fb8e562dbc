"""
MCPManager - подключения к MCP серверам и вызов их инструментов.

Состояния подключения: DISCONNECTED -> CONNECTING -> CONNECTED | FAILED.

Каждый экземпляр MCPManager принадлежит одной сессии. Каждое
подключение владеет своим транспортом и картой ожидающих запросов
(request id -> Future); транспорт передаёт все входящие сообщения
в ServerConnection.dispatch.
"""

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..ai.tools import ToolDefinition, tool_from_mcp
from ..config import ProtocolConfig, ServerConfig
from ..constants import MCP, Markers
from ..errors import (
    ProtocolError,
    TabPilotError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    sanitize_error,
)
from ..security.url_validator import URLValidator
from .transport import MCPTransportError, StreamableHttpTransport, parse_sse_messages


logger = logging.getLogger(__name__)


TransportFactory = Callable[[str, Dict[str, str]], Any]


class ConnectionState(Enum):
    """Состояние подключения к MCP серверу."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


def default_transport_factory(url: str, headers: Dict[str, str]) -> StreamableHttpTransport:
    return StreamableHttpTransport(url, headers=headers)


@dataclass
class ServerConnection:
    """
    Подключение к одному MCP серверу.

    Attributes:
        id: ID сервера из конфигурации
        name: Отображаемое имя
        url: Endpoint
        is_trusted: Доверенный сервер
        state: Текущее состояние
        tools: Инструменты после нормализации схем
        error: Текст ошибки (для FAILED / пустого каталога)
        transport: Транспорт (None пока не подключено)
        pending: Ожидающие ответа запросы, request id -> Future
        connected_at: Время успешного подключения
    """
    id: str
    name: str
    url: str
    is_trusted: bool = False
    state: ConnectionState = ConnectionState.DISCONNECTED
    tools: List[ToolDefinition] = field(default_factory=list)
    error: Optional[str] = None
    transport: Any = None
    pending: Dict[Any, asyncio.Future] = field(default_factory=dict)
    connected_at: Optional[datetime] = None
    _ids: Any = field(default_factory=lambda: itertools.count(1), repr=False)

    def next_request_id(self) -> int:
        return next(self._ids)

    def dispatch(self, message: Dict[str, Any]) -> None:
        """
        Обработчик входящих сообщений транспорта.

        Ответ с известным id завершает соответствующий Future,
        остальные сообщения (уведомления, чужие id) только логируются.
        """
        request_id = message.get("id")
        future = self.pending.get(request_id) if request_id is not None else None

        if future is None:
            if "method" in message:
                logger.debug(f"[{self.name}] Уведомление: {message['method']}")
            else:
                logger.debug(f"[{self.name}] Ответ без ожидающего запроса: id={request_id}")
            return

        if future.done():
            return

        if "error" in message:
            error = message.get("error") or {}
            if isinstance(error, dict):
                future.set_exception(ProtocolError(
                    f"MCP error: {error.get('message', 'unknown error')}",
                    code=error.get("code"),
                ))
            else:
                future.set_exception(ProtocolError(f"MCP error: {error}"))
        elif "result" in message:
            future.set_result(message["result"])
        else:
            future.set_exception(ProtocolError(f"Malformed JSON-RPC response: {message}"))

    def _on_send_done(self, request_id: Any, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        future = self.pending.get(request_id)
        if future is not None and not future.done():
            if not isinstance(exc, TabPilotError):
                exc = MCPTransportError(sanitize_error(str(exc)))
            future.set_exception(exc)

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: float = 30.0,
        request_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Отправляет JSON-RPC запрос и ждёт ответ с тем же id.

        Args:
            method: Имя метода (tools/list, tools/call, ...)
            params: Параметры метода
            timeout: Таймаут ожидания ответа (сек)
            request_id: ID запроса (по умолчанию следующий по счётчику)

        Returns:
            Dict: Поле result ответа

        Raises:
            ToolTimeoutError: Ответ не пришёл за timeout
            ProtocolError: Сервер вернул JSON-RPC ошибку
            MCPTransportError: Сбой HTTP обмена
        """
        if self.transport is None:
            raise MCPTransportError(f"Server {self.name} has no transport")

        if request_id is None:
            request_id = self.next_request_id()

        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        future = asyncio.get_running_loop().create_future()
        self.pending[request_id] = future

        send_task = asyncio.create_task(self.transport.send(message))
        send_task.add_done_callback(lambda t: self._on_send_done(request_id, t))

        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError(
                f"{method} to {self.name} timed out after {timeout:g}s"
            ) from e
        finally:
            self.pending.pop(request_id, None)
            if not send_task.done():
                send_task.cancel()

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Отправляет JSON-RPC уведомление (без ответа)."""
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self.transport.send(message)

    def fail_pending(self, reason: str) -> None:
        """Отклоняет все ожидающие запросы (при закрытии транспорта)."""
        for future in self.pending.values():
            if not future.done():
                future.set_exception(MCPTransportError(reason))
        self.pending.clear()

    def to_status(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "state": self.state.value,
            "is_trusted": self.is_trusted,
            "tool_count": len(self.tools),
            "tools": [tool.name for tool in self.tools],
            "error": self.error,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
        }


def extract_tool_result(result: Dict[str, Any]) -> Union[str, Dict[str, Any]]:
    """
    Превращает result ответа tools/call в текст для модели.

    Текстовые элементы content склеиваются через перевод строки.
    Ссылка на аудио (audioLink / audio_link / audioUrl) сохраняется.

    Args:
        result: Поле result JSON-RPC ответа

    Returns:
        str | Dict: Текст или {"result": текст, "audioLink": ссылка}

    Raises:
        ToolExecutionError: Сервер пометил результат как isError
    """
    if not isinstance(result, dict):
        return json.dumps(result, ensure_ascii=False)

    text = None
    content = result.get("content")
    if isinstance(content, list):
        texts = [
            item.get("text", "") for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        if texts:
            text = "\n".join(texts)

    if result.get("isError"):
        raise ToolExecutionError(f"MCP tool error: {text or json.dumps(result, ensure_ascii=False)}")

    if text is None:
        structured = result.get("structuredContent")
        text = json.dumps(structured if structured is not None else result, ensure_ascii=False)

    audio_link = result.get("audioLink") or result.get("audio_link") or result.get("audioUrl")
    if audio_link:
        return {"result": text, "audioLink": audio_link}
    return text


class MCPManager:
    """
    Менеджер MCP подключений одной сессии.

    Example:
        ```python
        manager = MCPManager(config.protocols)
        await manager.connect_to_servers(server_configs)

        result = await manager.execute_tool_call("get_weather", {"city": "Berlin"})

        await manager.disconnect_all()
        ```
    """

    def __init__(
        self,
        config: Optional[ProtocolConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
        url_validator: Optional[URLValidator] = None
    ):
        self.config = config or ProtocolConfig()
        self._transport_factory = transport_factory or default_transport_factory
        self._url_validator = url_validator or URLValidator()
        self._connections: Dict[str, ServerConnection] = {}
        self._tool_index: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Подключение
    # ------------------------------------------------------------------

    async def connect_to_servers(
        self,
        configs: List[ServerConfig]
    ) -> Dict[str, ConnectionState]:
        """
        Параллельно подключается ко всем включённым MCP серверам.

        Ошибка одного сервера не влияет на остальные.

        Args:
            configs: Конфигурации (A2A и выключенные пропускаются)

        Returns:
            Dict[str, ConnectionState]: Итоговое состояние по id
        """
        unique: Dict[str, ServerConfig] = {}
        for server in configs:
            if not server.enabled or server.protocol not in (None, "mcp"):
                continue
            if server.id in unique:
                logger.warning(f"Дубликат MCP сервера в конфигурации: {server.id}")
                continue
            unique[server.id] = server

        if not unique:
            return {}

        logger.info(f"Подключение к {len(unique)} MCP серверам")
        results = await asyncio.gather(
            *(self.connect_to_server(server) for server in unique.values()),
            return_exceptions=True,
        )

        states: Dict[str, ConnectionState] = {}
        for server, result in zip(unique.values(), results):
            if isinstance(result, BaseException):
                logger.error(f"Ошибка подключения к {server.name}: {sanitize_error(str(result))}")
                states[server.id] = ConnectionState.FAILED
            else:
                states[server.id] = result.state
        return states

    async def connect_to_server(self, server: ServerConfig) -> ServerConnection:
        """
        Подключается к MCP серверу и загружает список инструментов.

        Повторный вызов для подключённого сервера ничего не делает.
        Если подключение уже идёт, ждём его завершения.

        Args:
            server: Конфигурация сервера

        Returns:
            ServerConnection: Подключение в итоговом состоянии
        """
        existing = self._connections.get(server.id)
        if existing is not None:
            if existing.state == ConnectionState.CONNECTED:
                logger.debug(f"MCP сервер {server.name} уже подключён")
                return existing
            if existing.state == ConnectionState.CONNECTING:
                return await self._wait_for_connect(existing)

        # Проверка и переход в CONNECTING без await между ними
        connection = ServerConnection(
            id=server.id,
            name=server.name,
            url=server.url,
            is_trusted=server.is_trusted,
            state=ConnectionState.CONNECTING,
        )
        self._connections[server.id] = connection
        lock = self._locks.setdefault(server.id, asyncio.Lock())

        async with lock:
            await self._handshake(connection, server)
        return connection

    async def _wait_for_connect(self, connection: ServerConnection) -> ServerConnection:
        waited = 0.0
        interval = self.config.connect_poll_interval
        logger.debug(f"Ожидание параллельного подключения к {connection.name}")
        while (
            connection.state == ConnectionState.CONNECTING
            and waited < self.config.connect_wait_timeout
        ):
            await asyncio.sleep(interval)
            waited += interval

        if connection.state == ConnectionState.CONNECTING:
            logger.warning(
                f"Подключение к {connection.name} не завершилось за "
                f"{self.config.connect_wait_timeout:g}s"
            )
        return self._connections.get(connection.id, connection)

    async def _handshake(self, connection: ServerConnection, server: ServerConfig) -> None:
        headers: Dict[str, str] = {}
        if server.api_key:
            headers["Authorization"] = f"Bearer {server.api_key}"

        try:
            self._url_validator.validate_endpoint(server.url)

            transport = self._transport_factory(server.url, headers)
            transport.on_message = connection.dispatch
            connection.transport = transport
            await transport.start()

            init_result = await connection.request(
                "initialize",
                {
                    "protocolVersion": MCP.PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": MCP.CLIENT_NAME, "version": MCP.CLIENT_VERSION},
                },
                timeout=self.config.initialize_timeout,
            )
            server_info = (init_result or {}).get("serverInfo", {})
            logger.debug(f"[{server.name}] initialize: {server_info}")

            await connection.notify("notifications/initialized")

            raw_tools = await self._discover_tools(connection)

        except Exception as e:
            message = sanitize_error(str(e) or type(e).__name__)
            logger.error(f"❌ Не удалось подключиться к MCP серверу {server.name}: {message}")
            await self._close_transport(connection)
            connection.state = ConnectionState.FAILED
            connection.error = message
            return

        tools = self._ingest_tools(connection, raw_tools)
        if not tools:
            logger.warning(f"MCP сервер {server.name} не предоставил инструментов, отключаемся")
            await self._close_transport(connection)
            connection.state = ConnectionState.DISCONNECTED
            connection.error = "Server exposes no tools"
            return

        connection.tools = tools
        connection.state = ConnectionState.CONNECTED
        connection.error = None
        connection.connected_at = datetime.now()
        self._rebuild_index()
        logger.info(f"✅ MCP сервер {server.name} подключён: {len(tools)} инструментов")

    async def _discover_tools(self, connection: ServerConnection) -> List[Dict[str, Any]]:
        """
        tools/list с коротким таймаутом.

        При таймауте пытаемся достать список инструментов из уже
        полученной части SSE потока.
        """
        request_id = connection.next_request_id()
        try:
            result = await connection.request(
                "tools/list",
                {},
                timeout=self.config.discovery_timeout,
                request_id=request_id,
            )
        except ToolTimeoutError:
            tools = self._tools_from_partial_stream(connection, request_id)
            if tools is None:
                raise
            logger.info(
                f"[{connection.name}] tools/list по таймауту, "
                f"список взят из частичного потока: {len(tools)}"
            )
            return tools
        finally:
            self._clear_partial(connection, request_id)

        tools = (result or {}).get("tools")
        if not isinstance(tools, list):
            raise ProtocolError(f"tools/list returned no tools array: {result}")
        return tools

    @staticmethod
    def _clear_partial(connection: ServerConnection, request_id: Any) -> None:
        clear = getattr(connection.transport, "clear_partial", None)
        if clear is not None:
            clear(request_id)

    def _tools_from_partial_stream(
        self,
        connection: ServerConnection,
        request_id: Any
    ) -> Optional[List[Dict[str, Any]]]:
        get_buffer = getattr(connection.transport, "partial_buffer", None)
        if get_buffer is None:
            return None
        for message in parse_sse_messages(get_buffer(request_id)):
            result = message.get("result")
            if message.get("jsonrpc") == "2.0" and isinstance(result, dict):
                tools = result.get("tools")
                if isinstance(tools, list):
                    return tools
        return None

    def _ingest_tools(
        self,
        connection: ServerConnection,
        raw_tools: List[Dict[str, Any]]
    ) -> List[ToolDefinition]:
        tools: List[ToolDefinition] = []
        for raw in raw_tools:
            if not isinstance(raw, dict):
                continue
            try:
                tools.append(tool_from_mcp(raw, connection.id, connection.name))
            except ValueError as e:
                logger.warning(f"[{connection.name}] Пропущен инструмент: {e}")
        return tools

    def _rebuild_index(self) -> None:
        """Имя -> владелец; при совпадении имён побеждает более поздний сервер в _connections."""
        index: Dict[str, str] = {}
        for connection in self.get_connected_servers():
            for tool in connection.tools:
                index[tool.name] = connection.id
        self._tool_index = index

    # ------------------------------------------------------------------
    # Вызов инструментов
    # ------------------------------------------------------------------

    async def execute_tool_call(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        server_id: Optional[str] = None
    ) -> Union[str, Dict[str, Any]]:
        """
        Вызывает инструмент MCP сервера.

        Args:
            tool_name: Имя инструмента
            arguments: Параметры вызова
            server_id: Явный владелец (по умолчанию из индекса инструментов)

        Returns:
            str | Dict: Текст результата (или с audioLink)

        Raises:
            ToolNotFoundError: Инструмент не найден или сервер не подключён
            ToolTimeoutError: Сервер не ответил за call_timeout
            ToolExecutionError: Ошибка инструмента или транспорта
        """
        owner_id = server_id or self._tool_index.get(tool_name)
        connection = self._connections.get(owner_id) if owner_id else None
        if connection is None:
            raise ToolNotFoundError(f"MCP tool not found: {tool_name}")
        if connection.state != ConnectionState.CONNECTED:
            raise ToolExecutionError(
                f"MCP server {connection.name} is not connected ({connection.state.value})"
            )

        logger.info(f"🔧 MCP {connection.name}: {tool_name}")
        logger.debug(f"MCP arguments: {arguments}")

        request_id = connection.next_request_id()
        try:
            result = await connection.request(
                "tools/call",
                {"name": tool_name, "arguments": arguments or {}},
                timeout=self.config.call_timeout,
                request_id=request_id,
            )
        except ToolTimeoutError as e:
            logger.warning(f"MCP {connection.name}: {tool_name} timed out")
            raise ToolTimeoutError(Markers.TOOL_TIMEOUT_MESSAGE) from e
        except MCPTransportError as e:
            raise ToolExecutionError(f"MCP server {connection.name} unavailable: {e}") from e
        finally:
            self._clear_partial(connection, request_id)

        return extract_tool_result(result)

    # ------------------------------------------------------------------
    # Отключение
    # ------------------------------------------------------------------

    async def _close_transport(self, connection: ServerConnection) -> None:
        connection.fail_pending(f"Connection to {connection.name} closed")
        transport = connection.transport
        connection.transport = None
        if transport is None:
            return
        try:
            await transport.close()
        except (TabPilotError, OSError) as e:
            logger.debug(f"Ошибка при закрытии транспорта {connection.name}: {e}")

    async def disconnect_server(self, server_id: str) -> None:
        """Отключает один сервер и убирает его инструменты из индекса."""
        connection = self._connections.pop(server_id, None)
        if connection is None:
            return
        await self._close_transport(connection)
        connection.state = ConnectionState.DISCONNECTED
        connection.tools = []
        self._rebuild_index()
        logger.info(f"MCP сервер {connection.name} отключён")

    async def disconnect_all(self) -> None:
        """Закрывает все транспорты, очищает подключения и индекс."""
        connections = list(self._connections.values())
        await asyncio.gather(
            *(self._close_transport(c) for c in connections),
            return_exceptions=True,
        )
        for connection in connections:
            connection.state = ConnectionState.DISCONNECTED
            connection.tools = []
        self._connections.clear()
        self._tool_index.clear()
        logger.info("Все MCP подключения закрыты")

    # ------------------------------------------------------------------
    # Статус
    # ------------------------------------------------------------------

    def get_connection(self, server_id: str) -> Optional[ServerConnection]:
        return self._connections.get(server_id)

    def get_connected_servers(self) -> List[ServerConnection]:
        return [
            c for c in self._connections.values()
            if c.state == ConnectionState.CONNECTED
        ]

    def get_all_tools(self) -> List[ToolDefinition]:
        """Инструменты подключённых серверов в порядке подключения."""
        tools: List[ToolDefinition] = []
        for connection in self.get_connected_servers():
            tools.extend(connection.tools)
        return tools

    def get_tools_with_origin(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "server_id": tool.owner_id,
                "server_name": tool.owner_name,
            }
            for tool in self.get_all_tools()
        ]

    def get_tool_owner(self, tool_name: str) -> Optional[str]:
        return self._tool_index.get(tool_name)

    def get_connection_status(self) -> Dict[str, Dict[str, Any]]:
        return {cid: c.to_status() for cid, c in self._connections.items()}

    def has_connections(self) -> bool:
        return bool(self.get_connected_servers())

    def has_connecting_connections(self) -> bool:
        return any(
            c.state == ConnectionState.CONNECTING for c in self._connections.values()
        )

    def get_total_tool_count(self) -> int:
        return sum(len(c.tools) for c in self.get_connected_servers())
