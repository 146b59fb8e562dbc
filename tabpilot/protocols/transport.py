"""
StreamableHttpTransport - MCP транспорт поверх HTTP POST.

Каждое JSON-RPC сообщение отправляется отдельным POST запросом.
Сервер отвечает либо JSON телом, либо SSE потоком (text/event-stream).
Все входящие сообщения передаются в on_message; корреляцию
запросов и ответов делает владелец транспорта (ServerConnection).
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..constants import MCP
from ..errors import ProtocolError, TransportError, sanitize_error


logger = logging.getLogger(__name__)


MessageHandler = Callable[[Dict[str, Any]], None]


class MCPTransportError(TransportError):
    """Сбой HTTP обмена с MCP сервером."""
    pass


def parse_sse_messages(text: str) -> List[Dict[str, Any]]:
    """
    Достаёт JSON сообщения из SSE текста.

    Многострочные data: поля одного события склеиваются через перевод
    строки. Нераспарсиваемые события пропускаются.

    Args:
        text: Сырой (возможно оборванный) SSE поток

    Returns:
        List[Dict]: JSON объекты из data: полей
    """
    messages: List[Dict[str, Any]] = []
    data_lines: List[str] = []

    def flush() -> None:
        if not data_lines:
            return
        payload = "\n".join(data_lines)
        data_lines.clear()
        try:
            parsed = json.loads(payload)
        except ValueError:
            return
        if isinstance(parsed, dict):
            messages.append(parsed)
        elif isinstance(parsed, list):
            messages.extend(m for m in parsed if isinstance(m, dict))

    for line in text.splitlines():
        if not line.strip():
            flush()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    flush()
    return messages


class StreamableHttpTransport:
    """
    Транспорт MCP Streamable HTTP на httpx.

    Attributes:
        url: Endpoint MCP сервера
        on_message: Обработчик всех входящих JSON-RPC сообщений
        session_id: Значение заголовка Mcp-Session-Id от сервера

    Example:
        ```python
        transport = StreamableHttpTransport(
            "https://mcp.example.com/mcp",
            headers={"Authorization": "Bearer ..."}
        )
        transport.on_message = connection.dispatch
        await transport.start()
        await transport.send({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
        await transport.close()
        ```
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 300.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self.on_message: Optional[MessageHandler] = None
        self.session_id: Optional[str] = None
        self._client = client
        self._owns_client = client is None
        self._partial: Dict[Any, str] = {}

    @property
    def is_started(self) -> bool:
        return self._client is not None

    async def start(self) -> None:
        """Создаёт HTTP клиент (если не передан снаружи)."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0))
            self._owns_client = True

    def _request_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "User-Agent": f"{MCP.CLIENT_NAME}/{MCP.CLIENT_VERSION}",
        }
        headers.update(self.headers)
        if self.session_id:
            headers[MCP.SESSION_HEADER] = self.session_id
        return headers

    def _dispatch(self, message: Dict[str, Any]) -> None:
        if self.on_message is None:
            logger.debug(f"Нет обработчика для сообщения: {message.get('method') or message.get('id')}")
            return
        self.on_message(message)

    def partial_buffer(self, request_id: Any) -> str:
        """Сырой SSE текст, полученный для запроса (в том числе оборванный)."""
        return self._partial.get(request_id, "")

    def clear_partial(self, request_id: Any) -> None:
        self._partial.pop(request_id, None)

    async def send(self, message: Dict[str, Any]) -> None:
        """
        Отправляет одно JSON-RPC сообщение и читает ответ сервера.

        Возвращает управление, когда HTTP обмен завершён. Ответы
        приходят через on_message по мере чтения потока.

        Args:
            message: JSON-RPC запрос или уведомление

        Raises:
            MCPTransportError: HTTP ошибка, обрыв соединения, таймаут
            ProtocolError: Тело ответа не является JSON
        """
        if self._client is None:
            raise MCPTransportError("Transport not started")

        request_id = message.get("id")

        try:
            async with self._client.stream(
                "POST",
                self.url,
                json=message,
                headers=self._request_headers(),
            ) as response:
                sid = response.headers.get(MCP.SESSION_HEADER)
                if sid:
                    self.session_id = sid

                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    if response.status_code == 404 and self.session_id:
                        logger.warning("MCP HTTP session expired (404), clearing session")
                        self.session_id = None
                    raise MCPTransportError(
                        sanitize_error(f"HTTP {response.status_code}: {body[:200]}"),
                        hint="Check the server URL and API key",
                    )

                # 202 Accepted - ответ на уведомление, тела нет
                if response.status_code == 202:
                    return

                content_type = response.headers.get("content-type", "")
                if "text/event-stream" in content_type:
                    await self._read_event_stream(response, request_id)
                else:
                    await self._read_json(response)

        except httpx.TimeoutException as e:
            raise MCPTransportError(f"Request to MCP server timed out: {sanitize_error(str(e))}") from e
        except httpx.HTTPError as e:
            raise MCPTransportError(
                f"Connection failed: {sanitize_error(str(e))}",
                hint="Check that the MCP server is running and reachable",
            ) from e

    async def _read_json(self, response: httpx.Response) -> None:
        raw = await response.aread()
        if not raw.strip():
            return
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise ProtocolError(f"Invalid JSON response: {e}") from e

        if isinstance(data, list):
            for item in data:
                if isinstance(item, dict):
                    self._dispatch(item)
        elif isinstance(data, dict):
            self._dispatch(data)
        else:
            raise ProtocolError(f"Unexpected JSON-RPC payload: {type(data).__name__}")

    async def _read_event_stream(self, response: httpx.Response, request_id: Any) -> None:
        data_lines: List[str] = []
        buffer_key = request_id

        async for line in response.aiter_lines():
            self._partial[buffer_key] = self._partial.get(buffer_key, "") + line + "\n"

            if not line.strip():
                self._dispatch_event(data_lines)
                data_lines = []
                continue

            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())

        self._dispatch_event(data_lines)
        # Буфер нужен только пока поток не дочитан
        self._partial.pop(buffer_key, None)

    def _dispatch_event(self, data_lines: List[str]) -> None:
        if not data_lines:
            return
        payload = "\n".join(data_lines)
        try:
            data = json.loads(payload)
        except ValueError:
            logger.debug(f"SSE событие не является JSON: {payload[:100]}")
            return
        items = data if isinstance(data, list) else [data]
        for item in items:
            if isinstance(item, dict):
                self._dispatch(item)

    async def close(self) -> None:
        """Завершает сессию на сервере и закрывает HTTP клиент."""
        if self._client is None:
            return

        if self.session_id:
            try:
                await self._client.delete(
                    self.url,
                    headers={MCP.SESSION_HEADER: self.session_id, **self.headers},
                )
            except httpx.HTTPError as e:
                logger.debug(f"DELETE session не удался: {sanitize_error(str(e))}")

        if self._owns_client:
            await self._client.aclose()
        self._client = None
        self.session_id = None
        self._partial.clear()
