"""
A2ARegistry - регистрация A2A агентов и отправка им задач.

A2A не держит соединение: регистрация только запоминает id, имя и
invoke URL, а каждая задача - один HTTP POST с сообщением.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from ..ai.tools import ToolDefinition, a2a_tool_definition
from ..config import ServerConfig
from ..constants import Timeouts
from ..errors import ToolExecutionError, ToolNotFoundError, ToolTimeoutError, sanitize_error
from ..security.url_validator import URLValidator, URLValidationError


logger = logging.getLogger(__name__)


@dataclass
class AgentRegistration:
    """
    Зарегистрированный A2A агент.

    Attributes:
        id: ID из конфигурации
        name: Отображаемое имя
        url: Invoke URL
        api_key: Bearer токен (опционально)
        is_trusted: Доверенный агент
        card: Agent card, если была загружена
    """
    id: str
    name: str
    url: str
    api_key: Optional[str] = None
    is_trusted: bool = False
    card: Optional[Dict[str, Any]] = None


def get_agent_card_url(invoke_url: str) -> str:
    """
    URL agent card по invoke URL.

    Example:
        ```python
        get_agent_card_url("http://localhost:8080/invoke")
        # 'http://localhost:8080/.well-known/agent-card.json'
        ```
    """
    parsed = urlparse(invoke_url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Invalid invoke URL: {invoke_url}")
    return f"{parsed.scheme}://{parsed.netloc}/.well-known/agent-card.json"


def build_message(text: str) -> Dict[str, Any]:
    """Сообщение A2A от пользователя с одной текстовой частью."""
    return {
        "kind": "message",
        "messageId": f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
        "role": "user",
        "parts": [{"kind": "text", "text": text}],
    }


def extract_response_text(data: Any) -> str:
    """
    Текст ответа агента.

    Порядок: текстовые части parts, затем плоское поле
    response / text / message, иначе JSON всего ответа.
    """
    if isinstance(data, dict):
        parts = data.get("parts")
        if isinstance(parts, list):
            texts = [
                str(part.get("text", "")) for part in parts
                if isinstance(part, dict)
                and (part.get("kind") == "text" or part.get("type") == "text")
            ]
            if texts:
                return "\n".join(texts)

        for key in ("response", "text", "message"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value

    if isinstance(data, str):
        return data
    return json.dumps(data, ensure_ascii=False)


class A2ARegistry:
    """
    Реестр A2A агентов одной сессии.

    Example:
        ```python
        registry = A2ARegistry(timeout=120)
        registry.register_agents(server_configs)
        answer = await registry.execute_task("travel", "Find flights to Rome")
        await registry.disconnect_all()
        ```
    """

    def __init__(
        self,
        timeout: float = Timeouts.A2A_INVOKE,
        client: Optional[httpx.AsyncClient] = None,
        url_validator: Optional[URLValidator] = None
    ):
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._url_validator = url_validator or URLValidator()
        self._agents: Dict[str, AgentRegistration] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0))
            self._owns_client = True
        return self._client

    def register_agents(self, configs: List[ServerConfig]) -> List[AgentRegistration]:
        """
        Регистрирует включённые A2A агенты.

        Args:
            configs: Конфигурации серверов (MCP и выключенные пропускаются)

        Returns:
            List[AgentRegistration]: Зарегистрированные агенты
        """
        registered = []
        for server in configs:
            if not server.enabled or server.protocol != "a2a":
                continue
            try:
                url = self._url_validator.validate_endpoint(server.url)
            except URLValidationError as e:
                logger.error(f"A2A агент {server.name} пропущен: {e}")
                continue

            agent = AgentRegistration(
                id=server.id,
                name=server.name,
                url=url,
                api_key=server.api_key,
                is_trusted=server.is_trusted,
            )
            self._agents[server.id] = agent
            registered.append(agent)
            logger.info(f"📝 A2A агент {server.name} зарегистрирован: {url}")

        return registered

    def unregister(self, agent_id: str) -> None:
        self._agents.pop(agent_id, None)

    def get_agent(self, agent_id: str) -> Optional[AgentRegistration]:
        return self._agents.get(agent_id)

    def get_registered_agents(self) -> List[AgentRegistration]:
        return list(self._agents.values())

    def has_agents(self) -> bool:
        return bool(self._agents)

    def get_tool_definitions(self) -> List[ToolDefinition]:
        """По одному инструменту a2a_<имя> на агента."""
        return [a2a_tool_definition(agent.id, agent.name) for agent in self._agents.values()]

    def get_connection_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            agent.id: {
                "id": agent.id,
                "name": agent.name,
                "url": agent.url,
                "protocol": "a2a",
                "registered": True,
                "card": bool(agent.card),
            }
            for agent in self._agents.values()
        }

    def _headers(self, agent: AgentRegistration) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if agent.api_key:
            headers["Authorization"] = f"Bearer {agent.api_key}"
        return headers

    async def execute_task(self, agent_id: str, task: str) -> str:
        """
        Отправляет задачу агенту.

        Args:
            agent_id: ID агента
            task: Задача на естественном языке

        Returns:
            str: Текст ответа агента

        Raises:
            ToolNotFoundError: Агент не зарегистрирован
            ToolTimeoutError: Агент не ответил за timeout
            ToolExecutionError: HTTP ошибка или сбой соединения
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            raise ToolNotFoundError(f"A2A agent '{agent_id}' is not registered")

        logger.info(f"💬 A2A {agent.name}: {task[:80]}")

        try:
            response = await self._get_client().post(
                agent.url,
                json=build_message(task),
                headers=self._headers(agent),
            )
        except httpx.TimeoutException as e:
            raise ToolTimeoutError(
                f"A2A agent {agent.name} did not respond within {self.timeout:g}s"
            ) from e
        except httpx.HTTPError as e:
            raise ToolExecutionError(
                f"A2A agent {agent.name} unreachable: {sanitize_error(str(e))}"
            ) from e

        if response.status_code >= 400:
            raise ToolExecutionError(
                f"A2A agent error: HTTP {response.status_code} "
                f"{response.reason_phrase}. {sanitize_error(response.text[:300])}"
            )

        try:
            data = response.json()
        except ValueError:
            logger.debug(f"A2A {agent.name}: ответ не JSON, возвращаем текст")
            return response.text

        text = extract_response_text(data)
        logger.debug(f"A2A {agent.name} ответ: {text[:200]}")
        return text

    async def send_message(self, agent_id: str, text: str) -> str:
        """Синоним execute_task для разговорного режима."""
        return await self.execute_task(agent_id, text)

    async def fetch_agent_card(self, agent_id: str) -> Optional[Dict[str, Any]]:
        """
        Загружает agent card агента и сохраняет её в регистрации.

        Returns:
            Dict | None: Agent card или None при ошибке
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            return None

        try:
            card_url = get_agent_card_url(agent.url)
            response = await self._get_client().get(
                card_url,
                headers=self._headers(agent),
                timeout=Timeouts.A2A_AGENT_CARD,
            )
            response.raise_for_status()
            card = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Agent card для {agent.name} недоступна: {sanitize_error(str(e))}")
            return None

        if not isinstance(card, dict):
            logger.warning(f"Agent card для {agent.name} не является объектом")
            return None

        agent.card = card
        logger.info(f"✅ Agent card {agent.name}: {card.get('name', '?')}")
        return card

    async def disconnect_all(self) -> None:
        """Очищает реестр и закрывает HTTP клиент."""
        count = len(self._agents)
        self._agents.clear()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info(f"A2A агенты сняты с регистрации: {count}")
