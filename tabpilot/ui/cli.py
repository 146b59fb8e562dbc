"""
CLI - командный интерфейс TabPilot.

Использует rich для вывода с цветами и панелями.
Текст модели печатается по мере поступления, Ctrl+C во время
задачи останавливает её (следующий ход не начнётся).
"""

import asyncio
import logging
import signal
import sys
import time
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich import box

from ..ai.tools import ToolOrigin
from ..browser.controller import PlaywrightActuator
from ..config import Config, get_config
from ..core.agent import AgentError, ChatAgent
from ..core.state import CancelToken, LoopResult, LoopStatus
from ..errors import TransportError


logger = logging.getLogger(__name__)


VERSION = "1.0.0"

_STATUS_STYLES = {
    LoopStatus.COMPLETED: ("green", "✅ Готово"),
    LoopStatus.CANCELLED: ("yellow", "⏹️ Остановлено"),
    LoopStatus.TURN_LIMIT: ("yellow", "⚠️ Лимит ходов"),
}


class CLI:
    """
    Командный интерфейс для ChatAgent.

    Предоставляет:
    - Баннер и справку
    - Команды status / servers / tools / clear / exit
    - Потоковый вывод ответа и вызовов инструментов

    Example:
        ```python
        cli = CLI()
        await cli.run()
        ```
    """

    def __init__(self, config: Optional[Config] = None, agent: Optional[ChatAgent] = None):
        """
        Инициализирует CLI.

        Args:
            config: Конфигурация (по умолчанию из .env)
            agent: Готовая сессия (по умолчанию создаётся при первой задаче)
        """
        if sys.platform == "win32":
            try:
                sys.stdout.reconfigure(encoding="utf-8")
                sys.stderr.reconfigure(encoding="utf-8")
            except (AttributeError, TypeError):
                pass

        self.console = Console()
        self.config = config or get_config()
        self._agent = agent
        self._cancel_token: Optional[CancelToken] = None

    def _print_banner(self) -> None:
        """Выводит баннер при запуске."""
        browser = "on" if self.config.loop.browser_tools_enabled else "off"
        self.console.print(Panel(
            f"[bold cyan]TabPilot[/bold cyan] v{VERSION}\n"
            f"[dim]AI-чат с инструментами браузера, MCP и A2A[/dim]\n\n"
            f"[dim]Провайдер: {self.config.llm.provider} · модель: {self.config.llm.model} · "
            f"браузер: {browser}[/dim]",
            border_style="cyan",
            box=box.DOUBLE,
        ))
        self.console.print("[dim]Введите сообщение или 'help' для справки[/dim]\n")

    def _print_help(self) -> None:
        """Выводит справку по командам."""
        help_table = Table(
            title="📖 Справка по командам",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold cyan"
        )
        help_table.add_column("Команда", style="cyan", width=20)
        help_table.add_column("Описание", style="white")

        help_table.add_row("help", "Показать эту справку")
        help_table.add_row("status", "Состояние сессии")
        help_table.add_row("servers", "MCP серверы и A2A агенты")
        help_table.add_row("tools", "Каталог инструментов")
        help_table.add_row("clear", "Очистить историю чата")
        help_table.add_row("exit / quit", "Выйти из программы")
        help_table.add_row("[сообщение]", "Отправить сообщение (Ctrl+C - остановить)")

        self.console.print()
        self.console.print(help_table)

    def _print_status(self) -> None:
        status = self._agent.get_status() if self._agent else {}
        table = Table(title="📊 Статус", box=box.ROUNDED)
        table.add_column("Параметр", style="cyan")
        table.add_column("Значение", style="white")

        table.add_row("Сессия", "🟢 Запущена" if self._agent else "🔴 Не запущена")
        table.add_row("Провайдер", self.config.llm.provider)
        table.add_row("Модель", self.config.llm.model)
        table.add_row("Браузер", "on" if status.get("browser_tools") else "off")
        table.add_row("История", str(status.get("history_messages", 0)))
        table.add_row("Инструментов", str(status.get("tools", 0)))

        self.console.print()
        self.console.print(table)

    def _print_servers(self) -> None:
        if not self._agent:
            self.console.print("[dim]Сессия ещё не запущена[/dim]")
            return
        status = self._agent.get_status()

        table = Table(title="🔌 Серверы", box=box.ROUNDED)
        table.add_column("ID", style="cyan")
        table.add_column("Имя")
        table.add_column("Протокол")
        table.add_column("Состояние")
        table.add_column("Инструменты", justify="right")

        for server in status["mcp_servers"].values():
            state = server["state"]
            if server.get("error"):
                state += f" ({server['error']})"
            table.add_row(server["id"], server["name"], "mcp", state, str(server["tool_count"]))
        for agent in status["a2a_agents"].values():
            table.add_row(agent["id"], agent["name"], "a2a", "registered", "1")

        self.console.print()
        self.console.print(table)

    def _print_tools(self) -> None:
        if not self._agent:
            self.console.print("[dim]Сессия ещё не запущена[/dim]")
            return
        self._agent.router.build_catalog(include_actuator=self._agent.browser_tools_enabled)

        table = Table(title="🧰 Инструменты", box=box.ROUNDED)
        table.add_column("Имя", style="cyan")
        table.add_column("Источник")
        table.add_column("Описание", style="dim")
        for tool in self._agent.router.catalog:
            source = tool.origin.value
            if tool.origin != ToolOrigin.ACTUATOR:
                source += f": {tool.owner_name}"
            description = (tool.description or "").strip().splitlines()
            table.add_row(tool.name, source, description[0][:80] if description else "")

        self.console.print()
        self.console.print(table)

    def _on_text(self, chunk: str) -> None:
        if chunk.startswith("\n[Executing:"):
            self.console.print(chunk.rstrip(), style="dim cyan", markup=False, highlight=False)
        else:
            self.console.print(chunk, markup=False, highlight=False)

    def _on_tool_result(self, name: str, result: Any) -> None:
        if isinstance(result, dict) and result.get("error"):
            self.console.print(f"[red]✗ {name}:[/red] {result['error']}", highlight=False)

    async def _ensure_agent(self) -> ChatAgent:
        if self._agent is None:
            actuator = PlaywrightActuator(self.config.browser) if self.config.loop.browser_tools_enabled else None
            self._agent = ChatAgent(
                config=self.config,
                actuator=actuator,
                on_text=self._on_text,
                on_tool_result=self._on_tool_result,
            )
            with self.console.status("[cyan]Подключение к серверам...[/cyan]"):
                await self._agent.start()
        return self._agent

    def _print_result(self, result: LoopResult, elapsed: float) -> None:
        color, label = _STATUS_STYLES.get(result.status, ("white", result.status.value))
        self.console.print(
            f"\n[{color}]{label}[/{color}] [dim]· ходов: {result.turns} · "
            f"инструментов: {result.tool_calls} · {elapsed:.1f} сек[/dim]"
        )

    async def _execute_task(self, text: str) -> None:
        """
        Выполняет сообщение пользователя с обработкой Ctrl+C.

        Args:
            text: Сообщение
        """
        start_time = time.time()
        self._cancel_token = CancelToken()

        loop = asyncio.get_running_loop()
        handler_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self._cancel_token.cancel)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            # Windows: Ctrl+C придёт как KeyboardInterrupt
            pass

        try:
            agent = await self._ensure_agent()
            self.console.print()
            result = await agent.chat(text, cancel_token=self._cancel_token)
            self._print_result(result, time.time() - start_time)
        except TransportError as e:
            self.console.print(f"\n[bold red]Ошибка соединения:[/bold red] {e}", highlight=False)
        except AgentError as e:
            self.console.print(f"[bold red]Ошибка агента:[/bold red] {e}")
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)
            self._cancel_token = None

    async def run(self) -> None:
        """
        Главный цикл CLI.

        Выводит баннер и обрабатывает команды пользователя.
        """
        self._print_banner()

        try:
            while True:
                try:
                    text = Prompt.ask("\n[bold cyan]Вы[/bold cyan]").strip()
                except (KeyboardInterrupt, EOFError):
                    self.console.print("\n[dim]До свидания! 👋[/dim]")
                    break

                if not text:
                    continue

                match text.lower():
                    case "exit" | "quit" | "q":
                        self.console.print("[dim]До свидания! 👋[/dim]")
                        break
                    case "help":
                        self._print_help()
                    case "status":
                        self._print_status()
                    case "servers":
                        self._print_servers()
                    case "tools":
                        self._print_tools()
                    case "clear":
                        if self._agent:
                            self._agent.clear_history()
                        self.console.print("[dim]История очищена[/dim]")
                    case _:
                        try:
                            await self._execute_task(text)
                        except KeyboardInterrupt:
                            if self._agent:
                                self._agent.stop()
                            self.console.print("\n[yellow]Прервано пользователем[/yellow]")
        finally:
            if self._agent:
                self.console.print("[dim]Закрытие сессии...[/dim]")
                await self._agent.close()


async def run_cli(config: Optional[Config] = None) -> None:
    """
    Запускает CLI интерфейс.

    Args:
        config: Конфигурация (по умолчанию из .env)
    """
    cli = CLI(config=config)
    await cli.run()
