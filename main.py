"""
TabPilot - AI-чат с инструментами браузера, MCP и A2A.

Запуск:
    python main.py

Требования:
    - Python 3.10+
    - Установленные зависимости: pip install -e .
    - Playwright: playwright install chromium
    - API ключ в .env файле (ANTHROPIC_API_KEY / OPENROUTER_API_KEY / CUSTOM_API_KEY)
    - Серверы MCP / A2A в servers.json (SERVERS_FILE)
"""

import asyncio
import logging
import sys

from tabpilot.config import get_config
from tabpilot.ui.cli import run_cli


def setup_logging(level: str = "WARNING") -> None:
    """Настраивает логирование."""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format=log_format,
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )

    # Уменьшаем шум от библиотек
    for name in ("httpx", "httpcore", "anthropic", "openai", "playwright"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def main() -> None:
    """Точка входа в приложение."""
    config = get_config()
    setup_logging(config.log_level)
    await run_cli(config)


def run() -> None:
    """Синхронная обёртка для запуска."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nВыход...")


if __name__ == "__main__":
    run()
