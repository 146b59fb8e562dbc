"""
UI модуль TabPilot.

Содержит CLI интерфейс для взаимодействия с пользователем.
"""

from .cli import CLI, run_cli

__all__ = [
    "CLI",
    "run_cli",
]
