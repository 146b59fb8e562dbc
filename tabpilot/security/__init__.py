"""
Security модуль TabPilot.

Содержит URLValidator для проверки адресов навигации
и endpoint серверов.
"""

from .url_validator import URLValidator, URLValidationError

__all__ = [
    "URLValidator",
    "URLValidationError",
]
