"""
URL Validator - проверка URL перед навигацией и подключением.

Два сценария:
- navigate: адрес из tool_use модели. Блокируем file://, javascript:,
  data:, vbscript:; URL без схемы дополняем https://.
- endpoint: URL MCP сервера или A2A агента из servers.json.
  Только http/https и обязательно с хостом.
"""

import logging
from urllib.parse import urlparse
from typing import Optional, Set

from ..constants import Security


logger = logging.getLogger(__name__)


_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


class URLValidationError(ValueError):
    """Ошибка валидации URL."""
    pass


class URLValidator:
    """
    Валидатор URL.

    Example:
        ```python
        validator = URLValidator()

        validator.normalize_navigation("example.com")  # 'https://example.com'
        validator.normalize_navigation("javascript:alert(1)")  # URLValidationError

        validator.validate_endpoint("https://mcp.example.com/mcp")  # OK
        validator.validate_endpoint("ftp://host")  # URLValidationError
        ```
    """

    def __init__(
        self,
        allowed_schemes: Optional[Set[str]] = None,
        blocked_schemes: Optional[Set[str]] = None,
        allowed_special: Optional[Set[str]] = None
    ):
        self.allowed_schemes = allowed_schemes or Security.ALLOWED_URL_SCHEMES
        self.blocked_schemes = blocked_schemes or Security.BLOCKED_URL_SCHEMES
        self.allowed_special = allowed_special or Security.ALLOWED_SPECIAL_URLS

    def _check_scheme(self, url: str, scheme: str) -> None:
        if scheme in self.blocked_schemes:
            logger.warning(f"Заблокирована опасная схема URL: {scheme}: в {url}")
            raise URLValidationError(
                f"URL scheme '{scheme}' is blocked. Use http:// or https://"
            )
        if scheme and scheme not in self.allowed_schemes:
            raise URLValidationError(
                f"URL scheme '{scheme}' is not allowed. "
                f"Allowed: {', '.join(sorted(self.allowed_schemes))}"
            )

    def normalize_navigation(self, url: str) -> str:
        """
        Проверяет адрес для navigate и дополняет схему.

        Args:
            url: Адрес из параметров инструмента

        Returns:
            str: Адрес, готовый для page.goto()

        Raises:
            URLValidationError: Пустой или опасный URL
        """
        url = (url or "").strip()
        if not url:
            raise URLValidationError("URL must not be empty")

        if url.lower() in self.allowed_special:
            return url

        parsed = urlparse(url)
        scheme = parsed.scheme.lower()

        # "localhost:3000" парсится как scheme="localhost"
        if scheme and not parsed.netloc and scheme not in self.blocked_schemes:
            return f"https://{url}"

        self._check_scheme(url, scheme)

        if not scheme:
            return f"https://{url}"
        return url

    def validate_endpoint(self, url: str) -> str:
        """
        Проверяет URL MCP сервера или A2A агента.

        Args:
            url: URL из конфигурации сервера

        Returns:
            str: URL без пробелов по краям

        Raises:
            URLValidationError: URL без хоста или с неподдерживаемой схемой
        """
        url = (url or "").strip()
        parsed = urlparse(url)
        scheme = parsed.scheme.lower()

        if not scheme or not parsed.netloc:
            raise URLValidationError(f"Endpoint URL must be absolute: {url!r}")

        self._check_scheme(url, scheme)

        if scheme == "http" and (parsed.hostname or "") not in _LOCAL_HOSTS:
            logger.warning(f"Endpoint без TLS: {parsed.netloc}")

        return url
