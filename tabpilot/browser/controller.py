"""
PlaywrightActuator - управление браузером через Playwright.

Реализует примитивы Actuator поверх persistent context:
навигация, клики, ввод текста, прокрутка, контекст страницы
и скриншоты.
"""

import asyncio
import base64
import logging
from pathlib import Path
from typing import Optional

from playwright.async_api import (
    async_playwright,
    Playwright,
    BrowserContext,
    Page,
    TimeoutError as PlaywrightTimeoutError,
    Error as PlaywrightError,
)

from ..config import BrowserConfig
from ..constants import Limits, Timeouts
from ..security.url_validator import URLValidator, URLValidationError
from .actuator import Actuator, ActionResult, BrowserError, ElementNotFoundError, NavigationError


logger = logging.getLogger(__name__)


PAGE_CONTEXT_SCRIPT = """
([maxText, maxElements]) => {
    const selectorFor = (el) => {
        if (el.id) return '#' + CSS.escape(el.id);
        const name = el.getAttribute('name');
        if (name) return el.tagName.toLowerCase() + '[name="' + name + '"]';
        if (typeof el.className === 'string') {
            const classes = el.className.split(' ').filter(c => c.trim());
            if (classes.length > 0) return el.tagName.toLowerCase() + '.' + CSS.escape(classes[0]);
        }
        return el.tagName.toLowerCase();
    };

    const interactiveElements = Array.from(document.querySelectorAll(
        'button, input, textarea, select, a[href], [role="button"], [onclick]'
    ))
        .map(el => {
            const rect = el.getBoundingClientRect();
            return {
                tag: el.tagName.toLowerCase(),
                text: (el.innerText || el.value || '').trim().slice(0, 80),
                selector: selectorFor(el),
                type: el.type || undefined,
                placeholder: el.placeholder || undefined,
                ariaLabel: el.getAttribute('aria-label') || undefined,
                visible: rect.width > 0 && rect.height > 0
                    && rect.top >= 0 && rect.bottom <= window.innerHeight,
                center: {
                    x: Math.round(rect.left + rect.width / 2),
                    y: Math.round(rect.top + rect.height / 2),
                },
            };
        })
        .filter(el => el.visible)
        .slice(0, maxElements);

    return {
        url: window.location.href,
        title: document.title,
        textContent: document.body ? document.body.innerText.slice(0, maxText) : '',
        interactiveElements,
        viewport: {
            width: window.innerWidth,
            height: window.innerHeight,
            scrollX: window.scrollX,
            scrollY: window.scrollY,
            devicePixelRatio: window.devicePixelRatio,
        },
    };
}
"""


class PlaywrightActuator(Actuator):
    """
    Actuator на основе Playwright.

    Attributes:
        config: Конфигурация браузера
        page: Активная страница

    Example:
        ```python
        actuator = PlaywrightActuator(config.browser)
        await actuator.start()
        await actuator.execute("navigate", {"url": "example.com"})
        shot = await actuator.execute("screenshot", {})
        await actuator.close()
        ```
    """

    def __init__(
        self,
        config: Optional[BrowserConfig] = None,
        url_validator: Optional[URLValidator] = None
    ):
        """
        Инициализирует контроллер браузера.

        Args:
            config: Конфигурация браузера
            url_validator: Проверка URL перед навигацией
        """
        self.config = config or BrowserConfig()
        self._playwright: Optional[Playwright] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._url_validator = url_validator or URLValidator()

    @property
    def page(self) -> Optional[Page]:
        """Возвращает активную страницу."""
        return self._page

    @property
    def is_running(self) -> bool:
        return self._page is not None

    async def start(self) -> None:
        """
        Запускает браузер.

        Создаёт persistent context для сохранения сессий
        между запусками.

        Raises:
            BrowserError: Если не удалось запустить браузер
        """
        if self._page is not None:
            return

        try:
            logger.info(f"Запуск браузера: {self.config.browser_type}")

            self._playwright = await async_playwright().start()
            browser_type = getattr(
                self._playwright,
                self.config.browser_type,
                self._playwright.chromium
            )

            user_data_dir = Path(self.config.user_data_dir)
            user_data_dir.mkdir(parents=True, exist_ok=True)

            self._context = await browser_type.launch_persistent_context(
                user_data_dir=str(user_data_dir),
                headless=self.config.headless,
                viewport={
                    "width": self.config.viewport_width,
                    "height": self.config.viewport_height
                },
                args=["--disable-blink-features=AutomationControlled", "--no-first-run"],
                ignore_default_args=["--enable-automation"],
            )

            if self._context.pages:
                self._page = self._context.pages[0]
            else:
                self._page = await self._context.new_page()

            self._page.set_default_timeout(self.config.default_timeout)
            self._page.set_default_navigation_timeout(self.config.navigation_timeout)

            # Новые вкладки становятся активной страницей
            self._context.on("page", self._on_new_page)

            logger.info("Браузер успешно запущен")

        except PlaywrightError as e:
            logger.error(f"Ошибка запуска браузера: {e}")
            await self.close()
            raise BrowserError(f"Failed to launch browser: {e}") from e

    def _on_new_page(self, new_page: Page) -> None:
        logger.info(f"Открыта новая вкладка: {new_page.url}")
        self._page = new_page

    def _ensure_page(self) -> Page:
        """
        Проверяет, что страница доступна.

        Raises:
            BrowserError: Если браузер не запущен
        """
        if self._page is None or self._page.is_closed():
            raise BrowserError("Browser is not running. Call start() first.")
        return self._page

    async def navigate(self, url: str) -> ActionResult:
        """
        Переходит на указанный URL.

        URL без схемы получает https://, опасные схемы
        (javascript:, file:, data:) блокируются.

        Raises:
            NavigationError: Навигация не удалась или URL заблокирован
        """
        page = self._ensure_page()

        try:
            target = self._url_validator.normalize_navigation(url)
        except URLValidationError as e:
            logger.error(f"URL заблокирован: {url} - {e}")
            raise NavigationError(str(e)) from e

        try:
            logger.info(f"Навигация на: {target}")
            await page.goto(target, wait_until="domcontentloaded")
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Timed out loading {target}") from e
        except PlaywrightError as e:
            raise NavigationError(f"Failed to load {target}: {e}") from e

        logger.info(f"Навигация завершена: {page.url}")
        return {"success": True, "url": page.url}

    async def click_element(
        self,
        selector: Optional[str] = None,
        text: Optional[str] = None
    ) -> ActionResult:
        """
        Клик по элементу: сначала по селектору, затем по тексту.

        Стратегии (по порядку):
        1. Обычный клик через locator
        2. Force click (игнорирует перекрытие)
        3. Клик по тексту элемента

        Raises:
            ElementNotFoundError: Элемент не найден ни одной стратегией
        """
        page = self._ensure_page()
        if not selector and not text:
            raise BrowserError("clickElement requires 'selector' or 'text'")

        last_error: Optional[Exception] = None

        if selector:
            locator = page.locator(selector).first
            try:
                await locator.click(timeout=Timeouts.CLICK)
                logger.debug(f"Клик выполнен: {selector}")
                return {"success": True, "selector": selector}
            except PlaywrightError as e:
                last_error = e
                logger.debug(f"Обычный клик не удался: {e}, пробуем force click")

            try:
                await locator.click(force=True, timeout=Timeouts.CLICK)
                logger.debug(f"Force click выполнен: {selector}")
                return {"success": True, "selector": selector}
            except PlaywrightError as e:
                last_error = e

        if text:
            try:
                await page.get_by_text(text, exact=False).first.click(timeout=Timeouts.CLICK)
                logger.debug(f"Клик по тексту выполнен: '{text}'")
                return {"success": True, "text": text}
            except PlaywrightError as e:
                last_error = e

        target = selector or f"text '{text}'"
        raise ElementNotFoundError(f"Element not found or not clickable: {target} ({last_error})")

    async def click(self, x: float, y: float) -> ActionResult:
        """Клик по координатам viewport."""
        page = self._ensure_page()
        try:
            await page.mouse.click(float(x), float(y))
        except PlaywrightError as e:
            raise BrowserError(f"Click at ({x}, {y}) failed: {e}") from e
        logger.debug(f"Клик по координатам выполнен: ({x}, {y})")
        return {"success": True, "x": x, "y": y}

    async def type_text(self, text: str, selector: Optional[str] = None) -> ActionResult:
        """
        Вводит текст в элемент или в элемент с фокусом.

        Raises:
            ElementNotFoundError: Если элемент не найден
        """
        page = self._ensure_page()

        try:
            if selector:
                element = page.locator(selector).first
                await element.fill(text, timeout=Timeouts.CLICK)
            else:
                await page.keyboard.type(text, delay=20)
        except PlaywrightTimeoutError as e:
            raise ElementNotFoundError(f"Input not found: {selector}") from e
        except PlaywrightError as e:
            raise BrowserError(f"Typing into {selector or 'focused element'} failed: {e}") from e

        logger.debug(f"Текст введён в: {selector or 'focused element'}")
        return {"success": True, "selector": selector, "length": len(text)}

    async def scroll(self, direction: str = "down", amount: int = 500) -> ActionResult:
        """Прокручивает страницу вверх или вниз."""
        page = self._ensure_page()
        delta_y = -amount if direction == "up" else amount
        try:
            await page.evaluate("(dy) => window.scrollBy(0, dy)", delta_y)
            position = await page.evaluate("window.scrollY")
        except PlaywrightError as e:
            raise BrowserError(f"Scroll failed: {e}") from e
        logger.debug(f"Прокрутка: {direction} на {amount}px")
        return {"success": True, "direction": direction, "scrollY": position}

    async def get_page_context(self) -> ActionResult:
        """URL, заголовок, видимый текст, интерактивные элементы и viewport."""
        page = self._ensure_page()
        try:
            context = await page.evaluate(
                PAGE_CONTEXT_SCRIPT,
                [Limits.MAX_PAGE_TEXT, Limits.MAX_INTERACTIVE_ELEMENTS],
            )
        except PlaywrightError as e:
            raise BrowserError(f"Cannot read page context: {e}") from e
        return {"success": True, "pageContext": context}

    async def screenshot(self) -> ActionResult:
        """
        Скриншот viewport.

        Returns:
            ActionResult: image (PNG data URL) и viewport в CSS пикселях
        """
        page = self._ensure_page()
        try:
            png = await page.screenshot(type="png", timeout=Timeouts.SCREENSHOT)
            viewport = await page.evaluate(
                "() => ({width: window.innerWidth, height: window.innerHeight})"
            )
        except PlaywrightTimeoutError as e:
            raise BrowserError("Screenshot timed out") from e
        except PlaywrightError as e:
            raise BrowserError(f"Screenshot failed: {e}") from e

        logger.debug(f"Скриншот создан: {len(png)} байт, viewport {viewport}")
        return {
            "success": True,
            "image": "data:image/png;base64," + base64.b64encode(png).decode("ascii"),
            "viewport": viewport,
        }

    async def press_key(self, key: str) -> ActionResult:
        """Нажимает клавишу (Enter, Tab, Escape, ...)."""
        page = self._ensure_page()
        if not key:
            raise BrowserError("pressKey requires 'key'")
        try:
            await page.keyboard.press(key)
        except PlaywrightError as e:
            raise BrowserError(f"Key press '{key}' failed: {e}") from e
        # Даём странице отреагировать на Enter/Tab
        await asyncio.sleep(0.1)
        return {"success": True, "key": key}

    async def close(self) -> None:
        """
        Закрывает браузер и освобождает ресурсы.
        """
        try:
            if self._context:
                await self._context.close()
            if self._playwright:
                await self._playwright.stop()
            logger.info("Браузер закрыт")
        except PlaywrightError as e:
            logger.error(f"Ошибка при закрытии браузера: {e}")
        finally:
            self._context = None
            self._page = None
            self._playwright = None

    async def __aenter__(self) -> "PlaywrightActuator":
        """Поддержка async context manager."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Закрытие при выходе из контекста."""
        await self.close()
