"""
Browser automation module.

Примитивы браузера для модели (Actuator), их реализация
на Playwright и нормализация скриншотов.
"""

from .actuator import Actuator, BrowserError
from .controller import PlaywrightActuator
from .screenshot import NormalizedScreenshot, ScreenshotNormalizer

__all__ = [
    "Actuator",
    "BrowserError",
    "PlaywrightActuator",
    "NormalizedScreenshot",
    "ScreenshotNormalizer",
]
