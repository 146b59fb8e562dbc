"""
ScreenshotNormalizer - ограничение размера скриншотов и пересчёт координат.

Модель видит уменьшенное изображение и называет координаты в его
пикселях. Клик выполняется в координатах viewport, поэтому вместе с
изображением модель получает коэффициенты scale_x / scale_y.
"""

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError

from ..config import VisionConfig
from ..errors import ScreenshotError


logger = logging.getLogger(__name__)


_FORMAT_MEDIA_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


@dataclass
class NormalizedScreenshot:
    """
    Скриншот, готовый для отправки в LLM.

    Attributes:
        data: Изображение в base64 (без data: префикса)
        media_type: MIME тип изображения
        width: Ширина изображения после нормализации
        height: Высота изображения после нормализации
        viewport_width: Ширина viewport в CSS пикселях
        viewport_height: Высота viewport в CSS пикселях
        scale_x: viewport_width / width
        scale_y: viewport_height / height
        resized: Было ли изображение уменьшено
    """
    data: str
    media_type: str
    width: int
    height: int
    viewport_width: int
    viewport_height: int
    scale_x: float = 1.0
    scale_y: float = 1.0
    resized: bool = False

    def to_viewport(self, x: float, y: float) -> Tuple[int, int]:
        """Переводит координаты на изображении в координаты viewport."""
        return round(x * self.scale_x), round(y * self.scale_y)

    def coordinate_note(self) -> str:
        """Текст для модели с размерами и формулой пересчёта."""
        return (
            f"Screenshot size: {self.width}x{self.height} px. "
            f"Viewport size: {self.viewport_width}x{self.viewport_height} px. "
            f"Scale factors: scale_x={self.scale_x:.4f}, scale_y={self.scale_y:.4f}. "
            f"To click something you see at (image_x, image_y) call click with "
            f"x = image_x * {self.scale_x:.4f}, y = image_y * {self.scale_y:.4f}."
        )

    def to_content_blocks(self) -> List[Dict[str, Any]]:
        """Блоки для tool_result: изображение + текст с коэффициентами."""
        return [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": self.media_type,
                    "data": self.data,
                },
            },
            {"type": "text", "text": self.coordinate_note()},
        ]


def decode_image(image: Union[bytes, str]) -> bytes:
    """
    Приводит скриншот к байтам.

    Args:
        image: Байты, base64 строка или data URL

    Returns:
        bytes: Сырые байты изображения

    Raises:
        ScreenshotError: Строку не удалось декодировать
    """
    if isinstance(image, (bytes, bytearray)):
        return bytes(image)

    payload = image.strip()
    if payload.startswith("data:"):
        _, _, payload = payload.partition(",")

    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ScreenshotError(f"Screenshot is not valid base64: {e}") from e


class ScreenshotNormalizer:
    """
    Уменьшает скриншот до заданных границ и считает коэффициенты.

    Example:
        ```python
        normalizer = ScreenshotNormalizer(max_width=1280, max_height=800)
        shot = normalizer.normalize(png_bytes, viewport=(1440, 900))
        x, y = shot.to_viewport(640, 400)
        ```
    """

    def __init__(
        self,
        max_width: int = 1280,
        max_height: int = 800,
        use_jpeg: bool = False,
        jpeg_quality: int = 70
    ):
        self.max_width = max_width
        self.max_height = max_height
        self.use_jpeg = use_jpeg
        self.jpeg_quality = jpeg_quality

    @classmethod
    def from_config(cls, config: VisionConfig) -> "ScreenshotNormalizer":
        return cls(
            max_width=config.max_width,
            max_height=config.max_height,
            use_jpeg=config.use_jpeg,
            jpeg_quality=config.jpeg_quality,
        )

    def _encode(self, img: Image.Image) -> Tuple[bytes, str]:
        buffer = io.BytesIO()
        if self.use_jpeg:
            # JPEG не поддерживает alpha
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            img.save(buffer, format="JPEG", quality=self.jpeg_quality, optimize=True)
            return buffer.getvalue(), "image/jpeg"
        if img.mode not in ("1", "L", "LA", "P", "RGB", "RGBA"):
            img = img.convert("RGBA")
        img.save(buffer, format="PNG", optimize=True)
        return buffer.getvalue(), "image/png"

    def normalize(
        self,
        image: Union[bytes, str],
        viewport: Optional[Tuple[int, int]] = None
    ) -> NormalizedScreenshot:
        """
        Нормализует скриншот.

        Изображение в пределах границ возвращается без изменений
        с коэффициентами 1.0 (форматы вне PNG/JPEG/WebP/GIF
        перекодируются в том же размере). Большее изображение уменьшается
        с сохранением пропорций, коэффициенты = viewport / изображение.

        Args:
            image: Байты, base64 или data URL
            viewport: (ширина, высота) viewport. По умолчанию размер изображения

        Returns:
            NormalizedScreenshot: Изображение и коэффициенты

        Raises:
            ScreenshotError: Изображение не декодируется
        """
        raw = decode_image(image)

        try:
            img = Image.open(io.BytesIO(raw))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            raise ScreenshotError(f"Cannot decode screenshot: {e}") from e

        original_width, original_height = img.size
        viewport_width, viewport_height = viewport or (original_width, original_height)

        if original_width <= self.max_width and original_height <= self.max_height:
            media_type = _FORMAT_MEDIA_TYPES.get(img.format or "")
            if media_type is None:
                # BMP, TIFF и т.п. перекодируем без изменения размера
                logger.debug(f"Скриншот в формате {img.format} перекодирован")
                raw, media_type = self._encode(img)
            return NormalizedScreenshot(
                data=base64.b64encode(raw).decode("ascii"),
                media_type=media_type,
                width=original_width,
                height=original_height,
                viewport_width=viewport_width,
                viewport_height=viewport_height,
            )

        # Вычисляем новые размеры с сохранением пропорций
        ratio = min(self.max_width / original_width, self.max_height / original_height)
        new_width = max(1, min(self.max_width, round(original_width * ratio)))
        new_height = max(1, min(self.max_height, round(original_height * ratio)))

        img = img.resize((new_width, new_height), Image.Resampling.LANCZOS)
        encoded, media_type = self._encode(img)

        logger.debug(
            f"Скриншот уменьшен: {original_width}x{original_height} -> "
            f"{new_width}x{new_height}, viewport {viewport_width}x{viewport_height}"
        )

        return NormalizedScreenshot(
            data=base64.b64encode(encoded).decode("ascii"),
            media_type=media_type,
            width=new_width,
            height=new_height,
            viewport_width=viewport_width,
            viewport_height=viewport_height,
            scale_x=viewport_width / new_width,
            scale_y=viewport_height / new_height,
            resized=True,
        )
