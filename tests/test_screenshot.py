"""Тесты нормализации скриншотов."""

import base64
import io

import pytest
from PIL import Image

from tabpilot.browser.screenshot import ScreenshotNormalizer, decode_image
from tabpilot.config import VisionConfig
from tabpilot.errors import ScreenshotError
from tests.conftest import png_bytes, png_data_url


def image_size(data: str):
    return Image.open(io.BytesIO(base64.b64decode(data))).size


class TestScreenshotNormalizer:
    def test_small_image_passes_through(self):
        raw = png_bytes(800, 600)
        shot = ScreenshotNormalizer(1280, 800).normalize(raw)

        assert not shot.resized
        assert (shot.width, shot.height) == (800, 600)
        assert (shot.scale_x, shot.scale_y) == (1.0, 1.0)
        assert base64.b64decode(shot.data) == raw

    @pytest.mark.parametrize("fmt", ["BMP", "TIFF"])
    def test_small_image_in_other_format_is_reencoded(self, fmt):
        buffer = io.BytesIO()
        Image.new("RGB", (320, 200), "white").save(buffer, format=fmt)

        shot = ScreenshotNormalizer(1280, 800).normalize(buffer.getvalue())

        assert shot.media_type == "image/png"
        assert not shot.resized
        decoded = Image.open(io.BytesIO(base64.b64decode(shot.data)))
        assert decoded.format == "PNG"
        assert decoded.size == (320, 200)

    def test_large_image_is_downscaled_with_aspect_ratio(self):
        shot = ScreenshotNormalizer(1280, 800).normalize(png_bytes(2560, 1600), viewport=(1280, 800))

        assert shot.resized
        assert (shot.width, shot.height) == (1280, 800)
        assert image_size(shot.data) == (1280, 800)
        assert shot.scale_x == pytest.approx(1.0)
        assert shot.scale_y == pytest.approx(1.0)

    def test_scale_factors_map_back_to_viewport(self):
        shot = ScreenshotNormalizer(1280, 800).normalize(png_bytes(1920, 1200), viewport=(1920, 1200))

        assert (shot.width, shot.height) == (1280, 800)
        assert shot.scale_x == pytest.approx(1.5)
        assert shot.scale_y == pytest.approx(1.5)
        assert shot.to_viewport(640, 400) == (960, 600)

    def test_height_bound_wins_for_tall_images(self):
        shot = ScreenshotNormalizer(1280, 800).normalize(png_bytes(1000, 2000))

        assert shot.height == 800
        assert shot.width == 400
        assert shot.width <= 1280

    def test_jpeg_output(self):
        normalizer = ScreenshotNormalizer(640, 400, use_jpeg=True, jpeg_quality=50)
        shot = normalizer.normalize(png_bytes(1280, 800))

        assert shot.media_type == "image/jpeg"
        assert base64.b64decode(shot.data)[:2] == b"\xff\xd8"

    def test_accepts_data_url(self):
        shot = ScreenshotNormalizer().normalize(png_data_url(100, 50))
        assert (shot.width, shot.height) == (100, 50)
        assert shot.media_type == "image/png"

    def test_content_blocks_carry_image_and_note(self):
        shot = ScreenshotNormalizer(1280, 800).normalize(png_bytes(1920, 1200), viewport=(1920, 1200))
        image_block, note_block = shot.to_content_blocks()

        assert image_block["type"] == "image"
        assert image_block["source"]["type"] == "base64"
        assert image_block["source"]["media_type"] == "image/png"
        assert note_block["type"] == "text"
        assert "1280x800" in note_block["text"]
        assert "1920x1200" in note_block["text"]
        assert "scale_x=1.5000" in note_block["text"]

    def test_from_config(self):
        normalizer = ScreenshotNormalizer.from_config(VisionConfig(max_width=100, max_height=50, use_jpeg=True))
        assert (normalizer.max_width, normalizer.max_height, normalizer.use_jpeg) == (100, 50, True)

    def test_garbage_raises(self):
        with pytest.raises(ScreenshotError):
            ScreenshotNormalizer().normalize(b"not an image")

    def test_invalid_base64_raises(self):
        with pytest.raises(ScreenshotError):
            decode_image("data:image/png;base64,@@@")
