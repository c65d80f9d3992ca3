"""
Tests for the Pillow transformer.
"""

import io
import random
import time

import pytest
from PIL import Image

from app.exceptions import TransformError
from app.models.api import ImageFormat
from app.services import transform as transform_module
from app.services.transform import PillowTransformer, transform_image


def encode(image: Image.Image, fmt: str, **params) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **params)
    return buffer.getvalue()


def noisy_image(width: int, height: int, mode: str = "RGB") -> Image.Image:
    rng = random.Random(1234)
    channels = len(mode)
    pixels = bytes(rng.randrange(256) for _ in range(width * height * channels))
    return Image.frombytes(mode, (width, height), pixels)


def decode(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


class TestTransformImage:
    def test_jpeg_to_webp(self):
        source = encode(noisy_image(400, 300), "JPEG", quality=95)

        output = transform_image(source, ImageFormat.WEBP, quality=60, max_width=1920)

        result = decode(output)
        assert result.format == "WEBP"
        assert result.size == (400, 300)
        assert len(output) < len(source)

    def test_wide_image_downscaled(self):
        source = encode(Image.new("RGB", (4000, 1000), (10, 120, 200)), "PNG")

        result = decode(transform_image(source, ImageFormat.JPEG, quality=80, max_width=1920))

        assert result.size == (1920, 480)

    def test_small_image_not_enlarged(self):
        source = encode(Image.new("RGB", (64, 32), "red"), "PNG")
        result = decode(transform_image(source, ImageFormat.PNG, quality=80, max_width=1920))
        assert result.size == (64, 32)

    def test_alpha_flattened_for_jpeg(self):
        source = encode(Image.new("RGBA", (50, 50), (255, 0, 0, 128)), "PNG")
        result = decode(transform_image(source, ImageFormat.JPEG, quality=80, max_width=1920))
        assert result.mode == "RGB"

    def test_alpha_kept_for_webp(self):
        source = encode(Image.new("RGBA", (50, 50), (255, 0, 0, 128)), "PNG")
        result = decode(transform_image(source, ImageFormat.WEBP, quality=80, max_width=1920))
        assert result.mode == "RGBA"

    def test_exif_orientation_applied(self):
        exif = Image.Exif()
        exif[0x0112] = 6  # rotated 90 degrees clockwise
        source = encode(Image.new("RGB", (200, 100), "blue"), "JPEG", exif=exif)

        result = decode(transform_image(source, ImageFormat.JPEG, quality=80, max_width=1920))

        assert result.size == (100, 200)

    def test_lower_quality_smaller_output(self):
        source = encode(noisy_image(256, 256), "PNG")
        high = transform_image(source, ImageFormat.JPEG, quality=95, max_width=1920)
        low = transform_image(source, ImageFormat.JPEG, quality=20, max_width=1920)
        assert len(low) < len(high)

    def test_garbage_rejected(self):
        with pytest.raises(TransformError) as exc_info:
            transform_image(b"definitely not an image", ImageFormat.WEBP, 80, 1920)
        assert exc_info.value.transient is False


class TestPillowTransformer:
    async def test_runs_in_thread(self):
        source = encode(Image.new("RGB", (3000, 10), "green"), "PNG")
        output = await PillowTransformer(max_width=100).transform(source, ImageFormat.PNG, 80)
        assert decode(output).size == (100, 1)

    async def test_timeout_is_transient(self, monkeypatch: pytest.MonkeyPatch):
        def slow(*args, **kwargs) -> bytes:
            time.sleep(0.3)
            return b""

        monkeypatch.setattr(transform_module, "transform_image", slow)

        with pytest.raises(TransformError) as exc_info:
            await PillowTransformer(timeout_seconds=0.01).transform(b"x", ImageFormat.WEBP, 80)
        assert exc_info.value.transient is True
        assert exc_info.value.retryable is True
