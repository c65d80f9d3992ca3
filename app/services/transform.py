"""
Transformer - Image resizing and re-encoding.

Pillow work is CPU bound and runs in a worker thread, bounded by a timeout.
"""

import asyncio
import io
from typing import Protocol

from PIL import Image, ImageOps, UnidentifiedImageError

from app.exceptions import TransformError
from app.models.api import ImageFormat
from app.observability.logging import get_logger

logger = get_logger(__name__)

PIL_FORMATS: dict[ImageFormat, str] = {
    ImageFormat.WEBP: "WEBP",
    ImageFormat.AVIF: "AVIF",
    ImageFormat.JPEG: "JPEG",
    ImageFormat.PNG: "PNG",
}


class Transformer(Protocol):
    """Pixel/format transformation routine."""

    async def transform(self, data: bytes, image_format: ImageFormat, quality: int) -> bytes:
        """Raises TransformError."""
        ...


def _prepare_mode(image: Image.Image, image_format: ImageFormat) -> Image.Image:
    if image_format == ImageFormat.JPEG:
        if image.mode not in ("RGB", "L"):
            return image.convert("RGB")
        return image
    if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
        return image.convert("RGBA" if "A" in image.getbands() else "RGB")
    return image


def transform_image(data: bytes, image_format: ImageFormat, quality: int, max_width: int) -> bytes:
    """Resize to at most max_width (never enlarging) and re-encode."""
    try:
        with Image.open(io.BytesIO(data)) as source:
            image = ImageOps.exif_transpose(source)
            if image.width > max_width:
                height = max(1, round(image.height * max_width / image.width))
                image = image.resize((max_width, height), Image.Resampling.LANCZOS)
            image = _prepare_mode(image, image_format)

            output = io.BytesIO()
            if image_format == ImageFormat.PNG:
                image.save(output, format=PIL_FORMATS[image_format], optimize=True)
            else:
                image.save(output, format=PIL_FORMATS[image_format], quality=quality)
            return output.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise TransformError(f"unsupported or unsafe image: {e}") from e
    except (OSError, ValueError, KeyError) as e:
        raise TransformError(f"{image_format.value} encoding failed: {e}") from e


class PillowTransformer:
    """Transformer backed by Pillow."""

    def __init__(self, max_width: int = 1920, timeout_seconds: float = 30.0) -> None:
        self.max_width = max_width
        self.timeout_seconds = timeout_seconds

    async def transform(self, data: bytes, image_format: ImageFormat, quality: int) -> bytes:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(transform_image, data, image_format, quality, self.max_width),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as e:
            logger.error("transform_timeout", timeout_seconds=self.timeout_seconds)
            raise TransformError("timed out", transient=True) from e
