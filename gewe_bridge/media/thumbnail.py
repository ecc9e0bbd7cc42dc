"""Thumbnail re-encoding for link previews and video sends.

The provider rejects thumbnails larger than 50KB, so oversized images are
shrunk to JPEG by stepping down the longest side and the encoder quality
until the result fits.
"""

from __future__ import annotations

import io
import logging
from functools import lru_cache

from PIL import Image, ImageDraw, UnidentifiedImageError

logger = logging.getLogger(__name__)

THUMB_MAX_BYTES = 50 * 1024
THUMB_FETCH_MAX_BYTES = 2 * 1024 * 1024
THUMB_MAX_SIDES = (320, 240, 200, 160)
THUMB_QUALITY_STEPS = (80, 70, 60, 50, 40)
FALLBACK_THUMB_SIZE = (320, 180)


class ThumbnailError(Exception):
    """Raised when a buffer cannot be decoded as an image."""


def _resize_to_jpeg(buffer: bytes, max_side: int, quality: int) -> bytes:
    try:
        with Image.open(io.BytesIO(buffer)) as img:
            img = img.convert("RGB")
            # thumbnail() never enlarges
            img.thumbnail((max_side, max_side))
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=quality, optimize=True)
    except (UnidentifiedImageError, OSError) as e:
        raise ThumbnailError(f"cannot decode thumbnail image: {e}") from e
    return out.getvalue()


def normalize_thumbnail(
    buffer: bytes,
    content_type: str | None = None,
) -> tuple[bytes, str]:
    """Return (buffer, content_type) for an image small enough to send.

    An image already within the size cap is returned unchanged. Otherwise
    each attempt re-encodes the previous attempt's output; the last attempt
    is returned even if it still exceeds the cap.
    """
    base_type = (content_type or "").split(";")[0].strip().lower()
    if len(buffer) <= THUMB_MAX_BYTES and base_type.startswith("image/"):
        return buffer, base_type

    working = buffer
    for max_side in THUMB_MAX_SIDES:
        for quality in THUMB_QUALITY_STEPS:
            working = _resize_to_jpeg(working, max_side, quality)
            if len(working) <= THUMB_MAX_BYTES:
                return working, "image/jpeg"

    logger.warning("Thumbnail still %d bytes after resizing", len(working))
    return working, "image/jpeg"


@lru_cache(maxsize=1)
def fallback_thumbnail() -> bytes:
    """Placeholder JPEG used when no usable thumbnail is available."""
    img = Image.new("RGB", FALLBACK_THUMB_SIZE, (7, 193, 96))
    draw = ImageDraw.Draw(img)
    width, height = FALLBACK_THUMB_SIZE
    draw.rectangle(
        (width // 4, height // 4, width * 3 // 4, height * 3 // 4),
        outline=(255, 255, 255),
        width=6,
    )
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=80)
    return out.getvalue()
