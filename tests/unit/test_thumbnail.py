"""Tests for thumbnail re-encoding."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from gewe_bridge.media.thumbnail import (
    THUMB_MAX_BYTES,
    ThumbnailError,
    fallback_thumbnail,
    normalize_thumbnail,
)


def _png(size: tuple[int, int], noise: bool = False) -> bytes:
    img = Image.effect_noise(size, 64) if noise else Image.new("RGB", size, (200, 30, 30))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


def test_small_image_returned_unchanged() -> None:
    data = _png((32, 32))
    assert normalize_thumbnail(data, "image/png; charset=binary") == (data, "image/png")


def test_large_image_shrunk_to_jpeg_under_cap() -> None:
    data = _png((1200, 900), noise=True)
    assert len(data) > THUMB_MAX_BYTES

    result, content_type = normalize_thumbnail(data, "image/png")

    assert content_type == "image/jpeg"
    assert len(result) <= THUMB_MAX_BYTES
    with Image.open(io.BytesIO(result)) as img:
        assert img.format == "JPEG"
        assert max(img.size) <= 320


def test_small_non_image_type_is_reencoded() -> None:
    data = _png((64, 64))
    result, content_type = normalize_thumbnail(data, "application/octet-stream")
    assert content_type == "image/jpeg"
    assert result[:2] == b"\xff\xd8"


def test_undecodable_buffer_raises() -> None:
    with pytest.raises(ThumbnailError):
        normalize_thumbnail(b"x" * (THUMB_MAX_BYTES + 1), "image/png")


def test_fallback_thumbnail_is_small_jpeg() -> None:
    data = fallback_thumbnail()
    assert data[:2] == b"\xff\xd8"
    assert len(data) <= THUMB_MAX_BYTES
    with Image.open(io.BytesIO(data)) as img:
        assert img.size == (320, 180)
