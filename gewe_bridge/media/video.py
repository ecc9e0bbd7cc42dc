"""ffprobe duration and ffmpeg first-frame thumbnails for outbound video."""

from __future__ import annotations

import logging
import math
import tempfile
from pathlib import Path

from gewe_bridge.config import GeweAccountConfig
from gewe_bridge.media.process import run_command
from gewe_bridge.media.thumbnail import THUMB_MAX_SIDES

logger = logging.getLogger(__name__)

DEFAULT_FFMPEG = "ffmpeg"
DEFAULT_FFPROBE = "ffprobe"
VIDEO_TIMEOUT_SECONDS = 30.0
THUMB_OFFSET_SECONDS = 0.5


def resolve_ffmpeg_path(config: GeweAccountConfig) -> str:
    return (
        (config.video_ffmpeg_path or "").strip()
        or (config.voice_ffmpeg_path or "").strip()
        or DEFAULT_FFMPEG
    )


def resolve_ffprobe_path(config: GeweAccountConfig, ffmpeg_path: str) -> str:
    """Configured ffprobe, else the ffprobe sitting next to ffmpeg."""
    configured = (config.video_ffprobe_path or "").strip()
    if configured:
        return configured
    if ffmpeg_path.endswith("ffmpeg"):
        return ffmpeg_path[: -len("ffmpeg")] + "ffprobe"
    return DEFAULT_FFPROBE


def thumbnail_scale_filter(max_side: int = THUMB_MAX_SIDES[0]) -> str:
    """Fit inside a max_side square, keeping aspect ratio, never upscaling."""
    return (
        f"scale='min({max_side},iw)':'min({max_side},ih)'"
        ":force_original_aspect_ratio=decrease"
    )


async def read_video_duration_seconds(ffprobe_path: str, source_path: str) -> int | None:
    """Duration rounded to whole seconds (minimum 1), or None."""
    result = await run_command(
        [
            ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            source_path,
        ],
        timeout=VIDEO_TIMEOUT_SECONDS,
    )
    if not result.ok:
        logger.warning("ffprobe failed: %s", result.describe_failure())
        return None
    raw = result.stdout.strip()
    try:
        seconds = float(raw)
    except ValueError:
        seconds = 0.0
    if not math.isfinite(seconds) or seconds <= 0:
        logger.warning("ffprobe returned invalid duration: %r", raw)
        return None
    return max(1, round(seconds))


async def generate_video_thumbnail(ffmpeg_path: str, source_path: str) -> bytes | None:
    """PNG of the frame at 0.5s, both sides at most 320px, never upscaled."""
    with tempfile.TemporaryDirectory(prefix="gewe-video-") as tmp:
        thumb_path = Path(tmp) / "thumb.png"
        result = await run_command(
            [
                ffmpeg_path,
                "-y",
                "-ss", str(THUMB_OFFSET_SECONDS),
                "-i", source_path,
                "-frames:v", "1",
                "-vf", thumbnail_scale_filter(),
                str(thumb_path),
            ],
            timeout=VIDEO_TIMEOUT_SECONDS,
        )
        if not result.ok:
            logger.warning("Video thumbnail failed: %s", result.describe_failure())
            return None
        if not thumb_path.is_file():
            logger.warning("Video thumbnail produced no output")
            return None
        buffer = thumb_path.read_bytes()
    if not buffer:
        logger.warning("Video thumbnail produced empty output")
        return None
    return buffer
