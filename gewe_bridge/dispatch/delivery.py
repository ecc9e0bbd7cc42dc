"""Outbound delivery of reply payloads through the GeWe send endpoints.

Each payload maps to exactly one provider send, chosen in this order:
1. ``channel_data.link``: link card with a normalized thumbnail
2. media URL: voice, image, video, then a generic file
3. text
Local media is staged into the outbound media directory and addressed via
``media_public_url``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from gewe_bridge.config import GeweAccountConfig
from gewe_bridge.gewe.client import GeweApiError, GeweClient
from gewe_bridge.media.silk import VoiceTranscoder, is_silk_audio
from gewe_bridge.media.store import (
    MediaFetchError,
    MediaStore,
    MediaTooLargeError,
    build_public_url,
    detect_content_type,
    fetch_remote_media,
    file_name_from_url,
    media_kind,
)
from gewe_bridge.media.thumbnail import (
    THUMB_FETCH_MAX_BYTES,
    THUMB_MAX_BYTES,
    ThumbnailError,
    fallback_thumbnail,
    normalize_thumbnail,
)
from gewe_bridge.media.video import (
    generate_video_thumbnail,
    read_video_duration_seconds,
    resolve_ffmpeg_path,
    resolve_ffprobe_path,
)
from gewe_bridge.models import GeweChannelData, ReplyPayload, ResolvedMedia, SendResult

logger = logging.getLogger(__name__)

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)
_FILE_URL = re.compile(r"^file://", re.IGNORECASE)
_TTS_VOICE_NAME = re.compile(r"^voice-\d+")


class DeliveryError(Exception):
    """Raised when a payload cannot be prepared for sending."""


def looks_like_http_url(value: str) -> bool:
    return bool(_HTTP_URL.match(value))


def normalize_file_url(value: str) -> str:
    if not _FILE_URL.match(value):
        return value
    return unquote(urlparse(value).path) or value


def looks_like_tts_voice(media_url: str) -> bool:
    """Local ``tts-*/voice-<n>.*`` paths are synthesized speech."""
    if not media_url or looks_like_http_url(media_url):
        return False
    path = Path(normalize_file_url(media_url))
    return bool(_TTS_VOICE_NAME.match(path.name.lower())) and path.parent.name.lower().startswith("tts-")


def _voice_duration_ms(data: GeweChannelData | None) -> int | None:
    if data is None or not data.voice_duration_ms or data.voice_duration_ms <= 0:
        return None
    return int(data.voice_duration_ms)


class OutboundDelivery:
    def __init__(
        self,
        config: GeweAccountConfig,
        client: GeweClient,
        store: MediaStore,
        transcoder: VoiceTranscoder,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._store = store
        self._transcoder = transcoder
        self._transport = transport

    @property
    def public_base(self) -> str | None:
        return (self._config.media_public_url or "").strip() or None

    def _require_public_base(self, purpose: str) -> str:
        base = self.public_base
        if not base:
            raise DeliveryError(f"media_public_url not configured (required for {purpose})")
        return base

    # --- Staging ---

    async def stage_media(self, media_url: str, allow_remote: bool) -> ResolvedMedia:
        """Make ``media_url`` reachable by the provider.

        Remote URLs pass through when ``allow_remote`` is set; anything else
        is copied into the outbound media directory.
        """
        raw = media_url.strip()
        if not raw:
            raise DeliveryError("media_url is empty")

        if looks_like_http_url(raw) and allow_remote:
            file_name = file_name_from_url(raw)
            return ResolvedMedia(
                public_url=raw,
                content_type=detect_content_type(None, file_name),
                file_name=file_name,
            )

        public_base = self._require_public_base("local media or forced proxy")
        max_bytes = self._config.media_max_bytes
        if looks_like_http_url(raw):
            fetched = await fetch_remote_media(raw, max_bytes, transport=self._transport)
            buffer, content_type, file_name = fetched.buffer, fetched.content_type, fetched.file_name
        else:
            local_path = Path(normalize_file_url(raw))
            buffer = await asyncio.to_thread(local_path.read_bytes)
            file_name = local_path.name
            content_type = detect_content_type(buffer, file_name)

        saved = self._store.save(buffer, content_type, "outbound", max_bytes, file_name)
        return ResolvedMedia(
            public_url=build_public_url(public_base, saved.id),
            content_type=content_type or saved.content_type,
            file_name=file_name or saved.id,
            local_path=str(saved.path),
        )

    async def stage_thumbnail(
        self, buffer: bytes, content_type: str | None, file_name: str,
    ) -> str:
        public_base = self._require_public_base("link thumbnails")
        normalized, normalized_type = await asyncio.to_thread(
            normalize_thumbnail, buffer, content_type,
        )
        if len(normalized) > THUMB_MAX_BYTES:
            raise DeliveryError("thumbnail exceeds 50KB after resize")
        saved = self._store.save(
            normalized, normalized_type, "outbound", THUMB_MAX_BYTES, file_name,
        )
        return build_public_url(public_base, saved.id)

    async def _load_thumb_source(self, url: str) -> tuple[bytes, str | None, str | None]:
        if looks_like_http_url(url):
            fetched = await fetch_remote_media(url, THUMB_FETCH_MAX_BYTES, transport=self._transport)
            return fetched.buffer, fetched.content_type, fetched.file_name
        path = Path(normalize_file_url(url))
        if not path.is_file():
            raise DeliveryError("thumb_url is not a file")
        if path.stat().st_size > THUMB_FETCH_MAX_BYTES:
            raise DeliveryError("thumb_url exceeds 2MB limit")
        buffer = await asyncio.to_thread(path.read_bytes)
        return buffer, detect_content_type(buffer, path.name), path.name

    async def resolve_link_thumb_url(self, thumb_url: str | None) -> str:
        """Stage the link thumbnail, falling back to the placeholder image."""
        raw = (thumb_url or "").strip()
        if raw:
            try:
                buffer, content_type, file_name = await self._load_thumb_source(raw)
                return await self.stage_thumbnail(
                    buffer, content_type, file_name or "gewe-thumb.jpeg",
                )
            except (DeliveryError, MediaFetchError, ThumbnailError, OSError) as e:
                logger.warning("Link thumbnail fallback: %s", e)
        return await self.stage_thumbnail(fallback_thumbnail(), "image/jpeg", "gewe-thumb.jpeg")

    async def _resolve_public_url(self, url: str, allow_remote: bool) -> str:
        return (await self.stage_media(url, allow_remote)).public_url

    # --- Delivery ---

    async def deliver(self, payload: ReplyPayload, to_wxid: str) -> SendResult | None:
        """Send one payload; returns None when there is nothing to send."""
        data = payload.channel_data
        text = (payload.text or "").strip()
        media_url = (payload.media_url or "").strip()

        if data is not None and data.link is not None:
            link = data.link
            thumb_url = await self.resolve_link_thumb_url(link.thumb_url)
            return await self._client.send_link(
                to_wxid, link.title, link.desc, link.link_url, thumb_url,
            )

        if media_url:
            return await self._deliver_media(payload, media_url, to_wxid)

        if text:
            return await self._client.send_text(to_wxid, text, ats=data.ats if data else None)

        return None

    async def _deliver_media(
        self, payload: ReplyPayload, media_url: str, to_wxid: str,
    ) -> SendResult:
        data = payload.channel_data
        force_file = bool(data and data.force_file)
        wants_voice = not force_file and (payload.audio_as_voice or looks_like_tts_voice(media_url))
        staged = await self.stage_media(media_url, allow_remote=not wants_voice)
        kind = media_kind(staged.content_type)

        if wants_voice and kind == "audio":
            result = await self._send_voice(staged, data, to_wxid)
            if result is not None:
                return result

        if not force_file and kind == "image":
            return await self._client.send_image(to_wxid, staged.public_url)

        if not force_file and kind == "video":
            result = await self._send_video(staged, media_url, data, to_wxid)
            if result is not None:
                return result

        file_name = (data.file_name if data else None) or staged.file_name
        if not file_name:
            ext = staged.content_type.split("/")[1] if staged.content_type and "/" in staged.content_type else ""
            file_name = f"file.{ext}" if ext else "file"
        return await self._client.send_file(to_wxid, staged.public_url, file_name)

    async def _send_voice(
        self, staged: ResolvedMedia, data: GeweChannelData | None, to_wxid: str,
    ) -> SendResult | None:
        declared = _voice_duration_ms(data)
        if is_silk_audio(staged.content_type, staged.file_name):
            if declared:
                return await self._client.send_voice(to_wxid, staged.public_url, declared)
            return None
        if not staged.local_path:
            return None
        converted = await self._transcoder.encode(staged.local_path)
        if converted is None:
            return None
        public_base = self._require_public_base("silk voice")
        saved = self._store.save(
            converted.buffer, "audio/silk", "outbound", self._config.media_max_bytes, "voice.silk",
        )
        return await self._client.send_voice(
            to_wxid, build_public_url(public_base, saved.id), declared or converted.duration_ms,
        )

    async def _send_video(
        self,
        staged: ResolvedMedia,
        media_url: str,
        data: GeweChannelData | None,
        to_wxid: str,
    ) -> SendResult | None:
        video = data.video if data else None
        thumb_url = video.thumb_url if video else None
        duration = int(video.video_duration) if video and video.video_duration is not None else None
        fallback_thumb = (self._config.video_thumb_url or "").strip() or None

        if (not thumb_url or duration is None) and not staged.local_path:
            try:
                staged = await self.stage_media(media_url, allow_remote=False)
            except (DeliveryError, MediaFetchError, MediaTooLargeError, OSError) as e:
                logger.warning("Video staging failed, sending as file: %s", e)

        ffmpeg_path = resolve_ffmpeg_path(self._config)
        if duration is None and staged.local_path:
            duration = await read_video_duration_seconds(
                resolve_ffprobe_path(self._config, ffmpeg_path), staged.local_path,
            )

        if not thumb_url and staged.local_path:
            frame = await generate_video_thumbnail(ffmpeg_path, staged.local_path)
            if frame:
                try:
                    thumb_url = await self.stage_thumbnail(frame, "image/png", "gewe-video-thumb.png")
                except (DeliveryError, ThumbnailError) as e:
                    logger.warning("Video thumbnail staging failed: %s", e)

        thumb_url = thumb_url or fallback_thumb
        if not thumb_url or duration is None:
            return None

        thumb_public = await self._resolve_public_url(thumb_url, allow_remote=True)
        try:
            return await self._client.send_video(to_wxid, staged.public_url, thumb_public, duration)
        except (GeweApiError, httpx.HTTPError) as e:
            if not fallback_thumb or fallback_thumb == thumb_url:
                raise
            logger.warning("Video send failed with primary thumb, retrying fallback: %s", e)
            fallback_public = await self._resolve_public_url(fallback_thumb, allow_remote=True)
            return await self._client.send_video(
                to_wxid, staged.public_url, fallback_public, duration,
            )
