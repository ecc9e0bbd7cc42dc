"""Media buffers on disk and remote media fetches.

Buffers are stored under ``<state_dir>/media/<subdir>/`` with a random id
that keeps the original extension. The media server serves the
``outbound`` subdirectory by id.
"""

from __future__ import annotations

import logging
import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import quote, unquote, urlparse

import httpx

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 60.0

_MAGIC_TYPES: tuple[tuple[bytes, str], ...] = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF8", "image/gif"),
    (b"#!SILK_V3", "audio/silk"),
    (b"\x02#!SILK_V3", "audio/silk"),
    (b"%PDF", "application/pdf"),
    (b"ID3", "audio/mpeg"),
    (b"OggS", "audio/ogg"),
)

_EXTRA_EXTENSIONS = {
    "audio/silk": ".silk",
    "audio/wav": ".wav",
    "audio/mpeg": ".mp3",
    "image/jpeg": ".jpg",
}


class MediaTooLargeError(Exception):
    """Raised when a buffer exceeds the configured size cap."""


class MediaFetchError(Exception):
    """Raised when remote media cannot be fetched."""


@dataclass(frozen=True)
class SavedMedia:
    id: str
    path: Path
    content_type: str | None


@dataclass(frozen=True)
class FetchedMedia:
    buffer: bytes
    content_type: str | None
    file_name: str | None


def detect_content_type(buffer: bytes | None = None, file_name: str | None = None) -> str | None:
    """Sniff well-known magic bytes, then fall back to the file extension."""
    if buffer:
        for magic, content_type in _MAGIC_TYPES:
            if buffer.startswith(magic):
                return content_type
        if buffer[:4] == b"RIFF" and buffer[8:12] == b"WEBP":
            return "image/webp"
        if buffer[:4] == b"RIFF" and buffer[8:12] == b"WAVE":
            return "audio/wav"
        if buffer[4:8] == b"ftyp":
            return "video/mp4"
    if file_name:
        if file_name.lower().endswith(".silk"):
            return "audio/silk"
        guessed, _ = mimetypes.guess_type(file_name)
        return guessed
    return None


def extension_for(content_type: str | None) -> str:
    if not content_type:
        return ""
    base = content_type.split(";")[0].strip().lower()
    return _EXTRA_EXTENSIONS.get(base) or mimetypes.guess_extension(base) or ""


def media_kind(content_type: str | None) -> str | None:
    """``image``, ``audio``, ``video`` or ``document``; None when unknown."""
    if not content_type:
        return None
    base = content_type.split(";")[0].strip().lower()
    for kind in ("image", "audio", "video"):
        if base.startswith(f"{kind}/"):
            return kind
    return "document"


def build_public_url(base_url: str, media_id: str) -> str:
    return f"{base_url.rstrip('/')}/{quote(media_id, safe='')}"


def file_name_from_url(url: str) -> str | None:
    name = PurePosixPath(unquote(urlparse(url).path)).name
    return name or None


class MediaStore:
    """Writes media buffers below ``<state_dir>/media``."""

    def __init__(self, state_dir: str | Path) -> None:
        self._root = Path(state_dir).expanduser() / "media"

    @property
    def root(self) -> Path:
        return self._root

    @property
    def outbound_dir(self) -> Path:
        return self._root / "outbound"

    def save(
        self,
        buffer: bytes,
        content_type: str | None = None,
        subdir: str = "inbound",
        max_bytes: int | None = None,
        file_name: str | None = None,
    ) -> SavedMedia:
        if max_bytes is not None and len(buffer) > max_bytes:
            raise MediaTooLargeError(
                f"media exceeds {max_bytes} bytes ({len(buffer)} bytes)",
            )
        content_type = content_type or detect_content_type(buffer, file_name)
        suffix = PurePosixPath(file_name).suffix if file_name else ""
        ext = extension_for(content_type) or suffix
        media_id = f"{uuid.uuid4().hex}{ext}"

        directory = self._root / subdir
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / media_id
        path.write_bytes(buffer)
        logger.debug("Saved %d bytes of media to %s", len(buffer), path)
        return SavedMedia(id=media_id, path=path, content_type=content_type)


async def fetch_remote_media(
    url: str,
    max_bytes: int,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FetchedMedia:
    """Download ``url`` into memory, refusing bodies above ``max_bytes``."""
    try:
        async with httpx.AsyncClient(
            transport=transport, follow_redirects=True, timeout=FETCH_TIMEOUT_SECONDS,
        ) as client:
            async with client.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    raise MediaFetchError(
                        f"media fetch failed: HTTP {resp.status_code} for {url}",
                    )
                declared = resp.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise MediaFetchError(f"media exceeds {max_bytes} bytes: {url}")
                chunks: list[bytes] = []
                total = 0
                async for chunk in resp.aiter_bytes():
                    total += len(chunk)
                    if total > max_bytes:
                        raise MediaFetchError(f"media exceeds {max_bytes} bytes: {url}")
                    chunks.append(chunk)
                header_type = resp.headers.get("content-type")
    except httpx.HTTPError as e:
        raise MediaFetchError(f"media fetch failed for {url}: {e}") from e

    buffer = b"".join(chunks)
    file_name = file_name_from_url(url)
    content_type = (
        header_type.split(";")[0].strip() if header_type else None
    ) or detect_content_type(buffer, file_name)
    if content_type == "application/octet-stream":
        content_type = detect_content_type(buffer, file_name) or content_type
    return FetchedMedia(buffer=buffer, content_type=content_type, file_name=file_name)
