"""Static server for staged outbound media.

The provider fetches images, voice notes, videos and thumbnails from
``GET <base_path>/<id>``. Ids are flat file names inside the outbound media
directory; anything that could escape it is rejected.
"""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, Request, Response
from starlette.responses import FileResponse

from gewe_bridge.media.store import detect_content_type

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_HOST = "0.0.0.0"
DEFAULT_MEDIA_PORT = 18787
DEFAULT_MEDIA_PATH = "/gewe-media"
CACHE_CONTROL = "private, max-age=60"
_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]


def normalize_base_path(value: str | None) -> str:
    trimmed = (value or "").strip() or DEFAULT_MEDIA_PATH
    if trimmed == "/":
        return "/"
    trimmed = trimmed.rstrip("/")
    return trimmed if trimmed.startswith("/") else f"/{trimmed}"


def is_safe_media_id(media_id: str) -> bool:
    if not media_id or ".." in media_id:
        return False
    return "/" not in media_id and "\\" not in media_id


def create_media_app(base_path: str | None, media_dir: str | Path) -> FastAPI:
    """Create the media FastAPI app serving files from ``media_dir``."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    prefix = normalize_base_path(base_path)
    prefix = "/" if prefix == "/" else f"{prefix}/"
    root = Path(media_dir)

    @app.api_route("/{rest:path}", methods=_ALL_METHODS)
    async def serve(request: Request) -> Response:
        if request.method not in ("GET", "HEAD"):
            return Response(status_code=405)
        path = request.url.path
        if not path.startswith(prefix):
            return Response(status_code=404)

        media_id = path[len(prefix):]
        if not is_safe_media_id(media_id):
            return Response(status_code=400)

        file_path = root / media_id
        if not file_path.is_file():
            return Response(status_code=404)

        content_type = detect_content_type(None, media_id) or "application/octet-stream"
        headers = {"Cache-Control": CACHE_CONTROL}
        if request.method == "HEAD":
            headers["Content-Length"] = str(file_path.stat().st_size)
            return Response(status_code=200, headers=headers, media_type=content_type)
        return FileResponse(file_path, headers=headers, media_type=content_type)

    return app
