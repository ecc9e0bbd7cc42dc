"""GeWe REST API client.

Every call is a JSON POST carrying the ``X-GEWE-TOKEN`` header. A non-2xx
status or a body whose ``ret`` is not 200 raises ``GeweApiError``; there is
no retry at this layer.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from gewe_bridge.config import DEFAULT_API_BASE_URL, GeweAccountConfig
from gewe_bridge.models import SendResult

logger = logging.getLogger(__name__)

API_TIMEOUT_SECONDS = 30.0
_MESSAGE_API = "/gewe/v2/api/message"
IMAGE_DOWNLOAD_TYPES = (2, 1, 3)


class GeweApiError(Exception):
    """Raised when the provider rejects a request."""

    def __init__(self, message: str, status_code: int | None = None, ret: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.ret = ret


class GeweClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        app_id: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url.strip() or DEFAULT_API_BASE_URL).rstrip("/")
        self._token = token
        self._app_id = app_id
        self._transport = transport

    @classmethod
    def from_config(
        cls,
        config: GeweAccountConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> GeweClient:
        return cls(config.api_base_url, config.token, config.app_id, transport=transport)

    async def post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path if path.startswith('/') else '/' + path}"
        headers = {
            "Content-Type": "application/json",
            "X-GEWE-TOKEN": self._token,
        }
        async with httpx.AsyncClient(
            transport=self._transport, timeout=API_TIMEOUT_SECONDS,
        ) as client:
            resp = await client.post(url, json={"appId": self._app_id, **body}, headers=headers)

        if resp.status_code < 200 or resp.status_code >= 300:
            detail = f": {resp.text}" if resp.text else ""
            raise GeweApiError(
                f"GeWe API request failed ({resp.status_code}){detail}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise GeweApiError(f"GeWe API returned invalid JSON for {path}") from e
        if not isinstance(data, dict):
            raise GeweApiError(f"GeWe API returned unexpected body for {path}")
        return data

    @staticmethod
    def assert_ok(resp: dict[str, Any], context: str) -> Any:
        ret = resp.get("ret")
        if ret != 200:
            msg = str(resp.get("msg") or "").strip() or "unknown error"
            raise GeweApiError(f"GeWe API {context} failed: {ret} {msg}", ret=ret)
        return resp.get("data")

    async def _call(self, action: str, body: dict[str, Any]) -> Any:
        resp = await self.post_json(f"{_MESSAGE_API}/{action}", body)
        return self.assert_ok(resp, action)

    # --- Downloads ---

    async def _download(self, action: str, body: dict[str, Any]) -> str:
        data = await self._call(action, body)
        file_url = data.get("fileUrl") if isinstance(data, dict) else None
        if not file_url:
            raise GeweApiError(f"GeWe {action} missing fileUrl")
        return str(file_url)

    async def download_image(self, xml: str, image_type: int) -> str:
        return await self._download("downloadImage", {"xml": xml, "type": image_type})

    async def download_voice(self, xml: str, msg_id: str) -> str:
        return await self._download(
            "downloadVoice", {"xml": xml, "msgId": int(msg_id) if msg_id.isdigit() else msg_id},
        )

    async def download_video(self, xml: str) -> str:
        return await self._download("downloadVideo", {"xml": xml})

    async def download_file(self, xml: str) -> str:
        return await self._download("downloadFile", {"xml": xml})

    async def download_image_any(
        self, xml: str, image_types: tuple[int, ...] = IMAGE_DOWNLOAD_TYPES,
    ) -> str:
        """Try each image quality in turn; re-raise the last failure."""
        last_error: GeweApiError | None = None
        for image_type in image_types:
            try:
                return await self.download_image(xml, image_type)
            except GeweApiError as e:
                logger.debug("downloadImage type %d failed: %s", image_type, e)
                last_error = e
        if last_error is None:
            raise GeweApiError("downloadImage: no image types to try")
        raise last_error

    # --- Sends ---

    @staticmethod
    def _send_result(to_wxid: str, data: Any) -> SendResult:
        data = data if isinstance(data, dict) else {}
        new_msg_id = data.get("newMsgId")
        msg_id = new_msg_id if new_msg_id is not None else data.get("msgId")
        create_time = data.get("createTime")
        return SendResult(
            to_wxid=to_wxid,
            message_id=str(msg_id) if msg_id is not None else "ok",
            new_message_id=str(new_msg_id) if new_msg_id else None,
            timestamp=create_time * 1000 if isinstance(create_time, int) else None,
        )

    async def _send(self, action: str, to_wxid: str, body: dict[str, Any]) -> SendResult:
        data = await self._call(action, {"toWxid": to_wxid, **body})
        return self._send_result(to_wxid, data)

    async def send_text(self, to_wxid: str, content: str, ats: str | None = None) -> SendResult:
        body: dict[str, Any] = {"content": content}
        if ats:
            body["ats"] = ats
        return await self._send("postText", to_wxid, body)

    async def send_image(self, to_wxid: str, img_url: str) -> SendResult:
        return await self._send("postImage", to_wxid, {"imgUrl": img_url})

    async def send_voice(self, to_wxid: str, voice_url: str, voice_duration: int) -> SendResult:
        return await self._send(
            "postVoice", to_wxid, {"voiceUrl": voice_url, "voiceDuration": voice_duration},
        )

    async def send_video(
        self, to_wxid: str, video_url: str, thumb_url: str, video_duration: int,
    ) -> SendResult:
        return await self._send("postVideo", to_wxid, {
            "videoUrl": video_url,
            "thumbUrl": thumb_url,
            "videoDuration": video_duration,
        })

    async def send_file(self, to_wxid: str, file_url: str, file_name: str) -> SendResult:
        return await self._send("postFile", to_wxid, {"fileUrl": file_url, "fileName": file_name})

    async def send_link(
        self,
        to_wxid: str,
        title: str,
        desc: str,
        link_url: str,
        thumb_url: str,
    ) -> SendResult:
        return await self._send("postLink", to_wxid, {
            "title": title,
            "desc": desc,
            "linkUrl": link_url,
            "thumbUrl": thumb_url,
        })
