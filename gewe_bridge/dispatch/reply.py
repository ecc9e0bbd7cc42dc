"""Reply pipeline: turns an inbound envelope into reply payloads."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx

from gewe_bridge.models import InboundEnvelope, ReplyPayload

logger = logging.getLogger(__name__)

UPSTREAM_TIMEOUT_SECONDS = 120.0


class ReplyPipelineError(Exception):
    """Raised when the upstream agent cannot produce a reply."""


class ReplyPipeline(Protocol):
    async def run(self, envelope: InboundEnvelope) -> list[ReplyPayload]: ...


class NullReplyPipeline:
    """Used when no upstream agent is configured: inbound messages are logged only."""

    async def run(self, envelope: InboundEnvelope) -> list[ReplyPayload]:
        logger.info(
            "No upstream configured; %s message %s not answered",
            envelope.chat_type, envelope.message_sid,
        )
        return []


class HttpReplyPipeline:
    """Forwards envelopes to an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        upstream_url: str,
        upstream_token: str | None = None,
        model: str = "default",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._upstream_url = upstream_url
        self._upstream_token = upstream_token
        self._model = model
        self._transport = transport

    def to_request(self, envelope: InboundEnvelope) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if envelope.group_system_prompt:
            messages.append({"role": "system", "content": envelope.group_system_prompt})
        messages.append({"role": "user", "content": envelope.body})
        return {
            "model": self._model,
            "messages": messages,
            "user": envelope.session_key,
            "metadata": {
                "source": "gewe",
                "account_id": envelope.account_id,
                "chat_type": envelope.chat_type,
                "sender_id": envelope.sender_id,
                "message_sid": envelope.message_sid,
                "media_path": envelope.media_path,
                "media_type": envelope.media_type,
            },
        }

    async def run(self, envelope: InboundEnvelope) -> list[ReplyPayload]:
        url = f"{self._upstream_url.rstrip('/')}/v1/chat/completions"
        headers = {"Content-Type": "application/json"}
        if self._upstream_token:
            headers["Authorization"] = f"Bearer {self._upstream_token}"

        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=UPSTREAM_TIMEOUT_SECONDS,
            ) as client:
                resp = await client.post(url, json=self.to_request(envelope), headers=headers)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise ReplyPipelineError(f"Upstream unavailable: {e}") from e

        if resp.status_code >= 400:
            raise ReplyPipelineError(f"Upstream returned {resp.status_code}")

        # Extract assistant message from response
        try:
            resp_json = resp.json()
            text = resp_json.get("choices", [{}])[0].get("message", {}).get("content", "")
        except (json.JSONDecodeError, IndexError, KeyError, AttributeError):
            text = resp.text

        text = (text or "").strip()
        if not text:
            logger.info("Upstream returned an empty reply for %s", envelope.message_sid)
            return []
        return [ReplyPayload(text=text)]
