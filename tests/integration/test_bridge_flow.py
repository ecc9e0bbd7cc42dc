"""End-to-end tests: webhook callback through dispatch to provider sends."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from gewe_bridge.models import InboundEnvelope, ReplyPayload
from gewe_bridge.monitor import build_runtime
from tests.conftest import APP_ID, make_config, make_webhook_payload

SECRET = "hook-secret"
JPEG = b"\xff\xd8\xff\xe0jpegdata"


class FakeUpstream:
    """Routes provider, CDN and agent traffic for one test."""

    def __init__(self, reply: str = "pong") -> None:
        self.reply = reply
        self.gewe_calls: list[tuple[str, dict[str, Any]]] = []
        self.agent_requests: list[dict[str, Any]] = []
        self.cdn_fetches = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "gewe.test":
            body = json.loads(request.content)
            action = request.url.path.rsplit("/", 1)[1]
            self.gewe_calls.append((action, body))
            if action.startswith("download"):
                return httpx.Response(200, json={"ret": 200, "data": {"fileUrl": "https://cdn.test/m.jpg"}})
            return httpx.Response(200, json={"ret": 200, "data": {"newMsgId": 1}})
        if host == "cdn.test":
            self.cdn_fetches += 1
            return httpx.Response(200, content=JPEG, headers={"content-type": "image/jpeg"})
        if host == "agent.test":
            self.agent_requests.append(json.loads(request.content))
            return httpx.Response(
                200, json={"choices": [{"message": {"role": "assistant", "content": self.reply}}]},
            )
        return httpx.Response(404)

    def actions(self) -> list[str]:
        return [action for action, _ in self.gewe_calls]


class RecordingPipeline:
    def __init__(self) -> None:
        self.envelopes: list[InboundEnvelope] = []

    async def run(self, envelope: InboundEnvelope) -> list[ReplyPayload]:
        self.envelopes.append(envelope)
        return []


def _config(tmp_path: Path, **kwargs: Any):
    defaults: dict[str, Any] = {
        "state_dir": str(tmp_path / "state"),
        "webhook_secret": SECRET,
        "dm_policy": "open",
        "upstream_url": "http://agent.test",
        "upstream_token": "agent-token",
    }
    defaults.update(kwargs)
    return make_config(**defaults)


async def _post(app, payload: dict[str, Any]) -> httpx.Response:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://bridge") as client:
        return await client.post("/webhook", json=payload, headers={"x-gewe-token": SECRET})


@pytest.mark.asyncio
async def test_direct_text_round_trip(tmp_path: Path) -> None:
    upstream = FakeUpstream(reply="pong")
    runtime = build_runtime(_config(tmp_path), transport=httpx.MockTransport(upstream))

    resp = await _post(runtime.webhook_app, make_webhook_payload(content="hello"))

    assert resp.status_code == 200
    [agent_request] = upstream.agent_requests
    assert agent_request["messages"] == [{"role": "user", "content": "hello"}]
    assert agent_request["user"] == "gewe:default:direct:wxid_alice"
    assert upstream.actions() == ["postText"]
    _, send_body = upstream.gewe_calls[0]
    assert send_body == {"appId": APP_ID, "toWxid": "wxid_alice", "content": "pong"}


@pytest.mark.asyncio
async def test_envelope_body_for_open_dm(tmp_path: Path) -> None:
    pipeline = RecordingPipeline()
    runtime = build_runtime(_config(tmp_path), pipeline=pipeline, transport=httpx.MockTransport(FakeUpstream()))

    await _post(runtime.webhook_app, make_webhook_payload(content="hello"))

    [envelope] = pipeline.envelopes
    assert envelope.body == "hello"
    assert envelope.command_authorized is False


@pytest.mark.asyncio
async def test_image_enqueues_single_download(tmp_path: Path) -> None:
    upstream = FakeUpstream()
    pipeline = RecordingPipeline()
    runtime = build_runtime(_config(tmp_path), pipeline=pipeline, transport=httpx.MockTransport(upstream))
    payload = make_webhook_payload(content="<msg><img/></msg>", msg_type=3, new_msg_id=4242)

    resp = await _post(runtime.webhook_app, payload)
    assert resp.status_code == 200

    async def noop() -> None:
        return None

    # the job key is already taken by the webhook-triggered download
    assert runtime.download_queue.enqueue(f"{APP_ID}:4242", noop) is False
    await runtime.download_queue.join()

    assert upstream.actions() == ["downloadImage"]
    assert upstream.cdn_fetches == 1
    [envelope] = pipeline.envelopes
    assert envelope.body == "<media:image>"
    assert envelope.media_type == "image/jpeg"
    assert Path(envelope.media_path or "").parent == tmp_path / "state" / "media" / "inbound"


@pytest.mark.asyncio
async def test_duplicate_callback_dispatched_once(tmp_path: Path) -> None:
    pipeline = RecordingPipeline()
    runtime = build_runtime(_config(tmp_path), pipeline=pipeline, transport=httpx.MockTransport(FakeUpstream()))

    await _post(runtime.webhook_app, make_webhook_payload())
    await _post(runtime.webhook_app, make_webhook_payload())

    assert len(pipeline.envelopes) == 1


@pytest.mark.asyncio
async def test_self_message_ignored(tmp_path: Path) -> None:
    upstream = FakeUpstream()
    runtime = build_runtime(_config(tmp_path), transport=httpx.MockTransport(upstream))

    await _post(runtime.webhook_app, make_webhook_payload(from_id="wxid_bot", to_id="wxid_alice"))

    assert upstream.agent_requests == []
    assert upstream.gewe_calls == []


def test_media_app_only_when_configured(tmp_path: Path) -> None:
    assert build_runtime(_config(tmp_path)).media_app is None
    with_media = build_runtime(_config(tmp_path, media_public_url="https://bridge.test/gewe-media"))
    assert with_media.media_app is not None


def test_missing_upstream_uses_silent_pipeline(tmp_path: Path) -> None:
    runtime = build_runtime(_config(tmp_path, upstream_url=None))
    assert runtime.webhook_app is not None
