"""Tests for the upstream reply pipelines."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from gewe_bridge.dispatch.reply import HttpReplyPipeline, NullReplyPipeline, ReplyPipelineError
from gewe_bridge.models import InboundEnvelope


def _envelope(**kwargs: Any) -> InboundEnvelope:
    defaults: dict[str, Any] = {
        "body": "hello",
        "raw_body": "hello",
        "from_": "gewe:wxid_alice",
        "to": "gewe:wxid_bot",
        "session_key": "gewe:default:direct:wxid_alice",
        "account_id": "default",
        "chat_type": "direct",
        "sender_id": "wxid_alice",
        "conversation_label": "Alice",
        "command_authorized": False,
        "message_sid": "9001",
    }
    defaults.update(kwargs)
    return InboundEnvelope(**defaults)


def _completion(content: str) -> dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class Recorder:
    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


@pytest.mark.asyncio
async def test_request_shape_and_reply() -> None:
    recorder = Recorder(httpx.Response(200, json=_completion("  hi there  ")))
    pipeline = HttpReplyPipeline(
        "http://agent.test/", upstream_token="tok", transport=httpx.MockTransport(recorder),
    )

    replies = await pipeline.run(_envelope(group_system_prompt="Be brief."))

    assert [r.text for r in replies] == ["hi there"]
    [request] = recorder.requests
    assert str(request.url) == "http://agent.test/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer tok"
    body = json.loads(request.content)
    assert body["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "hello"},
    ]
    assert body["user"] == "gewe:default:direct:wxid_alice"
    assert body["metadata"]["message_sid"] == "9001"


@pytest.mark.asyncio
async def test_no_token_no_authorization_header() -> None:
    recorder = Recorder(httpx.Response(200, json=_completion("ok")))
    pipeline = HttpReplyPipeline("http://agent.test", transport=httpx.MockTransport(recorder))
    await pipeline.run(_envelope())
    assert "authorization" not in recorder.requests[0].headers


@pytest.mark.asyncio
async def test_empty_reply_returns_nothing() -> None:
    pipeline = HttpReplyPipeline(
        "http://agent.test",
        transport=httpx.MockTransport(Recorder(httpx.Response(200, json=_completion("   ")))),
    )
    assert await pipeline.run(_envelope()) == []


@pytest.mark.asyncio
async def test_plain_text_response_used_verbatim() -> None:
    pipeline = HttpReplyPipeline(
        "http://agent.test",
        transport=httpx.MockTransport(Recorder(httpx.Response(200, text="plain answer"))),
    )
    assert [r.text for r in await pipeline.run(_envelope())] == ["plain answer"]


@pytest.mark.asyncio
async def test_upstream_error_status_raises() -> None:
    pipeline = HttpReplyPipeline(
        "http://agent.test",
        transport=httpx.MockTransport(Recorder(httpx.Response(500, text="boom"))),
    )
    with pytest.raises(ReplyPipelineError, match="500"):
        await pipeline.run(_envelope())


@pytest.mark.asyncio
async def test_connect_error_raises() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    pipeline = HttpReplyPipeline("http://agent.test", transport=httpx.MockTransport(refuse))
    with pytest.raises(ReplyPipelineError, match="unavailable"):
        await pipeline.run(_envelope())


@pytest.mark.asyncio
async def test_null_pipeline_returns_nothing() -> None:
    assert await NullReplyPipeline().run(_envelope()) == []
