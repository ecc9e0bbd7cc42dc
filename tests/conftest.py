"""Shared test fixtures for gewe-bridge."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from gewe_bridge.audit.logger import AuditLogger
from gewe_bridge.config import GeweAccountConfig
from gewe_bridge.models import InboundMessage

APP_ID = "wx_app_1"
BOT_WXID = "wxid_bot"


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


# --- Factory functions for test data ---


def make_config(**kwargs: Any) -> GeweAccountConfig:
    """Factory for GeweAccountConfig with sensible defaults."""
    defaults: dict[str, Any] = {
        "api_base_url": "https://gewe.test",
        "token": "gewe-token",
        "app_id": APP_ID,
        "state_dir": "/tmp/gewe-bridge-tests",
        "silk_auto_download": False,
        "download_min_delay_ms": 0,
        "download_max_delay_ms": 0,
    }
    defaults.update(kwargs)
    return GeweAccountConfig.model_validate(defaults)


def make_inbound_message(**kwargs: Any) -> InboundMessage:
    """Factory for a direct text InboundMessage."""
    defaults: dict[str, Any] = {
        "message_id": "1001",
        "new_message_id": "9001",
        "app_id": APP_ID,
        "bot_wxid": BOT_WXID,
        "from_id": "wxid_alice",
        "to_id": BOT_WXID,
        "sender_id": "wxid_alice",
        "sender_name": "Alice",
        "text": "hello",
        "msg_type": 1,
        "xml": "hello",
        "timestamp": 1_700_000_000_000,
        "is_group_chat": False,
    }
    defaults.update(kwargs)
    if "xml" not in kwargs:
        defaults["xml"] = defaults["text"]
    return InboundMessage(**defaults)


def make_group_message(**kwargs: Any) -> InboundMessage:
    """Factory for a group text InboundMessage."""
    defaults: dict[str, Any] = {
        "from_id": "12345678@chatroom",
        "sender_id": "wxid_bob",
        "sender_name": "Bob",
        "is_group_chat": True,
    }
    defaults.update(kwargs)
    return make_inbound_message(**defaults)


def make_webhook_payload(
    content: str = "hello",
    msg_type: int = 1,
    from_id: str = "wxid_alice",
    to_id: str = BOT_WXID,
    new_msg_id: int | None = 9001,
    msg_id: int | None = 1001,
    **data: Any,
) -> dict[str, Any]:
    """Factory for a raw GeWe callback body."""
    payload_data: dict[str, Any] = {
        "FromUserName": {"string": from_id},
        "ToUserName": {"string": to_id},
        "MsgType": msg_type,
        "Content": {"string": content},
        "CreateTime": 1_700_000_000,
    }
    if msg_id is not None:
        payload_data["MsgId"] = msg_id
    if new_msg_id is not None:
        payload_data["NewMsgId"] = new_msg_id
    payload_data.update(data)
    return {"Appid": APP_ID, "Wxid": BOT_WXID, "Data": payload_data}
