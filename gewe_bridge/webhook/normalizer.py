"""GeWe callback normalization.

Turns the raw webhook body into an InboundMessage. The provider envelope is
JSON of the form::

    {"Appid": "...", "Wxid": "...", "Data": {"FromUserName": {"string": ...},
     "ToUserName": {"string": ...}, "MsgType": 1, "Content": {"string": ...},
     "MsgId": 1, "NewMsgId": 2, "CreateTime": 1700000000, "PushContent": ...}}

Group chats carry the real sender as a ``"<wxid>:\\n"`` prefix on the content.
"""

from __future__ import annotations

import json
import time
from typing import Any

from gewe_bridge.models import InboundMessage

GROUP_SUFFIX = "@chatroom"
_GROUP_SENDER_MARKER = ":\n"


def parse_webhook_payload(body: bytes | str) -> dict[str, Any] | None:
    """Decode the JSON envelope; None when the body is not a JSON object."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _nested_string(value: Any) -> str:
    if isinstance(value, dict):
        inner = value.get("string")
        return inner if isinstance(inner, str) else ""
    return ""


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return 0


def split_group_content(raw: str) -> tuple[str | None, str]:
    """Split ``"<sender>:\\n<body>"``; returns (sender, body)."""
    index = raw.find(_GROUP_SENDER_MARKER)
    if index > 0:
        sender = raw[:index].strip()
        if sender:
            return sender, raw[index + len(_GROUP_SENDER_MARKER):]
    return None, raw


def resolve_sender_name(push_content: str | None) -> str | None:
    """Extract the display name from ``"Name : text"`` or ``"Name: text"``."""
    value = (push_content or "").strip()
    if not value:
        return None
    for separator in (" : ", ": "):
        index = value.find(separator)
        if index > 0:
            return value[:index].strip() or None
    return None


def is_group_id(value: str) -> bool:
    return value.endswith(GROUP_SUFFIX)


def payload_to_message(payload: dict[str, Any]) -> InboundMessage | None:
    """Build an InboundMessage, or None if required fields are missing."""
    app_id = str(payload.get("Appid") or "").strip()
    bot_wxid = str(payload.get("Wxid") or "").strip()
    data = payload.get("Data")
    if not isinstance(data, dict) or not app_id or not bot_wxid:
        return None

    from_id = _nested_string(data.get("FromUserName")).strip()
    to_id = _nested_string(data.get("ToUserName")).strip()
    msg_type = _as_int(data.get("MsgType"))
    if not from_id or not to_id or msg_type is None or msg_type < 0:
        return None

    content = _nested_string(data.get("Content"))
    msg_id = _first_present(data.get("MsgId"), data.get("NewMsgId"))
    new_msg_id = _first_present(data.get("NewMsgId"), data.get("MsgId"))
    create_time = _as_int(data.get("CreateTime")) or 0
    timestamp = create_time * 1000 if create_time else int(time.time() * 1000)

    is_group = is_group_id(from_id) or is_group_id(to_id)
    sender_id = from_id
    body = content
    if is_group:
        group_sender, body = split_group_content(content)
        sender_id = group_sender or from_id
    text = body.strip()

    push_content = data.get("PushContent")
    return InboundMessage(
        message_id=str(msg_id),
        new_message_id=str(new_msg_id),
        app_id=app_id,
        bot_wxid=bot_wxid,
        from_id=from_id,
        to_id=to_id,
        sender_id=sender_id,
        sender_name=resolve_sender_name(push_content if isinstance(push_content, str) else None),
        text=text,
        msg_type=msg_type,
        xml=text,
        timestamp=timestamp,
        is_group_chat=is_group,
    )


def normalize(body: bytes | str) -> InboundMessage | None:
    payload = parse_webhook_payload(body)
    if payload is None:
        return None
    return payload_to_message(payload)
