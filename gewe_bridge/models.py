"""Shared Pydantic data models for gewe-bridge."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class MsgType(IntEnum):
    TEXT = 1
    IMAGE = 3
    VOICE = 34
    VIDEO = 43
    APP = 49


SUPPORTED_MSG_TYPES = frozenset(int(t) for t in MsgType)


class DropReason(str, Enum):
    UNSUPPORTED_TYPE = "unsupported_type"
    SELF_MESSAGE = "self_message"
    EMPTY_BODY = "empty_body"
    GROUP_NOT_ALLOWLISTED = "group_not_allowlisted"
    GROUP_DISABLED = "group_disabled"
    GROUP_SENDER = "group_sender"
    DM_DISABLED = "dm_disabled"
    DM_NOT_ALLOWED = "dm_not_allowed"
    DM_PAIRING = "dm_pairing"
    UNAUTHORIZED_COMMAND = "unauthorized_command"
    NO_MENTION = "no_mention"


class AuditEventType(str, Enum):
    WEBHOOK_AUTH_FAILURE = "webhook_auth_failure"
    WEBHOOK_DUPLICATE = "webhook_duplicate"
    POLICY_DROP = "policy_drop"
    PAIRING_ISSUED = "pairing_issued"
    DISPATCH = "dispatch"
    DELIVERY_FAILURE = "delivery_failure"
    SILK_INSTALL = "silk_install"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Inbound Models ---


class InboundMessage(BaseModel):
    """Canonical record built from one webhook callback."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    new_message_id: str
    app_id: str
    bot_wxid: str
    from_id: str
    to_id: str
    sender_id: str
    sender_name: str | None = None
    text: str
    msg_type: int
    xml: str | None = None
    timestamp: int  # epoch milliseconds
    is_group_chat: bool

    @property
    def dedupe_key(self) -> str:
        return f"{self.app_id}:{self.new_message_id}"


class PolicyDecision(BaseModel):
    """Outcome of the policy gate for one message."""

    model_config = ConfigDict(frozen=True)

    allowed: bool = False
    group_allowed: bool = False
    mention_required: bool = False
    was_mentioned: bool = False
    command_authorized: bool = False
    should_skip: bool = False
    should_block: bool = False
    reason: DropReason | None = None
    pairing_required: bool = False
    raw_body: str = ""
    group_system_prompt: str | None = None

    @property
    def proceed(self) -> bool:
        return self.reason is None


class InboundEnvelope(BaseModel):
    """Context handed to the reply pipeline."""

    model_config = ConfigDict(frozen=True)

    body: str
    raw_body: str
    from_: str
    to: str
    session_key: str
    account_id: str
    chat_type: str  # "direct" | "group"
    sender_id: str
    sender_name: str | None = None
    conversation_label: str
    command_authorized: bool
    message_sid: str
    timestamp: int | None = None
    media_path: str | None = None
    media_type: str | None = None
    group_system_prompt: str | None = None


# --- Outbound Models ---


class LinkData(BaseModel):
    title: str
    desc: str
    link_url: str
    thumb_url: str | None = None


class VideoData(BaseModel):
    thumb_url: str | None = None
    video_duration: int | None = None


class GeweChannelData(BaseModel):
    ats: str | None = None
    link: LinkData | None = None
    video: VideoData | None = None
    voice_duration_ms: int | None = None
    file_name: str | None = None
    force_file: bool = False


class ReplyPayload(BaseModel):
    text: str | None = None
    media_url: str | None = None
    audio_as_voice: bool = False
    channel_data: GeweChannelData | None = None


class ResolvedMedia(BaseModel):
    """Staged artifact ready for an outbound send."""

    public_url: str
    content_type: str | None = None
    file_name: str | None = None
    local_path: str | None = None


class SendResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str
    to_wxid: str
    new_message_id: str | None = None
    timestamp: int | None = None


# --- Installer Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class RustSilkInstall(BaseModel):
    """Marker persisted as install.json beside an installed binary."""

    version: str
    tag: str
    resolved_tag: str | None = None
    asset: str
    installed_at: str = Field(default_factory=_now_iso)


# --- Audit Models ---


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    account_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "dropped"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
