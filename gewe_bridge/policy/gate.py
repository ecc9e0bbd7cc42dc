"""Policy gate for inbound messages.

Evaluation order (first drop wins):
1. Message type allowlist (text, image, voice, video, app)
2. Self-message filter
3. Group allowlist and per-group ``enabled`` flag
4. Group sender policy (disabled / open / allowlist)
5. DM policy (disabled / open / pairing / allowlist)
6. Control command authorization (unauthorized commands in groups drop)
7. Mention gate for groups, bypassed by authorized control commands

The gate is pure: it never raises and performs no I/O. Pairing issuance for
unknown DM senders is reported through ``PolicyDecision.pairing_required``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Any

from gewe_bridge.config import GeweAccountConfig
from gewe_bridge.models import (
    SUPPORTED_MSG_TYPES,
    DropReason,
    InboundMessage,
    MsgType,
    PolicyDecision,
)
from gewe_bridge.policy.allowlist import match_allowlist, normalize_allowlist
from gewe_bridge.policy.groups import (
    resolve_group_match,
    resolve_group_sender_allowed,
    resolve_require_mention,
)

logger = logging.getLogger(__name__)

_MEDIA_PLACEHOLDERS = {
    MsgType.IMAGE: "<media:image>",
    MsgType.VOICE: "<media:audio>",
    MsgType.VIDEO: "<media:video>",
    MsgType.APP: "<media:document>",
}


def media_placeholder(msg_type: int) -> str:
    try:
        return _MEDIA_PLACEHOLDERS.get(MsgType(msg_type), "")
    except ValueError:
        return ""


def resolve_raw_body(message: InboundMessage) -> str:
    """Plain text for text messages, a media placeholder otherwise."""
    text = message.text.strip() if message.msg_type == MsgType.TEXT else ""
    return text or media_placeholder(message.msg_type)


def resolve_mention_gate(
    is_group: bool,
    require_mention: bool,
    was_mentioned: bool,
    allow_text_commands: bool,
    has_control_command: bool,
    command_authorized: bool,
) -> tuple[bool, bool]:
    """Return (should_skip, bypassed_mention)."""
    bypass = (
        is_group
        and require_mention
        and not was_mentioned
        and allow_text_commands
        and has_control_command
        and command_authorized
    )
    effective_mentioned = was_mentioned or bypass
    should_skip = is_group and require_mention and not effective_mentioned
    return should_skip, bypass


class PolicyGate:
    """Evaluates the account policy for each inbound message."""

    def __init__(self, config: GeweAccountConfig) -> None:
        self._config = config
        self._mention_patterns: list[re.Pattern[str]] = []
        for raw in config.mention_patterns:
            try:
                self._mention_patterns.append(re.compile(raw, re.IGNORECASE))
            except re.error as e:
                logger.warning("Skipping invalid mention pattern %r: %s", raw, e)
        self._command_names = {name.strip().lower() for name in config.commands.names if name.strip()}

    @property
    def allow_text_commands(self) -> bool:
        return self._config.commands.text

    def has_control_command(self, body: str) -> bool:
        stripped = body.strip()
        if not stripped.startswith("/"):
            return False
        head = stripped[1:].split(maxsplit=1)
        if not head:
            return False
        name = head[0].split(":", 1)[0].lower()
        return name in self._command_names

    def was_mentioned(self, body: str) -> bool:
        return any(pattern.search(body) for pattern in self._mention_patterns)

    def evaluate(
        self,
        message: InboundMessage,
        store_allow_from: Sequence[str] = (),
    ) -> PolicyDecision:
        cfg = self._config
        fields: dict[str, Any] = {}

        def drop(reason: DropReason, **extra: Any) -> PolicyDecision:
            fields.update(extra)
            fields.setdefault("should_skip", True)
            return PolicyDecision(reason=reason, **fields)

        # 1. Message type
        if message.msg_type not in SUPPORTED_MSG_TYPES:
            return drop(DropReason.UNSUPPORTED_TYPE)

        # 2. Self messages
        if message.bot_wxid in (message.from_id, message.sender_id):
            return drop(DropReason.SELF_MESSAGE)

        is_group = message.is_group_chat
        sender_id = message.sender_id
        sender_name = message.sender_name

        # 3. Group allowlist
        group_match = None
        if is_group:
            group_match = resolve_group_match(cfg.groups, message.from_id)
            if not group_match.allowed:
                return drop(DropReason.GROUP_NOT_ALLOWLISTED)
            if group_match.group_config is not None and group_match.group_config.enabled is False:
                return drop(DropReason.GROUP_DISABLED)
            prompt = group_match.group_config.system_prompt if group_match.group_config else None
            fields["group_system_prompt"] = (prompt or "").strip() or None

        raw_body = resolve_raw_body(message)
        fields["raw_body"] = raw_body
        if not raw_body.strip():
            return drop(DropReason.EMPTY_BODY)

        store_allow = normalize_allowlist(store_allow_from)
        config_allow = normalize_allowlist(cfg.allow_from)
        config_group_allow = normalize_allowlist(cfg.group_allow_from)
        effective_allow = config_allow + store_allow
        effective_group_allow = (config_group_allow or config_allow) + store_allow
        inner_allow = normalize_allowlist(
            group_match.group_config.allow_from
            if group_match and group_match.group_config
            else []
        )

        outer_list = effective_group_allow if is_group else effective_allow
        sender_allowed = match_allowlist(outer_list, sender_id, sender_name).allowed
        if is_group and not sender_allowed:
            sender_allowed = match_allowlist(inner_allow, sender_id, sender_name).allowed
        fields["allowed"] = sender_allowed

        has_command = self.allow_text_commands and self.has_control_command(raw_body)
        if cfg.commands.use_access_groups:
            lists_configured = bool(outer_list) or (is_group and bool(inner_allow))
            command_authorized = lists_configured and sender_allowed
        else:
            command_authorized = True
        fields["command_authorized"] = command_authorized
        should_block = self.allow_text_commands and has_command and not command_authorized

        if is_group:
            # 4. Group sender policy
            group_allowed = resolve_group_sender_allowed(
                cfg.group_policy, effective_group_allow, inner_allow, sender_id, sender_name,
            )
            fields["group_allowed"] = group_allowed
            if not group_allowed:
                return drop(DropReason.GROUP_SENDER)
        else:
            # 5. DM policy
            if cfg.dm_policy == "disabled":
                return drop(DropReason.DM_DISABLED)
            if cfg.dm_policy != "open":
                dm_allowed = match_allowlist(effective_allow, sender_id, sender_name).allowed
                if not dm_allowed:
                    if cfg.dm_policy == "pairing":
                        return drop(DropReason.DM_PAIRING, pairing_required=True)
                    return drop(DropReason.DM_NOT_ALLOWED)

        # 6. Control command authorization
        if is_group and should_block:
            return drop(DropReason.UNAUTHORIZED_COMMAND, should_block=True, should_skip=False)

        # 7. Mention gate
        was_mentioned = self.was_mentioned(raw_body)
        require_mention = (
            resolve_require_mention(group_match.group_config, group_match.wildcard_config)
            if is_group and group_match
            else False
        )
        fields["was_mentioned"] = was_mentioned
        fields["mention_required"] = require_mention
        should_skip, _ = resolve_mention_gate(
            is_group=is_group,
            require_mention=require_mention,
            was_mentioned=was_mentioned,
            allow_text_commands=self.allow_text_commands,
            has_control_command=has_command,
            command_authorized=command_authorized,
        )
        if should_skip:
            return drop(DropReason.NO_MENTION)

        return PolicyDecision(**fields)
