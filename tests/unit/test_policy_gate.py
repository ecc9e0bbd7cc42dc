"""Tests for the inbound policy gate."""

from __future__ import annotations

import pytest

from gewe_bridge.config import GroupConfig
from gewe_bridge.models import DropReason
from gewe_bridge.policy import (
    PolicyGate,
    match_allowlist,
    normalize_allow_entry,
    resolve_group_match,
    resolve_group_sender_allowed,
    resolve_mention_gate,
    resolve_raw_body,
    resolve_require_mention,
)
from tests.conftest import BOT_WXID, make_config, make_group_message, make_inbound_message

GROUP_ID = "12345678@chatroom"


def _gate(**kwargs) -> PolicyGate:
    return PolicyGate(make_config(**kwargs))


class TestAllowlist:
    def test_channel_prefix_and_case_stripped(self) -> None:
        assert normalize_allow_entry("  GeWe:WXID_Alice ") == "wxid_alice"
        assert normalize_allow_entry("wx:abc") == "abc"

    def test_wildcard_matches_anyone(self) -> None:
        match = match_allowlist(["*"], "wxid_anyone")
        assert match.allowed
        assert match.match_source == "wildcard"

    def test_match_by_name(self) -> None:
        match = match_allowlist(["alice"], "wxid_1", "Alice")
        assert match.allowed
        assert match.match_source == "name"

    def test_empty_list_matches_nobody(self) -> None:
        assert not match_allowlist([], "wxid_1").allowed


class TestGroupResolution:
    def test_no_groups_configured_allows_all(self) -> None:
        match = resolve_group_match({}, GROUP_ID)
        assert match.allowed
        assert not match.allowlist_configured

    def test_unlisted_group_rejected(self) -> None:
        match = resolve_group_match({"other@chatroom": GroupConfig()}, GROUP_ID)
        assert not match.allowed

    def test_wildcard_entry_admits_group(self) -> None:
        match = resolve_group_match({"*": GroupConfig(require_mention=False)}, GROUP_ID)
        assert match.allowed
        assert match.match_source == "wildcard"

    def test_require_mention_precedence(self) -> None:
        assert resolve_require_mention(None, None) is True
        assert resolve_require_mention(None, GroupConfig(require_mention=False)) is False
        assert resolve_require_mention(
            GroupConfig(require_mention=True), GroupConfig(require_mention=False),
        ) is True

    def test_sender_policy_allowlist_uses_either_list(self) -> None:
        assert resolve_group_sender_allowed("allowlist", ["wxid_a"], [], "wxid_a")
        assert resolve_group_sender_allowed("allowlist", [], ["wxid_a"], "wxid_a")
        assert not resolve_group_sender_allowed("allowlist", [], [], "wxid_a")
        assert resolve_group_sender_allowed("open", [], [], "wxid_a")
        assert not resolve_group_sender_allowed("disabled", ["*"], [], "wxid_a")


class TestMentionGate:
    def test_group_without_mention_skips(self) -> None:
        assert resolve_mention_gate(True, True, False, True, False, False) == (True, False)

    def test_authorized_command_bypasses(self) -> None:
        assert resolve_mention_gate(True, True, False, True, True, True) == (False, True)

    def test_direct_messages_never_skip(self) -> None:
        assert resolve_mention_gate(False, True, False, True, False, False) == (False, False)


class TestRawBody:
    def test_text_body(self) -> None:
        assert resolve_raw_body(make_inbound_message(text=" hi ")) == "hi"

    @pytest.mark.parametrize(
        ("msg_type", "placeholder"),
        [(3, "<media:image>"), (34, "<media:audio>"), (43, "<media:video>"), (49, "<media:document>")],
    )
    def test_media_placeholders(self, msg_type: int, placeholder: str) -> None:
        msg = make_inbound_message(msg_type=msg_type, text="<msg/>")
        assert resolve_raw_body(msg) == placeholder


class TestDirectMessages:
    def test_unsupported_type_dropped(self) -> None:
        decision = _gate(dm_policy="open").evaluate(make_inbound_message(msg_type=10000))
        assert decision.reason == DropReason.UNSUPPORTED_TYPE

    def test_self_message_dropped(self) -> None:
        msg = make_inbound_message(from_id=BOT_WXID, sender_id=BOT_WXID)
        decision = _gate(dm_policy="open").evaluate(msg)
        assert decision.reason == DropReason.SELF_MESSAGE

    def test_empty_text_dropped(self) -> None:
        decision = _gate(dm_policy="open").evaluate(make_inbound_message(text=""))
        assert decision.reason == DropReason.EMPTY_BODY

    def test_open_policy_proceeds(self) -> None:
        decision = _gate(dm_policy="open").evaluate(make_inbound_message())
        assert decision.proceed
        assert decision.raw_body == "hello"

    def test_disabled_policy_drops(self) -> None:
        decision = _gate(dm_policy="disabled", allow_from=["*"]).evaluate(make_inbound_message())
        assert decision.reason == DropReason.DM_DISABLED

    def test_pairing_policy_requests_pairing(self) -> None:
        decision = _gate(dm_policy="pairing").evaluate(make_inbound_message())
        assert decision.reason == DropReason.DM_PAIRING
        assert decision.pairing_required

    def test_pairing_store_entries_admit_sender(self) -> None:
        decision = _gate(dm_policy="pairing").evaluate(
            make_inbound_message(), ["wxid_alice"],
        )
        assert decision.proceed

    def test_allowlist_policy_drops_unknown(self) -> None:
        decision = _gate(dm_policy="allowlist", allow_from=["wxid_other"]).evaluate(
            make_inbound_message(),
        )
        assert decision.reason == DropReason.DM_NOT_ALLOWED
        assert not decision.pairing_required

    def test_allowlist_policy_admits_prefixed_entry(self) -> None:
        decision = _gate(dm_policy="allowlist", allow_from=["gewe:WXID_ALICE"]).evaluate(
            make_inbound_message(),
        )
        assert decision.proceed
        assert decision.allowed

    def test_image_gets_placeholder_body(self) -> None:
        decision = _gate(dm_policy="open").evaluate(
            make_inbound_message(msg_type=3, text="<msg><img/></msg>"),
        )
        assert decision.proceed
        assert decision.raw_body == "<media:image>"


class TestGroupMessages:
    def test_unlisted_group_dropped(self) -> None:
        gate = _gate(group_policy="open", groups={"other@chatroom": {}})
        decision = gate.evaluate(make_group_message())
        assert decision.reason == DropReason.GROUP_NOT_ALLOWLISTED

    def test_disabled_group_dropped(self) -> None:
        gate = _gate(group_policy="open", groups={GROUP_ID: {"enabled": False}})
        decision = gate.evaluate(make_group_message())
        assert decision.reason == DropReason.GROUP_DISABLED

    def test_group_policy_disabled(self) -> None:
        gate = _gate(group_policy="disabled", group_allow_from=["*"])
        decision = gate.evaluate(make_group_message(text="@bot hi"))
        assert decision.reason == DropReason.GROUP_SENDER

    def test_allowlist_with_no_entries_blocks(self) -> None:
        gate = _gate(group_policy="allowlist")
        decision = gate.evaluate(make_group_message(text="@bot hi"))
        assert decision.reason == DropReason.GROUP_SENDER

    def test_per_group_allow_from_admits_sender(self) -> None:
        gate = _gate(
            group_policy="allowlist",
            groups={GROUP_ID: {"allow_from": ["wxid_bob"], "require_mention": False}},
        )
        decision = gate.evaluate(make_group_message(text="hi"))
        assert decision.proceed

    def test_mention_required_by_default(self) -> None:
        gate = _gate(group_policy="open", mention_patterns=["@bot"])
        assert gate.evaluate(make_group_message(text="hi")).reason == DropReason.NO_MENTION
        mentioned = gate.evaluate(make_group_message(text="@Bot hi"))
        assert mentioned.proceed
        assert mentioned.was_mentioned

    def test_wildcard_disables_mention(self) -> None:
        gate = _gate(group_policy="open", groups={"*": {"require_mention": False}})
        assert gate.evaluate(make_group_message(text="hi")).proceed

    def test_authorized_command_bypasses_mention(self) -> None:
        gate = _gate(group_policy="open", group_allow_from=["wxid_bob"])
        decision = gate.evaluate(make_group_message(text="/status"))
        assert decision.proceed
        assert decision.command_authorized

    def test_unauthorized_command_blocked(self) -> None:
        gate = _gate(group_policy="open", group_allow_from=["wxid_other"])
        decision = gate.evaluate(make_group_message(text="/reset"))
        assert decision.reason == DropReason.UNAUTHORIZED_COMMAND
        assert decision.should_block
        assert not decision.should_skip

    def test_group_system_prompt_carried(self) -> None:
        gate = _gate(
            group_policy="open",
            groups={GROUP_ID: {"require_mention": False, "system_prompt": "  be brief  "}},
        )
        decision = gate.evaluate(make_group_message(text="hi"))
        assert decision.proceed
        assert decision.group_system_prompt == "be brief"
