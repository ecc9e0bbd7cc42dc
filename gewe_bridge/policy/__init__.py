"""Inbound policy layer for gewe-bridge.

This module provides the decision pipeline applied to every inbound message:
- Allowlist normalization and matching
- Group resolution and group sender policy
- DM policy, control command authorization and mention gating
"""

from gewe_bridge.policy.allowlist import (
    AllowlistMatch,
    match_allowlist,
    normalize_allow_entry,
    normalize_allowlist,
)
from gewe_bridge.policy.gate import PolicyGate, resolve_mention_gate, resolve_raw_body
from gewe_bridge.policy.groups import (
    GroupMatch,
    resolve_group_match,
    resolve_group_sender_allowed,
    resolve_require_mention,
)

__all__ = [
    "AllowlistMatch",
    "GroupMatch",
    "PolicyGate",
    "match_allowlist",
    "normalize_allow_entry",
    "normalize_allowlist",
    "resolve_group_match",
    "resolve_group_sender_allowed",
    "resolve_mention_gate",
    "resolve_raw_body",
    "resolve_require_mention",
]
