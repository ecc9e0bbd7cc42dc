"""Group lookup and group sender policy."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from gewe_bridge.config import GroupConfig, GroupPolicy
from gewe_bridge.policy.allowlist import WILDCARD, match_allowlist, normalize_allowlist

_SLUG_INVALID = re.compile(r"[^a-z0-9@._+-]+")


def normalize_slug(value: str) -> str:
    cleaned = value.strip().lower().lstrip("#")
    cleaned = _SLUG_INVALID.sub("-", cleaned)
    return re.sub(r"-{2,}", "-", cleaned).strip("-")


@dataclass(frozen=True)
class GroupMatch:
    group_config: GroupConfig | None
    wildcard_config: GroupConfig | None
    group_key: str | None
    match_source: str | None  # "direct" | "normalized" | "wildcard"
    allowed: bool
    allowlist_configured: bool


def resolve_group_match(
    groups: Mapping[str, GroupConfig] | None,
    group_id: str,
    group_name: str | None = None,
) -> GroupMatch:
    """Resolve a group's config by id, name, slug, then the ``*`` entry.

    With a non-empty ``groups`` mapping, a group that matches nothing
    (including the wildcard) is not allowed.
    """
    groups = groups or {}
    allowlist_configured = len(groups) > 0
    name = (group_name or "").strip() or None
    candidates = [group_id]
    if name:
        candidates.extend([name, normalize_slug(name)])
    candidates = [c for c in candidates if c]

    wildcard_config = groups.get(WILDCARD)
    entry: GroupConfig | None = None
    key: str | None = None
    source: str | None = None

    for candidate in candidates:
        if candidate in groups and candidate != WILDCARD:
            entry, key, source = groups[candidate], candidate, "direct"
            break
    if entry is None:
        normalized = {normalize_slug(k): k for k in groups if k != WILDCARD}
        for candidate in candidates:
            original = normalized.get(normalize_slug(candidate))
            if original is not None:
                entry, key, source = groups[original], original, "normalized"
                break
    if entry is None and wildcard_config is not None:
        entry, key, source = wildcard_config, WILDCARD, "wildcard"

    return GroupMatch(
        group_config=entry,
        wildcard_config=wildcard_config,
        group_key=key,
        match_source=source,
        allowed=not allowlist_configured or entry is not None,
        allowlist_configured=allowlist_configured,
    )


def resolve_require_mention(
    group_config: GroupConfig | None,
    wildcard_config: GroupConfig | None,
) -> bool:
    """Group setting, then the wildcard entry, default True."""
    if group_config is not None and group_config.require_mention is not None:
        return group_config.require_mention
    if wildcard_config is not None and wildcard_config.require_mention is not None:
        return wildcard_config.require_mention
    return True


def resolve_group_sender_allowed(
    group_policy: GroupPolicy,
    outer_allow_from: Sequence[str],
    inner_allow_from: Sequence[str],
    sender_id: str,
    sender_name: str | None = None,
) -> bool:
    """Apply the group sender policy.

    ``allowlist`` admits a sender matching either the channel-level (outer)
    or the per-group (inner) list; with both lists empty nobody is admitted.
    """
    if group_policy == "disabled":
        return False
    if group_policy == "open":
        return True
    outer = normalize_allowlist(outer_allow_from)
    inner = normalize_allowlist(inner_allow_from)
    if not outer and not inner:
        return False
    return (
        match_allowlist(outer, sender_id, sender_name).allowed
        or match_allowlist(inner, sender_id, sender_name).allowed
    )
