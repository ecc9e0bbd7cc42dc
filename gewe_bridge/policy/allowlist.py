"""Allowlist normalization and matching."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

CHANNEL_PREFIX_REGEX = re.compile(r"^(gewe-openclaw|gewe|wechat|wx):", re.IGNORECASE)
WILDCARD = "*"


@dataclass(frozen=True)
class AllowlistMatch:
    allowed: bool
    match_key: str | None = None
    match_source: str | None = None  # "wildcard" | "id" | "name"


NO_MATCH = AllowlistMatch(allowed=False)


def normalize_allow_entry(raw: str) -> str:
    return CHANNEL_PREFIX_REGEX.sub("", raw.strip().lower())


def normalize_allowlist(values: Iterable[str | int] | None) -> list[str]:
    normalized = (normalize_allow_entry(str(value)) for value in (values or []))
    return [entry for entry in normalized if entry]


def match_allowlist(
    allow_from: Iterable[str | int] | None,
    sender_id: str,
    sender_name: str | None = None,
) -> AllowlistMatch:
    """Match a sender by wildcard, id, then display name."""
    entries = normalize_allowlist(allow_from)
    if not entries:
        return NO_MATCH
    if WILDCARD in entries:
        return AllowlistMatch(allowed=True, match_key=WILDCARD, match_source="wildcard")
    normalized_id = normalize_allow_entry(sender_id)
    if normalized_id in entries:
        return AllowlistMatch(allowed=True, match_key=normalized_id, match_source="id")
    normalized_name = normalize_allow_entry(sender_name) if sender_name else ""
    if normalized_name and normalized_name in entries:
        return AllowlistMatch(allowed=True, match_key=normalized_name, match_source="name")
    return NO_MATCH
