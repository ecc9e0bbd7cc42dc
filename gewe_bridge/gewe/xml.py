"""Regex helpers for the XML fragments embedded in app messages."""

from __future__ import annotations

import html
import re

_APP_MSG_TYPE = re.compile(r"<appmsg[\s\S]*?<type>(\d+)</type>", re.IGNORECASE)
_CDATA_PREFIX = "<![CDATA["
_CDATA_SUFFIX = "]]>"


def _strip_cdata(value: str) -> str:
    trimmed = value.strip()
    if trimmed.startswith(_CDATA_PREFIX) and trimmed.endswith(_CDATA_SUFFIX):
        return trimmed[len(_CDATA_PREFIX):-len(_CDATA_SUFFIX)]
    return trimmed


def extract_xml_tag(xml: str, tag: str) -> str | None:
    """Text of the first ``<tag>``, CDATA unwrapped and entities decoded."""
    pattern = re.compile(rf"<{re.escape(tag)}>([\s\S]*?)</{re.escape(tag)}>", re.IGNORECASE)
    match = pattern.search(xml)
    if match is None:
        return None
    return html.unescape(_strip_cdata(match.group(1)))


def extract_app_msg_type(xml: str) -> int | None:
    match = _APP_MSG_TYPE.search(xml)
    return int(match.group(1)) if match else None


def extract_link_details(xml: str) -> dict[str, str | None]:
    return {
        "title": extract_xml_tag(xml, "title"),
        "desc": extract_xml_tag(xml, "des"),
        "link_url": extract_xml_tag(xml, "url"),
        "thumb_url": extract_xml_tag(xml, "thumburl"),
    }


def extract_file_name(xml: str) -> str | None:
    title = extract_xml_tag(xml, "title")
    return title.strip() or None if title else None


def render_link_body(xml: str) -> str:
    """``[Link] title`` followed by the description and URL, one per line."""
    details = extract_link_details(xml)
    lines = []
    if details["title"]:
        lines.append(f"[Link] {details['title']}")
    if details["desc"]:
        lines.append(details["desc"])
    if details["link_url"]:
        lines.append(details["link_url"])
    return "\n".join(lines).strip()
