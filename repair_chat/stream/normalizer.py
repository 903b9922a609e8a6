"""Canonicalize loosely-typed chat messages into ``ChatMessage`` lists.

Clients send ``content`` either as a plain string or as an array of content
blocks (``[{"type": "text", "text": ...}, {"type": "image", ...}]``).  Agents
only accept plain strings, so array content is flattened by joining the text
blocks with a single space.  Nothing here raises: malformed input degrades to
best-effort text.
"""

from __future__ import annotations

import json
from typing import Any

from ..types import ChatMessage


def content_blocks_text(content: list) -> str:
    """Join the ``text`` of every ``type: "text"`` block with one space."""
    return " ".join(
        block["text"] for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and block.get("text")
        and isinstance(block["text"], str)
    )


def coerce_text(value: Any) -> str:
    """Best-effort string extraction for content of unknown shape."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return content_blocks_text(value)
    if isinstance(value, dict):
        for key in ("text", "content"):
            inner = value.get(key)
            if isinstance(inner, str) and inner:
                return inner
        try:
            return json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def normalize_message(raw: Any) -> ChatMessage:
    if isinstance(raw, ChatMessage):
        return ChatMessage(role=raw.role, content=coerce_text(raw.content))
    if not isinstance(raw, dict):
        return ChatMessage(role="user", content=coerce_text(raw))
    role = raw.get("role")
    return ChatMessage(
        role=role if isinstance(role, str) and role else "user",
        content=coerce_text(raw.get("content")),
    )


def normalize_messages(raw_messages: Any) -> list[ChatMessage]:
    """Convert a request's ``messages`` array into canonical messages.

    Order is preserved.  A non-list input yields an empty list.
    """
    if not isinstance(raw_messages, list):
        return []
    return [normalize_message(m) for m in raw_messages]


def last_user_text(messages: list[ChatMessage]) -> str:
    """Return the content of the most recent user message ("" if none)."""
    for msg in reversed(messages):
        if msg.role == "user":
            return msg.content
    return ""
