"""Post-processing of agent output before it is written to the wire.

The whole agent response is buffered: menu reformatting needs the complete
text.  Processing order is fixed:

1. drain the token stream (degrading to ``stream.response`` or
   ``FALLBACK_TEXT`` when the stream breaks)
2. strip hidden ``*_DATA_START ... *_DATA_END`` blocks and collapse whitespace
3. reformat numbered menus
4. substitute ``FALLBACK_TEXT`` for an empty result

None of the functions here raise.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "申し訳ありませんが、応答を処理できませんでした。"

HIDDEN_DATA_KINDS = ("CUSTOMER", "PRODUCT", "ISSUE", "REPAIR")

_HIDDEN_BLOCK_RE = re.compile(
    r"(" + "|".join(HIDDEN_DATA_KINDS) + r")_DATA_START.*?\1_DATA_END",
    re.DOTALL,
)
_WHITESPACE_RE = re.compile(r"\s+")

# "1. text" up to the next "N. " or end of string
_MENU_OPTION_RE = re.compile(r"(\d+)\.\s+(.+?)(?=\s*\d+\.\s|$)", re.DOTALL)

MAIN_MENU_PHRASES = (
    "修理受付・修理履歴・修理予約",
    "一般的なFAQ",
    "リクエスト送信用オンラインフォーム",
)

MAIN_MENU_TEXT = (
    "1. 修理受付・修理履歴・修理予約\n"
    "\n"
    "2. 一般的なFAQ\n"
    "\n"
    "3. リクエスト送信用オンラインフォーム\n"
    "\n"
    "番号でお答えください。直接入力も可能です。"
)


@dataclass
class ProcessedResponse:
    text: str
    raw_text: str = ""
    hidden_data: dict[str, Any] = field(default_factory=dict)
    degraded: bool = False  # stream failed or produced nothing usable
    error: Exception | None = None


# ---------------------------------------------------------------------------
# Pure text transforms
# ---------------------------------------------------------------------------

def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def strip_hidden_blocks(text: str) -> str:
    """Remove paired hidden data blocks, then collapse whitespace.

    Unpaired markers are left in place as literal text.
    """
    return collapse_whitespace(_HIDDEN_BLOCK_RE.sub("", text))


def extract_hidden_data(text: str, kind: str) -> Any | None:
    """Return the JSON payload of the first ``<kind>_DATA_START`` block.

    ``None`` when the markers are missing or the payload is not valid JSON.
    """
    start_tag = f"{kind}_DATA_START"
    end_tag = f"{kind}_DATA_END"
    start = text.find(start_tag)
    if start == -1:
        return None
    end = text.find(end_tag, start + len(start_tag))
    if end == -1:
        return None
    payload = text[start + len(start_tag):end].strip()
    try:
        return json.loads(payload)
    except (json.JSONDecodeError, ValueError):
        return None


def extract_all_hidden_data(text: str) -> dict[str, Any]:
    found: dict[str, Any] = {}
    for kind in HIDDEN_DATA_KINDS:
        data = extract_hidden_data(text, kind)
        if data is not None:
            found[kind.lower()] = data
    return found


def is_main_menu(text: str) -> bool:
    return all(phrase in text for phrase in MAIN_MENU_PHRASES)


def format_menu(text: str) -> str:
    """Lay out numbered options as separate paragraphs.

    Fewer than two options: *text* is returned unchanged.  When the text is
    the application's main menu, the canonical ``MAIN_MENU_TEXT`` block is
    returned instead of the agent's own phrasing.
    """
    matches = list(_MENU_OPTION_RE.finditer(text))
    if len(matches) < 2:
        return text

    if is_main_menu(text):
        return MAIN_MENU_TEXT

    leading = text[:matches[0].start()].strip()
    trailing = text[matches[-1].end():].strip()
    options = [
        f"{m.group(1)}. {collapse_whitespace(m.group(2))}" for m in matches
    ]
    parts = [p for p in [leading, *options, trailing] if p]
    return "\n\n".join(parts)


def finalize_text(raw_text: str) -> str:
    """Strip hidden blocks, reformat menus, and never return ""."""
    text = format_menu(strip_hidden_blocks(raw_text))
    return text or FALLBACK_TEXT


# ---------------------------------------------------------------------------
# Stream draining
# ---------------------------------------------------------------------------

def _fallback_response(stream: Any) -> str | None:
    response = getattr(stream, "response", None)
    if isinstance(response, str) and response:
        return response
    return None


async def drain_stream(stream: Any) -> tuple[str, bool, Exception | None]:
    """Concatenate all string chunks of ``stream.text_stream``.

    Returns ``(text, degraded, error)``.  If iteration raises partway, the
    partial text is discarded in favour of ``stream.response`` or
    ``FALLBACK_TEXT`` and the exception is handed back for tracing.
    """
    if isinstance(stream, str):
        return stream, False, None

    chunks: list[str] = []
    try:
        text_stream = getattr(stream, "text_stream", None)
        if text_stream is None:
            fallback = _fallback_response(stream)
            return (fallback, False, None) if fallback else ("", True, None)
        async for chunk in text_stream:
            if isinstance(chunk, str):
                chunks.append(chunk)
    except Exception as e:
        logger.error(
            "Agent stream failed after %d chunks: %s", len(chunks), e,
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        fallback = _fallback_response(stream)
        if fallback:
            return fallback, True, e
        return FALLBACK_TEXT, True, e

    return "".join(chunks), False, None


async def collect_response(stream: Any) -> ProcessedResponse:
    """Drain *stream* and run the full post-processing pipeline."""
    raw_text, degraded, error = await drain_stream(stream)
    text = finalize_text(raw_text)
    if text == FALLBACK_TEXT and raw_text != FALLBACK_TEXT:
        degraded = True
    return ProcessedResponse(
        text=text,
        raw_text=raw_text,
        hidden_data=extract_all_hidden_data(raw_text),
        degraded=degraded,
        error=error,
    )


async def process_stream(stream: Any) -> str:
    """Drain and post-process an agent stream into display text."""
    return (await collect_response(stream)).text
