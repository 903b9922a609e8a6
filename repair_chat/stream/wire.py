"""Line-oriented streaming protocol consumed by the chat frontend SDK.

Every record is one newline-terminated line with a single-character tag:

    f:{"messageId":"msg-1718000000000-k2j4h5g6f"}
    0:"H"
    0:"i"
    e:{"finishReason":"stop","usage":{...},"isContinued":false}
    d:{"finishReason":"stop","usage":{...}}

``0:`` payloads are double-quoted strings with backslash, quote, newline and
carriage-return escaped (backslash first so later substitutions are not
escaped twice).  Consumers read the body as an append-only line stream.
"""

from __future__ import annotations

import fnmatch
import json
import random
import string
import time
from collections.abc import Iterator

from ..types import (
    DoneFrame,
    FinishFrame,
    MessageIdFrame,
    ProtocolFrame,
    TextDeltaFrame,
    Usage,
)

MEDIA_TYPE = "text/plain; charset=utf-8"

_BASE36 = string.digits + string.ascii_lowercase


def random_base36(length: int) -> str:
    return "".join(random.choice(_BASE36) for _ in range(length))


def new_message_id() -> str:
    """``msg-<epoch-ms>-<9 base36 chars>``."""
    return f"msg-{int(time.time() * 1000)}-{random_base36(9)}"


# ---------------------------------------------------------------------------
# Escaping
# ---------------------------------------------------------------------------

def escape_chunk(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


def unescape_chunk(payload: str) -> str:
    """Inverse of :func:`escape_chunk` for a quoted ``0:`` payload body."""
    out: list[str] = []
    i = 0
    while i < len(payload):
        ch = payload[i]
        if ch == "\\" and i + 1 < len(payload):
            nxt = payload[i + 1]
            out.append({"n": "\n", "r": "\r"}.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


# ---------------------------------------------------------------------------
# Frame encoding
# ---------------------------------------------------------------------------

def _json(obj: dict) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def encode_frame(frame: ProtocolFrame) -> str:
    if isinstance(frame, MessageIdFrame):
        return f"f:{_json({'messageId': frame.message_id})}\n"
    if isinstance(frame, TextDeltaFrame):
        return f'0:"{escape_chunk(frame.text)}"\n'
    if isinstance(frame, FinishFrame):
        return "e:" + _json({
            "finishReason": frame.finish_reason,
            "usage": frame.usage.to_wire(),
            "isContinued": frame.is_continued,
        }) + "\n"
    if isinstance(frame, DoneFrame):
        return "d:" + _json({
            "finishReason": frame.finish_reason,
            "usage": frame.usage.to_wire(),
        }) + "\n"
    raise TypeError(f"Unknown frame type: {type(frame).__name__}")


def encode_message_id(message_id: str) -> str:
    return encode_frame(MessageIdFrame(message_id))


def text_frames(text: str, chunk_size: int = 1) -> Iterator[TextDeltaFrame]:
    """Split *text* into data frames of *chunk_size* characters.

    Empty text still yields one empty frame so the client never sees a body
    without data frames.
    """
    if not text:
        yield TextDeltaFrame("")
        return
    step = max(1, chunk_size)
    for i in range(0, len(text), step):
        yield TextDeltaFrame(text[i:i + step])


def encode_text(text: str, chunk_size: int = 1) -> Iterator[str]:
    for frame in text_frames(text, chunk_size):
        yield encode_frame(frame)


def encode_finish(usage: Usage) -> str:
    return encode_frame(FinishFrame(usage=usage))


def encode_done(usage: Usage) -> str:
    return encode_frame(DoneFrame(usage=usage))


def encode_response(
    text: str,
    message_id: str,
    usage: Usage | None = None,
    chunk_size: int = 1,
) -> Iterator[str]:
    """Full ordered record sequence for one response: f, 0..., e, d."""
    if usage is None:
        usage = Usage(completion_tokens=len(text))
    yield encode_message_id(message_id)
    yield from encode_text(text, chunk_size)
    yield encode_finish(usage)
    yield encode_done(usage)


# ---------------------------------------------------------------------------
# Decoding (client-side mirror)
# ---------------------------------------------------------------------------

def decode_line(line: str) -> ProtocolFrame | None:
    """Parse one protocol line.  Unknown tags return ``None``."""
    line = line.rstrip("\r\n")
    tag, sep, payload = line.partition(":")
    if not sep:
        return None
    if tag == "0":
        if len(payload) < 2 or payload[0] != '"' or payload[-1] != '"':
            return None
        return TextDeltaFrame(unescape_chunk(payload[1:-1]))
    if tag not in ("f", "e", "d"):
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    if tag == "f":
        return MessageIdFrame(data.get("messageId", ""))
    raw_usage = data.get("usage", {}) or {}
    usage = Usage(
        prompt_tokens=raw_usage.get("promptTokens", 0),
        completion_tokens=raw_usage.get("completionTokens", 0),
    )
    if tag == "e":
        return FinishFrame(
            finish_reason=data.get("finishReason", "stop"),
            usage=usage,
            is_continued=data.get("isContinued", False),
        )
    return DoneFrame(finish_reason=data.get("finishReason", "stop"), usage=usage)


def decode_lines(body: str) -> list[ProtocolFrame]:
    frames: list[ProtocolFrame] = []
    for line in body.split("\n"):
        if not line:
            continue
        frame = decode_line(line)
        if frame is not None:
            frames.append(frame)
    return frames


def decode_text(body: str) -> str:
    """Reassemble the text carried by all ``0:`` frames of *body*."""
    return "".join(
        f.text for f in decode_lines(body) if isinstance(f, TextDeltaFrame)
    )


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

def origin_allowed(origin: str | None, patterns: list[str]) -> bool:
    if not origin:
        return False
    return any(fnmatch.fnmatchcase(origin, p) for p in patterns)


def stream_headers(
    origin: str | None = None,
    allowed_origins: list[str] | None = None,
    expose_headers: list[str] | None = None,
) -> dict[str, str]:
    """Response headers for a live protocol stream.

    ``Access-Control-Allow-Origin`` is echoed only for allow-listed origins.
    """
    headers = {
        "Content-Type": MEDIA_TYPE,
        "Cache-Control": "no-cache, no-transform",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    if origin_allowed(origin, allowed_origins or []):
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
        headers["Vary"] = "Origin"
        if expose_headers:
            headers["Access-Control-Expose-Headers"] = ", ".join(expose_headers)
    return headers
