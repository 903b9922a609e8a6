"""Tests for repair_chat.stream.wire."""

from __future__ import annotations

import re

import pytest

from repair_chat.stream.wire import (
    decode_line,
    decode_lines,
    decode_text,
    encode_done,
    encode_finish,
    encode_frame,
    encode_response,
    escape_chunk,
    new_message_id,
    origin_allowed,
    stream_headers,
    text_frames,
)
from repair_chat.types import (
    DoneFrame,
    FinishFrame,
    MessageIdFrame,
    TextDeltaFrame,
    Usage,
)


class TestEscaping:
    def test_backslash_escaped_first(self):
        assert escape_chunk('\\"') == '\\\\\\"'

    def test_newline_and_cr(self):
        assert escape_chunk("a\nb\rc") == "a\\nb\\rc"

    def test_plain_text_untouched(self):
        assert escape_chunk("修理") == "修理"

    @pytest.mark.parametrize("text", [
        'quote " inside',
        "back\\slash",
        "lines\r\nand more\n",
        '\\n literal, not a newline',
        "日本語 テキスト",
    ])
    def test_roundtrip_through_frames(self, text):
        body = "".join(encode_response(text, "msg-1-abc"))
        assert decode_text(body) == text


class TestFrames:
    def test_message_id_frame(self):
        assert encode_frame(MessageIdFrame("msg-1-a")) == 'f:{"messageId":"msg-1-a"}\n'

    def test_text_frame(self):
        assert encode_frame(TextDeltaFrame('"')) == '0:"\\""\n'

    def test_finish_frame(self):
        usage = Usage(completion_tokens=5)
        assert encode_finish(usage) == (
            'e:{"finishReason":"stop","usage":{"promptTokens":0,"completionTokens":5},'
            '"isContinued":false}\n'
        )

    def test_done_frame(self):
        usage = Usage(completion_tokens=5)
        assert encode_done(usage) == (
            'd:{"finishReason":"stop","usage":{"promptTokens":0,"completionTokens":5}}\n'
        )

    def test_unknown_frame_type(self):
        with pytest.raises(TypeError):
            encode_frame("not a frame")

    def test_message_id_format(self):
        assert re.fullmatch(r"msg-\d+-[a-z0-9]{9}", new_message_id())


class TestTextFrames:
    def test_one_frame_per_character(self):
        assert [f.text for f in text_frames("abc")] == ["a", "b", "c"]

    def test_chunk_size(self):
        assert [f.text for f in text_frames("abcde", chunk_size=2)] == ["ab", "cd", "e"]

    def test_empty_text_emits_one_empty_frame(self):
        assert [f.text for f in text_frames("")] == [""]

    def test_surrogate_free_split(self):
        # Non-BMP characters stay whole
        assert [f.text for f in text_frames("a😀")] == ["a", "😀"]


class TestEncodeResponse:
    def test_order_and_default_usage(self):
        body = "".join(encode_response("Hi", "msg-1-abc"))
        assert body == (
            'f:{"messageId":"msg-1-abc"}\n'
            '0:"H"\n'
            '0:"i"\n'
            'e:{"finishReason":"stop","usage":{"promptTokens":0,"completionTokens":2},'
            '"isContinued":false}\n'
            'd:{"finishReason":"stop","usage":{"promptTokens":0,"completionTokens":2}}\n'
        )

    def test_empty_text(self):
        lines = "".join(encode_response("", "m")).splitlines()
        assert lines[1] == '0:""'
        assert len(lines) == 4


class TestDecode:
    def test_decode_all_frame_kinds(self):
        body = "".join(encode_response("ok", "msg-9-xyz"))
        frames = decode_lines(body)
        assert frames[0] == MessageIdFrame("msg-9-xyz")
        assert frames[1:3] == [TextDeltaFrame("o"), TextDeltaFrame("k")]
        assert frames[3] == FinishFrame(usage=Usage(completion_tokens=2))
        assert frames[4] == DoneFrame(usage=Usage(completion_tokens=2))

    def test_unknown_tag_ignored(self):
        assert decode_line('9:"x"') is None
        assert decode_line("no separator") is None

    def test_malformed_json(self):
        assert decode_line("e:{oops") is None

    def test_non_object_payload(self):
        assert decode_line("f:1") is None
        assert decode_line('e:"stop"') is None
        assert decode_line("d:[1, 2]") is None
        assert decode_line("d:null") is None


class TestHeaders:
    def test_base_headers(self):
        headers = stream_headers()
        assert headers["Content-Type"] == "text/plain; charset=utf-8"
        assert headers["X-Accel-Buffering"] == "no"
        assert "Access-Control-Allow-Origin" not in headers

    def test_allowed_origin(self):
        headers = stream_headers(
            "https://app.example.com", ["https://*.example.com"], ["X-Session-ID"],
        )
        assert headers["Access-Control-Allow-Origin"] == "https://app.example.com"
        assert headers["Access-Control-Expose-Headers"] == "X-Session-ID"
        assert headers["Vary"] == "Origin"

    def test_origin_matching(self):
        assert origin_allowed("http://localhost:5173", ["http://localhost:*"])
        assert not origin_allowed("https://evil.example", ["https://app.example.com"])
        assert not origin_allowed(None, ["*"])
        assert origin_allowed("https://any.example", ["*"])
