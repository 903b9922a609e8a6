"""Tests for repair_chat.stream.normalizer."""

from __future__ import annotations

from repair_chat.stream.normalizer import (
    coerce_text,
    content_blocks_text,
    last_user_text,
    normalize_message,
    normalize_messages,
)
from repair_chat.types import ChatMessage


class TestContentBlocks:
    def test_text_blocks_joined_with_space(self):
        blocks = [
            {"type": "text", "text": "A"},
            {"type": "image", "source": {"data": "..."}},
            {"type": "text", "text": "B"},
        ]
        assert content_blocks_text(blocks) == "A B"

    def test_empty_and_non_string_text_skipped(self):
        blocks = [
            {"type": "text", "text": ""},
            {"type": "text", "text": 42},
            {"type": "text", "text": "ok"},
            "stray",
        ]
        assert content_blocks_text(blocks) == "ok"

    def test_no_text_blocks(self):
        assert content_blocks_text([{"type": "image"}]) == ""


class TestCoerceText:
    def test_none(self):
        assert coerce_text(None) == ""

    def test_dict_with_text(self):
        assert coerce_text({"text": "hi"}) == "hi"

    def test_dict_with_content(self):
        assert coerce_text({"content": "hi"}) == "hi"

    def test_other_dict_serialized(self):
        assert coerce_text({"a": "日本"}) == '{"a": "日本"}'

    def test_number(self):
        assert coerce_text(3) == "3"


class TestNormalizeMessages:
    def test_plain_strings_preserved_in_order(self):
        raw = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "help"},
        ]
        assert normalize_messages(raw) == [
            ChatMessage("user", "hi"),
            ChatMessage("assistant", "hello"),
            ChatMessage("user", "help"),
        ]

    def test_array_content_flattened(self):
        raw = [{"role": "user", "content": [
            {"type": "text", "text": "A"},
            {"type": "image"},
            {"type": "text", "text": "B"},
        ]}]
        assert normalize_messages(raw)[0].content == "A B"

    def test_missing_role_defaults_to_user(self):
        assert normalize_message({"content": "x"}).role == "user"

    def test_non_dict_entry_becomes_user_message(self):
        assert normalize_message("just text") == ChatMessage("user", "just text")

    def test_non_list_input(self):
        assert normalize_messages(None) == []
        assert normalize_messages({"role": "user"}) == []

    def test_idempotent(self):
        raw = [
            {"role": "system", "content": "ctx"},
            {"role": "user", "content": [{"type": "text", "text": "A"}]},
            {"content": None},
        ]
        once = normalize_messages(raw)
        twice = normalize_messages([m.to_dict() for m in once])
        assert once == twice
        assert normalize_messages(once) == once


class TestLastUserText:
    def test_finds_most_recent_user(self):
        msgs = [
            ChatMessage("user", "first"),
            ChatMessage("assistant", "reply"),
            ChatMessage("user", "second"),
            ChatMessage("assistant", "reply 2"),
        ]
        assert last_user_text(msgs) == "second"

    def test_no_user(self):
        assert last_user_text([ChatMessage("assistant", "x")]) == ""
