"""Tests for repair_chat.prompts.PromptManager."""

from __future__ import annotations

import pytest

from repair_chat.prompts import PromptManager
from repair_chat.types import PromptConfig


class FakeRemote:
    """Stands in for LangfuseClient.fetch_prompt."""

    def __init__(self, prompts: dict[str, str] | None = None) -> None:
        self.prompts = prompts or {}
        self.calls: list[tuple[str, str]] = []

    async def fetch_prompt(self, name, label="production"):
        self.calls.append((name, label))
        if name not in self.prompts:
            return None
        return {"name": name, "version": 2, "prompt": self.prompts[name]}


@pytest.fixture
def prompt_dir(tmp_path):
    (tmp_path / "orchestrator.txt").write_text("ローカルの指示", encoding="utf-8")
    (tmp_path / "issue-analysis.txt").write_text("問題分析", encoding="utf-8")
    return tmp_path


class TestResolution:
    @pytest.mark.asyncio
    async def test_langfuse_first(self, prompt_dir):
        remote = FakeRemote({"orchestrator": "リモートの指示"})
        pm = PromptManager(PromptConfig(local_dir=str(prompt_dir)), remote=remote)
        info = await pm.get_prompt("orchestrator")
        assert info.source == "langfuse"
        assert info.content == "リモートの指示"
        assert info.version == 2
        assert remote.calls == [("orchestrator", "production")]

    @pytest.mark.asyncio
    async def test_local_dir_fallback(self, prompt_dir):
        pm = PromptManager(PromptConfig(local_dir=str(prompt_dir)), remote=FakeRemote())
        info = await pm.get_prompt("orchestrator")
        assert info.source == "local"
        assert info.content == "ローカルの指示"

    @pytest.mark.asyncio
    async def test_inline_local_fallback(self):
        pm = PromptManager(PromptConfig(local={"greeting": "こんにちは"}))
        assert await pm.get_prompt_text("greeting") == "こんにちは"

    @pytest.mark.asyncio
    async def test_missing(self):
        pm = PromptManager(PromptConfig(), remote=FakeRemote())
        info = await pm.get_prompt("unknown")
        assert info.source == "none"
        assert info.content == ""
        assert await pm.prompt_exists("unknown") is False

    @pytest.mark.asyncio
    async def test_local_only_skips_remote(self, prompt_dir):
        remote = FakeRemote({"orchestrator": "remote"})
        pm = PromptManager(PromptConfig(local_dir=str(prompt_dir)), remote=remote)
        info = await pm.get_prompt("orchestrator", local_only=True)
        assert info.source == "local"
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_blank_remote_prompt_falls_back(self, prompt_dir):
        remote = FakeRemote({"orchestrator": "   "})
        pm = PromptManager(PromptConfig(local_dir=str(prompt_dir)), remote=remote)
        assert (await pm.get_prompt("orchestrator")).source == "local"


class TestCache:
    @pytest.mark.asyncio
    async def test_cached_within_ttl(self):
        remote = FakeRemote({"p": "text"})
        pm = PromptManager(PromptConfig(), remote=remote)
        await pm.get_prompt("p")
        await pm.get_prompt("p")
        assert len(remote.calls) == 1

    @pytest.mark.asyncio
    async def test_expired_entries_refetched(self):
        remote = FakeRemote({"p": "text"})
        pm = PromptManager(PromptConfig(cache_ttl_s=0), remote=remote)
        await pm.get_prompt("p")
        await pm.get_prompt("p")
        assert len(remote.calls) == 2

    @pytest.mark.asyncio
    async def test_force_refresh(self):
        remote = FakeRemote({"p": "text"})
        pm = PromptManager(PromptConfig(), remote=remote)
        await pm.get_prompt("p")
        await pm.get_prompt("p", force_refresh=True)
        assert len(remote.calls) == 2

    @pytest.mark.asyncio
    async def test_stats_and_clear(self, prompt_dir):
        remote = FakeRemote({"orchestrator": "remote"})
        pm = PromptManager(PromptConfig(local_dir=str(prompt_dir)), remote=remote)
        await pm.get_prompt("orchestrator")
        await pm.get_prompt("issue-analysis")
        await pm.get_prompt("missing")
        assert pm.stats() == {
            "total_prompts": 2,
            "cached_prompts": 3,
            "langfuse_prompts": 1,
            "local_prompts": 1,
            "missing_prompts": 1,
        }
        pm.clear_cache()
        assert pm.stats()["cached_prompts"] == 0

    @pytest.mark.asyncio
    async def test_refresh_all(self, prompt_dir):
        remote = FakeRemote({"orchestrator": "remote"})
        pm = PromptManager(PromptConfig(local_dir=str(prompt_dir)), remote=remote)
        assert await pm.refresh_all() == {
            "issue-analysis": "local",
            "orchestrator": "langfuse",
        }
