"""Shared fixtures and fakes for repair-chat tests."""

from __future__ import annotations

import pytest

from repair_chat.agents.base import AgentRegistry
from repair_chat.config import load_config
from repair_chat.types import ChatMessage, LLMProviderError, RepairChatConfig

_ENV_OVERRIDES = (
    "LANGFUSE_HOST",
    "LANGFUSE_PUBLIC_KEY",
    "LANGFUSE_SECRET_KEY",
    "ANTHROPIC_API_KEY",
    "CORS_ORIGIN",
    "PORT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's environment out of config loading."""
    for name in _ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Fake agents
# ---------------------------------------------------------------------------


class FakeStream:
    """AgentStream yielding fixed chunks, optionally breaking partway."""

    def __init__(
        self,
        chunks: list,
        response: str | None = None,
        error_after: int | None = None,
    ) -> None:
        self.response = response
        self.text_stream = self._iter(chunks, error_after)

    @staticmethod
    async def _iter(chunks, error_after):
        for i, chunk in enumerate(chunks):
            if error_after is not None and i >= error_after:
                raise RuntimeError("stream broke")
            yield chunk
        if error_after is not None and error_after >= len(chunks):
            raise RuntimeError("stream broke")


class FakeAgent:
    """Agent that replays canned chunks and records what it was sent."""

    def __init__(
        self,
        chunks: list | None = None,
        *,
        response: str | None = None,
        error_after: int | None = None,
        name: str = "fake",
    ) -> None:
        self.name = name
        self.chunks = chunks if chunks is not None else ["Hello"]
        self.response = response
        self.error_after = error_after
        self.calls: list[list[ChatMessage]] = []

    async def stream(self, messages: list[ChatMessage]) -> FakeStream:
        self.calls.append(list(messages))
        return FakeStream(self.chunks, self.response, self.error_after)


class FailingAgent:
    """Agent whose stream cannot even be opened."""

    name = "failing"

    def __init__(self) -> None:
        self.calls = 0

    async def stream(self, messages: list[ChatMessage]):
        self.calls += 1
        raise LLMProviderError("HTTP 529: overloaded", provider="fake", status_code=529)


# ---------------------------------------------------------------------------
# Fake tracer
# ---------------------------------------------------------------------------


class RecordingTracer:
    """Tracer that records every call; ``fail=True`` makes every call raise."""

    def __init__(self, *, fail: bool = False, connected: bool = True) -> None:
        self.fail = fail
        self.connected = connected
        self.calls: list[tuple[str, tuple]] = []

    @property
    def enabled(self) -> bool:
        return True

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if self.fail:
            raise ConnectionError(f"tracer down during {name}")

    def named(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]

    async def start_trace(self, name, metadata=None):
        self._record("start_trace", name, metadata)
        return "trace-1"

    async def end_trace(self, trace_id, metadata=None):
        self._record("end_trace", trace_id, metadata)

    async def log_tool_execution(self, trace_id, name, input, output, metadata=None):
        self._record("log_tool_execution", trace_id, name, input, output, metadata)

    async def test_connection(self):
        self._record("test_connection")
        return self.connected


# ---------------------------------------------------------------------------
# Config / app fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_config() -> RepairChatConfig:
    return load_config(config_dict={
        "server": {"service_name": "repair-chat-test"},
        "cors": {"allowed_origins": ["https://app.example.com", "http://localhost:*"]},
        "agents": [
            {
                "id": "repair-workflow-orchestrator",
                "provider": "static",
                "text": "static reply",
                "aliases": ["direct-agent"],
            },
        ],
    })


@pytest.fixture
def tracer() -> RecordingTracer:
    return RecordingTracer()


@pytest.fixture
def fake_agent() -> FakeAgent:
    return FakeAgent(["Hel", "lo"])


@pytest.fixture
def registry(fake_agent) -> AgentRegistry:
    reg = AgentRegistry()
    reg.register("repair-workflow-orchestrator", fake_agent, aliases=["direct-agent"])
    return reg
