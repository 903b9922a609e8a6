"""All dataclasses, Protocols, and error types for repair-chat."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass
class ChatMessage:
    role: str  # "user", "assistant", "system"
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class ContactHint:
    """Heuristically extracted contact fields from the latest user message."""
    company: str = ""
    email: str = ""
    phone: str = ""

    def is_empty(self) -> bool:
        return not (self.company or self.email or self.phone)

    def to_dict(self) -> dict:
        return {"company": self.company, "email": self.email, "phone": self.phone}


# ---------------------------------------------------------------------------
# Sessions & request lifecycle
# ---------------------------------------------------------------------------

@dataclass
class StreamSession:
    session_id: str
    user_id: str | None = None
    started_at: float = field(default_factory=time.time)
    metadata: dict = field(default_factory=dict)


class RequestState(Enum):
    RECEIVED = "received"
    NORMALIZING = "normalizing"
    INVOKING = "invoking"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CLOSED = "closed"
    ERRORED = "errored"


# ---------------------------------------------------------------------------
# Wire protocol frames
# ---------------------------------------------------------------------------

@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def to_wire(self) -> dict:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
        }


@dataclass
class MessageIdFrame:
    message_id: str


@dataclass
class TextDeltaFrame:
    text: str


@dataclass
class FinishFrame:
    finish_reason: str = "stop"
    usage: Usage = field(default_factory=Usage)
    is_continued: bool = False


@dataclass
class DoneFrame:
    finish_reason: str = "stop"
    usage: Usage = field(default_factory=Usage)


ProtocolFrame = MessageIdFrame | TextDeltaFrame | FinishFrame | DoneFrame


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RepairChatError(Exception):
    """Base class for repair-chat errors."""


class ConfigError(RepairChatError):
    pass


class AgentNotFoundError(RepairChatError):
    def __init__(self, agent_id: str):
        super().__init__(f"Agent '{agent_id}' not found")
        self.agent_id = agent_id


class LLMProviderError(RepairChatError):
    def __init__(self, message: str, provider: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class AgentStream(Protocol):
    """Single-consumer token stream returned by ``Agent.stream``.

    ``response`` is an optional plain-text fallback some agents expose when
    the incremental stream breaks.
    """
    text_stream: AsyncIterator[str]
    response: str | None


@runtime_checkable
class Agent(Protocol):
    name: str

    async def stream(self, messages: list[ChatMessage]) -> AgentStream: ...


@runtime_checkable
class Tracer(Protocol):
    @property
    def enabled(self) -> bool: ...

    async def start_trace(self, name: str, metadata: dict | None = None) -> str: ...

    async def end_trace(self, trace_id: str | None, metadata: dict | None = None) -> None: ...

    async def log_tool_execution(
        self,
        trace_id: str | None,
        name: str,
        input: Any,
        output: Any,
        metadata: dict | None = None,
    ) -> None: ...

    async def test_connection(self) -> bool: ...


@runtime_checkable
class PromptSource(Protocol):
    async def get_prompt_text(self, name: str, label: str = "production") -> str: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class CorsConfig:
    allowed_origins: list[str] = field(default_factory=lambda: ["*"])
    expose_headers: list[str] = field(default_factory=lambda: [
        "Content-Type", "Cache-Control", "Connection", "X-Accel-Buffering",
        "X-Session-ID", "X-User-ID",
    ])


@dataclass
class StreamConfig:
    chunk_size: int = 1  # characters per 0: frame
    inject_contact_hint: bool = True
    session_header: str = "X-Session-ID"
    user_header: str = "X-User-ID"


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 80
    service_name: str = "repair-chat"
    workflow_routes: dict[str, str] = field(default_factory=lambda: {
        "repair-intake": "repair-workflow-orchestrator",
    })


@dataclass
class LangfuseConfig:
    host: str = ""
    public_key: str = ""
    secret_key: str = ""
    timeout: float = 10.0

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.public_key and self.secret_key)


@dataclass
class PromptConfig:
    label: str = "production"
    cache_ttl_s: float = 300.0
    local_dir: str = ""  # directory of <name>.txt fallbacks
    local: dict[str, str] = field(default_factory=dict)  # inline fallbacks


@dataclass
class AgentDef:
    """One agent in the registry."""
    id: str
    provider: str = "anthropic"  # "anthropic" or "static"
    prompt: str = ""  # prompt name resolved via the prompt manager
    model: str = "claude-3-5-sonnet-20240620"
    max_tokens: int = 4096
    temperature: float = 0.3
    api_key_env: str = "ANTHROPIC_API_KEY"
    base_url: str = "https://api.anthropic.com"
    text: str = ""  # static provider reply
    aliases: list[str] = field(default_factory=list)
    description: str = ""


@dataclass
class RepairChatConfig:
    version: str = "1.0"
    server: ServerConfig = field(default_factory=ServerConfig)
    cors: CorsConfig = field(default_factory=CorsConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    langfuse: LangfuseConfig = field(default_factory=LangfuseConfig)
    prompts: PromptConfig = field(default_factory=PromptConfig)
    agents: list[AgentDef] = field(default_factory=list)
