"""Agent registry and the simple in-process agents."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from ..types import (
    Agent,
    AgentDef,
    AgentNotFoundError,
    ChatMessage,
    LLMProviderError,
    PromptSource,
    RepairChatConfig,
)
from .anthropic import AnthropicAgent

logger = logging.getLogger(__name__)


async def _iter_chunks(chunks: list[str]) -> AsyncIterator[str]:
    for chunk in chunks:
        yield chunk


@dataclass
class TextStream:
    """AgentStream over a fixed list of chunks."""
    chunks: list[str] = field(default_factory=list)
    response: str | None = None

    def __post_init__(self) -> None:
        self.text_stream = _iter_chunks(self.chunks)


class StaticAgent:
    """Replies with a configured text regardless of input."""

    def __init__(self, name: str, text: str) -> None:
        self.name = name
        self.text = text

    async def stream(self, messages: list[ChatMessage]) -> TextStream:
        return TextStream(chunks=[self.text], response=self.text)


class AgentRegistry:
    """Maps public agent ids (and their aliases) to agents."""

    def __init__(self) -> None:
        self._agents: dict[str, Agent] = {}
        self._aliases: dict[str, str] = {}

    def register(self, agent_id: str, agent: Agent, aliases: list[str] | None = None) -> None:
        self._agents[agent_id] = agent
        for alias in aliases or []:
            self._aliases[alias] = agent_id

    def resolve(self, agent_id: str) -> str | None:
        """Return the canonical id for *agent_id*, or ``None``."""
        if agent_id in self._agents:
            return agent_id
        target = self._aliases.get(agent_id)
        return target if target in self._agents else None

    def get(self, agent_id: str) -> Agent | None:
        canonical = self.resolve(agent_id)
        return self._agents[canonical] if canonical else None

    def ids(self) -> list[str]:
        return list(self._agents)

    def aliases(self) -> dict[str, str]:
        return dict(self._aliases)

    def __contains__(self, agent_id: str) -> bool:
        return self.resolve(agent_id) is not None

    def __len__(self) -> int:
        return len(self._agents)

    async def invoke(
        self,
        agent_id: str,
        messages: list[ChatMessage],
        context_hint: ChatMessage | None = None,
    ):
        """Start a token stream on *agent_id*.

        Raises AgentNotFoundError for unknown ids.  Agent failures propagate.
        """
        agent = self.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        if context_hint is not None:
            messages = [context_hint, *messages]
        logger.debug("Invoking agent %s with %d messages", agent_id, len(messages))
        return await agent.stream(messages)

    async def aclose(self) -> None:
        for agent in self._agents.values():
            close = getattr(agent, "aclose", None)
            if close is not None:
                await close()


def build_agent(
    definition: AgentDef,
    prompt_source: PromptSource | None = None,
    prompt_label: str = "production",
) -> Agent:
    if definition.provider == "static":
        return StaticAgent(definition.id, definition.text)
    if definition.provider == "anthropic":
        return AnthropicAgent(
            definition, prompt_source=prompt_source, prompt_label=prompt_label,
        )
    raise LLMProviderError(
        f"Unknown provider '{definition.provider}' for agent '{definition.id}'",
        provider=definition.provider,
    )


def build_registry(
    config: RepairChatConfig,
    prompt_source: PromptSource | None = None,
) -> AgentRegistry:
    """Build the registry from config.

    Agents that cannot be constructed (e.g. missing API key) are logged and
    left out, so requests for them fail as unknown agents.
    """
    registry = AgentRegistry()
    for definition in config.agents:
        try:
            agent = build_agent(definition, prompt_source, config.prompts.label)
        except LLMProviderError as e:
            logger.warning("Agent %s not registered: %s", definition.id, e)
            continue
        registry.register(definition.id, agent, definition.aliases)
        logger.info(
            "Registered agent %s (provider=%s%s)",
            definition.id, definition.provider,
            f", aliases={','.join(definition.aliases)}" if definition.aliases else "",
        )
    return registry
