from .anthropic import AnthropicAgent
from .base import AgentRegistry, StaticAgent, TextStream, build_agent, build_registry

__all__ = [
    "AgentRegistry",
    "AnthropicAgent",
    "StaticAgent",
    "TextStream",
    "build_agent",
    "build_registry",
]
