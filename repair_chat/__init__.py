"""repair-chat: streaming chat endpoints for repair-intake agents."""

from .config import load_config, validate_config
from .types import (
    AgentNotFoundError,
    ChatMessage,
    ConfigError,
    ContactHint,
    LLMProviderError,
    RepairChatConfig,
    RepairChatError,
    StreamSession,
)

__version__ = "0.1.0"

__all__ = [
    "load_config",
    "validate_config",
    "AgentNotFoundError",
    "ChatMessage",
    "ConfigError",
    "ContactHint",
    "LLMProviderError",
    "RepairChatConfig",
    "RepairChatError",
    "StreamSession",
]
