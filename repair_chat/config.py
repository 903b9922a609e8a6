"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any

import yaml

from .types import (
    AgentDef,
    ConfigError,
    CorsConfig,
    LangfuseConfig,
    PromptConfig,
    RepairChatConfig,
    ServerConfig,
    StreamConfig,
)

CONFIG_FILENAMES = [
    "repair-chat.yaml",
    "repair-chat.yml",
    "repair-chat.json",
]

KNOWN_PROVIDERS = ("anthropic", "static")

DEFAULT_AGENTS = [
    AgentDef(
        id="repair-workflow-orchestrator",
        prompt="orchestrator",
        aliases=["direct-agent"],
        description="修理受付オーケストレーター",
    ),
    AgentDef(
        id="routing-agent-customer-identification",
        prompt="customer-identification",
        aliases=["customerIdentification", "customer-identification"],
        description="顧客識別エージェント",
    ),
]


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _parse_agent(raw: dict[str, Any]) -> AgentDef:
    aliases = raw.get("aliases", [])
    if isinstance(aliases, str):
        aliases = [aliases]
    return AgentDef(
        id=str(raw.get("id", "")),
        provider=raw.get("provider", "anthropic"),
        prompt=raw.get("prompt", ""),
        model=raw.get("model", "claude-3-5-sonnet-20240620"),
        max_tokens=raw.get("max_tokens", 4096),
        temperature=raw.get("temperature", 0.3),
        api_key_env=raw.get("api_key_env", "ANTHROPIC_API_KEY"),
        base_url=raw.get("base_url", "https://api.anthropic.com"),
        text=raw.get("text", ""),
        aliases=list(aliases),
        description=raw.get("description", ""),
    )


def _split_origins(value: str) -> list[str]:
    return [o.strip() for o in value.split(",") if o.strip()]


def _parse_port(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid port {value!r}") from e


def _build_config(raw: dict[str, Any]) -> RepairChatConfig:
    """Build a RepairChatConfig from a raw dict, then apply env overrides."""
    server_raw = raw.get("server", {}) or {}
    default_server = ServerConfig()
    server = ServerConfig(
        host=server_raw.get("host", default_server.host),
        port=_parse_port(os.environ.get("PORT", server_raw.get("port", default_server.port))),
        service_name=server_raw.get("service_name", default_server.service_name),
        workflow_routes=dict(
            server_raw.get("workflow_routes", default_server.workflow_routes)
        ),
    )

    cors_raw = raw.get("cors", {}) or {}
    origins = cors_raw.get("allowed_origins", ["*"])
    if isinstance(origins, str):
        origins = _split_origins(origins)
    if os.environ.get("CORS_ORIGIN"):
        origins = _split_origins(os.environ["CORS_ORIGIN"])
    cors = CorsConfig(allowed_origins=list(origins))
    if "expose_headers" in cors_raw:
        cors.expose_headers = list(cors_raw["expose_headers"])

    stream_raw = raw.get("stream", {}) or {}
    stream = StreamConfig(
        chunk_size=stream_raw.get("chunk_size", 1),
        inject_contact_hint=stream_raw.get("inject_contact_hint", True),
        session_header=stream_raw.get("session_header", "X-Session-ID"),
        user_header=stream_raw.get("user_header", "X-User-ID"),
    )

    lf_raw = raw.get("langfuse", {}) or {}
    langfuse = LangfuseConfig(
        host=os.environ.get("LANGFUSE_HOST", lf_raw.get("host", "")),
        public_key=os.environ.get("LANGFUSE_PUBLIC_KEY", lf_raw.get("public_key", "")),
        secret_key=os.environ.get("LANGFUSE_SECRET_KEY", lf_raw.get("secret_key", "")),
        timeout=lf_raw.get("timeout", 10.0),
    )

    prompts_raw = raw.get("prompts", {}) or {}
    prompts = PromptConfig(
        label=prompts_raw.get("label", "production"),
        cache_ttl_s=prompts_raw.get("cache_ttl_s", 300.0),
        local_dir=prompts_raw.get("local_dir", ""),
        local=dict(prompts_raw.get("local", {}) or {}),
    )

    if "agents" in raw:
        agents = [
            _parse_agent(a) for a in (raw.get("agents") or [])
            if isinstance(a, dict)
        ]
    else:
        agents = copy.deepcopy(DEFAULT_AGENTS)

    return RepairChatConfig(
        version=str(raw.get("version", "1.0")),
        server=server,
        cors=cors,
        stream=stream,
        langfuse=langfuse,
        prompts=prompts,
        agents=agents,
    )


def validate_config(config: RepairChatConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    ids: set[str] = set()
    for agent in config.agents:
        if not agent.id:
            errors.append("Agent entry without an id")
            continue
        if agent.id in ids:
            errors.append(f"Duplicate agent id '{agent.id}'")
        ids.add(agent.id)
        if agent.provider not in KNOWN_PROVIDERS:
            errors.append(
                f"Agent '{agent.id}' has unknown provider '{agent.provider}' "
                f"(expected one of: {', '.join(KNOWN_PROVIDERS)})"
            )
        if agent.provider == "static" and not agent.text:
            errors.append(f"Static agent '{agent.id}' needs a 'text' reply")

    seen_aliases: set[str] = set()
    for agent in config.agents:
        for alias in agent.aliases:
            if alias in ids:
                errors.append(f"Alias '{alias}' collides with an agent id")
            if alias in seen_aliases:
                errors.append(f"Alias '{alias}' is defined more than once")
            seen_aliases.add(alias)

    known = ids | seen_aliases
    for workflow, target in config.server.workflow_routes.items():
        if target not in known:
            errors.append(
                f"Workflow route '{workflow}' points at unknown agent '{target}'"
            )

    if config.stream.chunk_size < 1:
        errors.append("stream.chunk_size must be >= 1")

    if not (0 < config.server.port < 65536):
        errors.append(f"server.port ({config.server.port}) must be in 1..65535")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> RepairChatConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse config file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    return _build_config(raw)
