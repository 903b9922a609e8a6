"""PromptManager: resolves agent instructions by name.

Resolution order is Langfuse, then a local fallback (inline ``prompts.local``
entries or ``<prompts.local_dir>/<name>.txt``), then the empty string.
Results are cached per name for ``prompts.cache_ttl_s`` seconds.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from .integrations.langfuse import prompt_text_from_payload
from .types import PromptConfig

logger = logging.getLogger(__name__)

SOURCE_LANGFUSE = "langfuse"
SOURCE_LOCAL = "local"
SOURCE_NONE = "none"


@dataclass
class PromptInfo:
    name: str
    content: str
    source: str  # "langfuse", "local" or "none"
    version: int | None = None
    fetched_at: float = field(default_factory=time.time)


class PromptManager:
    """Langfuse-first prompt lookup with local fallback and a TTL cache.

    ``remote`` is anything with an async ``fetch_prompt(name, label)``
    returning the raw prompt payload or ``None`` (see LangfuseClient).
    """

    def __init__(self, config: PromptConfig | None = None, remote=None) -> None:
        self.config = config or PromptConfig()
        self.remote = remote
        self._cache: dict[str, PromptInfo] = {}

    # -- local fallbacks --

    def local_names(self) -> list[str]:
        names = set(self.config.local)
        if self.config.local_dir:
            directory = Path(self.config.local_dir)
            if directory.is_dir():
                names.update(p.stem for p in directory.glob("*.txt"))
        return sorted(names)

    def get_local_prompt(self, name: str) -> PromptInfo:
        text = self.config.local.get(name)
        if text is None and self.config.local_dir:
            path = Path(self.config.local_dir) / f"{name}.txt"
            if path.is_file():
                text = path.read_text(encoding="utf-8")
        if text:
            return PromptInfo(name=name, content=text, source=SOURCE_LOCAL)
        return PromptInfo(name=name, content="", source=SOURCE_NONE)

    # -- lookup --

    async def _get_remote_prompt(self, name: str, label: str) -> PromptInfo | None:
        if self.remote is None:
            return None
        data = await self.remote.fetch_prompt(name, label)
        if not data:
            return None
        text = prompt_text_from_payload(data)
        if not text.strip():
            return None
        version = data.get("version")
        return PromptInfo(
            name=name,
            content=text,
            source=SOURCE_LANGFUSE,
            version=version if isinstance(version, int) else None,
        )

    async def get_prompt(
        self,
        name: str,
        label: str | None = None,
        *,
        force_refresh: bool = False,
        local_only: bool = False,
    ) -> PromptInfo:
        label = label or self.config.label
        cached = self._cache.get(name)
        if (
            cached is not None
            and not force_refresh
            and time.time() - cached.fetched_at < self.config.cache_ttl_s
        ):
            return cached

        info = None if local_only else await self._get_remote_prompt(name, label)
        if info is not None:
            logger.info("Loaded prompt %s@%s from Langfuse (v%s)", name, label, info.version)
        else:
            info = self.get_local_prompt(name)
            if info.source == SOURCE_LOCAL:
                logger.info("Using local fallback for prompt %s", name)
            else:
                logger.warning("No prompt available for %s", name)

        self._cache[name] = info
        return info

    async def get_prompt_text(self, name: str, label: str = "production") -> str:
        return (await self.get_prompt(name, label)).content

    async def prompt_exists(self, name: str) -> bool:
        return (await self.get_prompt(name)).source != SOURCE_NONE

    # -- cache management --

    def stats(self) -> dict:
        by_source = {SOURCE_LANGFUSE: 0, SOURCE_LOCAL: 0, SOURCE_NONE: 0}
        for info in self._cache.values():
            by_source[info.source] = by_source.get(info.source, 0) + 1
        return {
            "total_prompts": len(self.local_names()),
            "cached_prompts": len(self._cache),
            "langfuse_prompts": by_source[SOURCE_LANGFUSE],
            "local_prompts": by_source[SOURCE_LOCAL],
            "missing_prompts": by_source[SOURCE_NONE],
        }

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Prompt cache cleared")

    async def refresh_all(self, names: list[str] | None = None) -> dict[str, str]:
        """Clear the cache and reload *names* (default: every known name).

        Returns name -> source.
        """
        self.clear_cache()
        targets = names if names is not None else self.local_names()
        result: dict[str, str] = {}
        for name in targets:
            result[name] = (await self.get_prompt(name, force_refresh=True)).source
        return result
