"""AnthropicAgent: streams the Messages API via httpx (no SDK dependency)."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator

import httpx

from ..types import AgentDef, ChatMessage, LLMProviderError, PromptSource

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"


def split_system(messages: list[ChatMessage]) -> tuple[str, list[dict]]:
    """Separate system messages from the conversation.

    System content is joined with blank lines; the remaining messages keep
    their order.  Consecutive turns with the same role are merged since the
    API requires alternation.
    """
    system_parts: list[str] = []
    turns: list[dict] = []
    for msg in messages:
        if msg.role == "system":
            if msg.content:
                system_parts.append(msg.content)
            continue
        role = "assistant" if msg.role == "assistant" else "user"
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"] += "\n\n" + msg.content
        else:
            turns.append({"role": role, "content": msg.content})
    return "\n\n".join(system_parts), turns


class AnthropicStream:
    """AgentStream over an open SSE response.  Single consumer."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self.response: str | None = None
        self.usage: dict = {}
        self.text_stream = self._iter_text()

    async def _iter_text(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    continue
                kind = data.get("type")
                if kind == "content_block_delta":
                    delta = data.get("delta", {})
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield delta["text"]
                elif kind == "message_start":
                    self.usage.update(data.get("message", {}).get("usage", {}))
                elif kind == "message_delta":
                    self.usage.update(data.get("usage", {}))
                elif kind == "error":
                    err = data.get("error", {})
                    raise LLMProviderError(
                        f"Stream error: {err.get('type', '')}: {err.get('message', '')}",
                        provider="anthropic",
                    )
        finally:
            await self._response.aclose()


class AnthropicAgent:
    """Agent backed by the Anthropic Messages API."""

    def __init__(
        self,
        definition: AgentDef,
        *,
        api_key: str | None = None,
        prompt_source: PromptSource | None = None,
        prompt_label: str = "production",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = definition.id
        self.definition = definition
        self.api_key = api_key or os.environ.get(definition.api_key_env, "")
        self.prompt_source = prompt_source
        self.prompt_label = prompt_label
        if not self.api_key:
            raise LLMProviderError(
                f"No API key found. Set {definition.api_key_env} env var or pass api_key.",
                provider="anthropic",
            )
        self._client = httpx.AsyncClient(
            base_url=definition.base_url.rstrip("/"),
            timeout=httpx.Timeout(120.0, connect=10.0),
            transport=transport,
        )

    async def system_prompt(self) -> str:
        if not self.definition.prompt or self.prompt_source is None:
            return ""
        return await self.prompt_source.get_prompt_text(
            self.definition.prompt, self.prompt_label,
        )

    def _headers(self) -> dict:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    async def build_payload(self, messages: list[ChatMessage]) -> dict:
        context, turns = split_system(messages)
        system = "\n\n".join(p for p in (await self.system_prompt(), context) if p)
        payload = {
            "model": self.definition.model,
            "max_tokens": self.definition.max_tokens,
            "temperature": self.definition.temperature,
            "messages": turns,
            "stream": True,
        }
        if system:
            payload["system"] = system
        return payload

    async def stream(self, messages: list[ChatMessage]) -> AnthropicStream:
        payload = await self.build_payload(messages)
        req = self._client.build_request(
            "POST", "/v1/messages", headers=self._headers(), json=payload,
        )
        try:
            response = await self._client.send(req, stream=True)
        except httpx.HTTPError as e:
            raise LLMProviderError(f"HTTP error: {e}", provider="anthropic") from e

        if response.status_code >= 300:
            body = await response.aread()
            await response.aclose()
            raise LLMProviderError(
                f"HTTP {response.status_code}: {body[:500].decode('utf-8', errors='replace')}",
                provider="anthropic",
                status_code=response.status_code,
            )
        logger.debug("Agent %s stream opened (model=%s)", self.name, self.definition.model)
        return AnthropicStream(response)

    async def aclose(self) -> None:
        await self._client.aclose()
