"""LangfuseClient: prompt fetch and trace ingestion via httpx (no SDK dependency).

Without host/public/secret keys the client runs disabled: tracing calls
return fallback ids (``trace_<ms>_<base36>``) and do nothing, prompt fetches
return nothing.  No method raises into the caller; HTTP failures are logged.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx

from ..stream.wire import random_base36
from ..types import LangfuseConfig

logger = logging.getLogger(__name__)

INGESTION_PATH = "/api/public/ingestion"
PROMPTS_PATH = "/api/public/v2/prompts"
HEALTH_PATH = "/api/public/health"

FALLBACK_TRACE_PREFIX = "trace_"


def fallback_trace_id() -> str:
    return f"{FALLBACK_TRACE_PREFIX}{int(time.time() * 1000)}_{random_base36(11)}"


def is_fallback_trace_id(trace_id: str | None) -> bool:
    return not trace_id or trace_id.startswith(FALLBACK_TRACE_PREFIX)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def prompt_text_from_payload(data: dict) -> str:
    """Extract text from a prompts API payload (text or chat prompt)."""
    prompt = data.get("prompt")
    if isinstance(prompt, str):
        return prompt
    if isinstance(prompt, list):
        return "\n\n".join(
            m.get("content", "") for m in prompt
            if isinstance(m, dict) and isinstance(m.get("content"), str)
        )
    return ""


class LangfuseClient:
    """Tracer and prompt source backed by the Langfuse public API."""

    def __init__(
        self,
        config: LangfuseConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._client: httpx.AsyncClient | None = None
        if config.enabled:
            self._client = httpx.AsyncClient(
                base_url=config.host.rstrip("/"),
                auth=(config.public_key, config.secret_key),
                timeout=config.timeout,
                transport=transport,
            )
            logger.info("Langfuse enabled (host=%s)", config.host)
        else:
            logger.warning(
                "Langfuse keys missing; tracing is a no-op and prompts fall back to local"
            )

    @property
    def enabled(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def _ingest(self, events: list[dict]) -> bool:
        if self._client is None:
            return False
        batch = [
            {"id": str(uuid.uuid4()), "timestamp": _now_iso(), **event}
            for event in events
        ]
        try:
            resp = await self._client.post(INGESTION_PATH, json={"batch": batch})
        except httpx.HTTPError as e:
            logger.warning("Langfuse ingestion failed: %s", e)
            return False
        # 207 is multi-status; per-event errors are reported in the body
        if resp.status_code not in (200, 201, 207):
            logger.warning(
                "Langfuse ingestion HTTP %d: %s", resp.status_code, resp.text[:200],
            )
            return False
        return True

    async def start_trace(self, name: str, metadata: dict | None = None) -> str:
        if self._client is None:
            return fallback_trace_id()
        metadata = dict(metadata or {})
        trace_id = str(uuid.uuid4())
        body: dict[str, Any] = {
            "id": trace_id,
            "name": name,
            "timestamp": _now_iso(),
            "metadata": metadata,
        }
        if metadata.get("sessionId"):
            body["sessionId"] = metadata["sessionId"]
        if metadata.get("userId"):
            body["userId"] = metadata["userId"]
        if not await self._ingest([{"type": "trace-create", "body": body}]):
            return fallback_trace_id()
        return trace_id

    async def end_trace(self, trace_id: str | None, metadata: dict | None = None) -> None:
        if self._client is None or is_fallback_trace_id(trace_id):
            return
        metadata = dict(metadata or {})
        body: dict[str, Any] = {"id": trace_id, "metadata": metadata}
        if "output" in metadata:
            body["output"] = metadata.pop("output")
        # trace-create with an existing id upserts the trace
        await self._ingest([{"type": "trace-create", "body": body}])

    async def log_tool_execution(
        self,
        trace_id: str | None,
        name: str,
        input: Any,
        output: Any,
        metadata: dict | None = None,
    ) -> None:
        if self._client is None or is_fallback_trace_id(trace_id):
            return
        now = _now_iso()
        await self._ingest([{
            "type": "span-create",
            "body": {
                "id": str(uuid.uuid4()),
                "traceId": trace_id,
                "name": name,
                "startTime": now,
                "endTime": now,
                "input": input,
                "output": output,
                "metadata": metadata or {},
            },
        }])

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    async def fetch_prompt(self, name: str, label: str = "production") -> dict | None:
        """Raw prompt payload, or ``None`` when disabled, missing or failed."""
        if self._client is None:
            return None
        try:
            resp = await self._client.get(
                f"{PROMPTS_PATH}/{name}", params={"label": label},
            )
        except httpx.HTTPError as e:
            logger.warning("Langfuse prompt fetch %s@%s failed: %s", name, label, e)
            return None
        if resp.status_code == 404:
            logger.debug("Langfuse prompt %s@%s not found", name, label)
            return None
        if resp.status_code != 200:
            logger.warning(
                "Langfuse prompt fetch %s@%s HTTP %d", name, label, resp.status_code,
            )
            return None
        try:
            data = resp.json()
        except ValueError:
            logger.warning("Langfuse prompt %s@%s returned invalid JSON", name, label)
            return None
        return data if isinstance(data, dict) else None

    async def get_prompt_text(self, name: str, label: str = "production") -> str:
        data = await self.fetch_prompt(name, label)
        return prompt_text_from_payload(data) if data else ""

    # ------------------------------------------------------------------
    # Health / lifecycle
    # ------------------------------------------------------------------

    async def test_connection(self) -> bool:
        if self._client is None:
            return False
        try:
            resp = await self._client.get(HEALTH_PATH)
        except httpx.HTTPError as e:
            logger.warning("Langfuse health check failed: %s", e)
            return False
        return resp.status_code == 200

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
