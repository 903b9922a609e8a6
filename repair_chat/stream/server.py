"""HTTP streaming endpoints for the repair-intake chat agents.

Accepts a chat request, invokes an agent, post-processes its output and
re-emits it in the line protocol from :mod:`repair_chat.stream.wire`.

Usage:
    repair-chat -c repair-chat.yaml serve --port 8080
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from ..agents.base import AgentRegistry, build_registry
from ..config import load_config
from ..integrations.langfuse import LangfuseClient
from ..prompts import PromptManager
from ..types import (
    AgentNotFoundError,
    RepairChatConfig,
    RequestState,
    Tracer,
    Usage,
)
from .contact import contact_hint_message, extract_contact_hint
from .normalizer import last_user_text, normalize_messages
from .postprocess import FALLBACK_TEXT, ProcessedResponse, collect_response
from .session import (
    RequestLifecycle,
    TraceCorrelator,
    resolve_session,
    session_headers,
)
from .wire import (
    encode_done,
    encode_finish,
    encode_message_id,
    encode_text,
    new_message_id,
    stream_headers,
)

logger = logging.getLogger(__name__)

PREFLIGHT_METHODS = "POST, OPTIONS"
PREFLIGHT_MAX_AGE = "86400"


async def read_json_body(request: Request) -> dict[str, Any]:
    """Request body as a dict.  Unparseable or non-object bodies become ``{}``."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug("Unparseable request body treated as empty: %s", e)
        return {}
    return body if isinstance(body, dict) else {}


def cors_headers(origin: str | None, config: RepairChatConfig) -> dict[str, str]:
    """Only the CORS part of :func:`stream_headers` (for JSON and preflight)."""
    headers = stream_headers(
        origin, config.cors.allowed_origins, config.cors.expose_headers,
    )
    return {
        k: v for k, v in headers.items()
        if k.startswith("Access-Control-") or k == "Vary"
    }


def create_app(
    config_path: str | None = None,
    *,
    config: RepairChatConfig | None = None,
    registry: AgentRegistry | None = None,
    tracer: Tracer | None = None,
    prompt_manager: PromptManager | None = None,
) -> FastAPI:
    """Create the FastAPI streaming application.

    Args:
        config_path: Path to a repair-chat config file (auto-discovered if None).
        config: Pre-built config; takes precedence over *config_path*.
        registry: Agent registry; built from config when omitted.
        tracer: Tracing collaborator; a LangfuseClient from config when omitted.
        prompt_manager: Prompt source for agents built from config.
    """
    if config is None:
        config = load_config(config_path)

    owned_langfuse: LangfuseClient | None = None
    if tracer is None:
        owned_langfuse = LangfuseClient(config.langfuse)
        tracer = owned_langfuse
    if prompt_manager is None:
        prompt_manager = PromptManager(
            config.prompts,
            remote=tracer if isinstance(tracer, LangfuseClient) else None,
        )
    if registry is None:
        registry = build_registry(config, prompt_manager)

    logger.info(
        "Streaming server ready: %d agents, tracing=%s",
        len(registry), "on" if tracer.enabled else "off",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        yield
        await registry.aclose()
        if owned_langfuse is not None:
            await owned_langfuse.aclose()

    app = FastAPI(title=config.server.service_name, lifespan=lifespan)
    app.state.config = config
    app.state.registry = registry
    app.state.tracer = tracer
    app.state.prompt_manager = prompt_manager

    stream_cfg = config.stream

    async def stream_agent(request: Request, agent_id: str, endpoint: str) -> Response:
        body = await read_json_body(request)
        origin = request.headers.get("origin")
        session = resolve_session(
            request.headers, body,
            session_header=stream_cfg.session_header,
            user_header=stream_cfg.user_header,
        )

        if agent_id not in registry:
            err = AgentNotFoundError(agent_id)
            logger.error("%s (session=%s)", err, session.session_id)
            return JSONResponse(
                status_code=500,
                content={"error": str(err)},
                headers={
                    **cors_headers(origin, config),
                    **session_headers(
                        session,
                        session_header=stream_cfg.session_header,
                        user_header=stream_cfg.user_header,
                    ),
                },
            )

        lifecycle = RequestLifecycle(session)
        lifecycle.advance(RequestState.NORMALIZING)
        messages = normalize_messages(body.get("messages"))
        hint_message = None
        if stream_cfg.inject_contact_hint:
            hint = extract_contact_hint(last_user_text(messages))
            if hint is not None:
                hint_message = contact_hint_message(hint)

        correlator = TraceCorrelator(tracer, session)
        message_id = new_message_id()
        headers = {
            **stream_headers(
                origin, config.cors.allowed_origins, config.cors.expose_headers,
            ),
            **session_headers(
                session,
                session_header=stream_cfg.session_header,
                user_header=stream_cfg.user_header,
            ),
        }
        logger.debug(
            "session=%s agent=%s messages=%d hint=%s",
            session.session_id, agent_id, len(messages), hint_message is not None,
        )

        async def generate() -> AsyncGenerator[str]:
            lifecycle.advance(RequestState.INVOKING)
            error: BaseException | None = None
            processed: ProcessedResponse | None = None
            await correlator.open(
                endpoint, len(messages),
                agentId=registry.resolve(agent_id), messageId=message_id,
            )
            try:
                yield encode_message_id(message_id)

                try:
                    agent_stream = await registry.invoke(agent_id, messages, hint_message)
                except Exception as e:
                    # Headers are already committed; the client gets fallback text
                    logger.error("Agent %s invocation failed: %s", agent_id, e)
                    error = e
                    lifecycle.fail(e)
                    processed = ProcessedResponse(text=FALLBACK_TEXT, degraded=True)
                else:
                    lifecycle.advance(RequestState.STREAMING)
                    processed = await collect_response(agent_stream)
                    error = processed.error

                for chunk in encode_text(processed.text, stream_cfg.chunk_size):
                    yield chunk
                usage = Usage(completion_tokens=len(processed.text))
                yield encode_finish(usage)
                yield encode_done(usage)
            finally:
                if lifecycle.state in (RequestState.INVOKING, RequestState.STREAMING):
                    if processed is None or processed.degraded:
                        lifecycle.fail(error or RuntimeError("agent response degraded"))
                if lifecycle.state is not RequestState.FINALIZING:
                    lifecycle.advance(RequestState.FINALIZING)
                await correlator.close(
                    success=processed is not None and not processed.degraded,
                    response_length=len(processed.text) if processed else 0,
                    completion_tokens=len(processed.text) if processed else 0,
                    error=error,
                    hiddenData=processed.hidden_data if processed else {},
                )
                lifecycle.advance(RequestState.CLOSED)
                logger.info(
                    "session=%s agent=%s done in %.0fms (%d chars%s)",
                    session.session_id, agent_id,
                    (time.time() - session.started_at) * 1000,
                    len(processed.text) if processed else 0,
                    ", degraded" if lifecycle.errored else "",
                )

        return StreamingResponse(generate(), headers=headers)

    def method_not_allowed(origin: str | None, path: str) -> JSONResponse:
        return JSONResponse(
            status_code=405,
            content={
                "error": "Method Not Allowed",
                "message": f"Use POST with a JSON body {{\"messages\": [...]}} to {path}",
            },
            headers={"Allow": PREFLIGHT_METHODS, **cors_headers(origin, config)},
        )

    def preflight(origin: str | None) -> Response:
        headers = cors_headers(origin, config)
        headers.update({
            "Access-Control-Allow-Methods": PREFLIGHT_METHODS,
            "Access-Control-Allow-Headers": ", ".join([
                "Content-Type", stream_cfg.session_header, stream_cfg.user_header,
            ]),
            "Access-Control-Max-Age": PREFLIGHT_MAX_AGE,
        })
        return Response(status_code=204, headers=headers)

    # ------------------------------------------------------------------
    # Agent streams
    # ------------------------------------------------------------------

    @app.post("/api/agents/{agent_id}/stream")
    async def agent_stream(request: Request, agent_id: str):
        return await stream_agent(request, agent_id, request.url.path)

    @app.get("/api/agents/{agent_id}/stream")
    async def agent_stream_get(request: Request, agent_id: str):
        return method_not_allowed(request.headers.get("origin"), request.url.path)

    @app.options("/api/agents/{agent_id}/stream")
    async def agent_stream_options(request: Request, agent_id: str):
        return preflight(request.headers.get("origin"))

    # ------------------------------------------------------------------
    # Workflow streams (served by the agent mapped in server.workflow_routes)
    # ------------------------------------------------------------------

    @app.post("/api/workflows/{workflow_id}/stream")
    async def workflow_stream(request: Request, workflow_id: str):
        target = config.server.workflow_routes.get(workflow_id)
        if target is None:
            logger.error("Workflow '%s' has no route", workflow_id)
            return JSONResponse(
                status_code=500,
                content={"error": f"Workflow '{workflow_id}' not found"},
                headers=cors_headers(request.headers.get("origin"), config),
            )
        logger.debug("Workflow %s routed to agent %s", workflow_id, target)
        return await stream_agent(request, target, request.url.path)

    @app.get("/api/workflows/{workflow_id}/stream")
    async def workflow_stream_get(request: Request, workflow_id: str):
        return method_not_allowed(request.headers.get("origin"), request.url.path)

    @app.options("/api/workflows/{workflow_id}/stream")
    async def workflow_stream_options(request: Request, workflow_id: str):
        return preflight(request.headers.get("origin"))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "service": config.server.service_name,
            "time": datetime.now(timezone.utc).isoformat(),
            "agents": registry.ids(),
            "aliases": registry.aliases(),
            "langfuse": {"enabled": tracer.enabled},
        }

    @app.get("/health/langfuse")
    async def health_langfuse():
        try:
            connected = await tracer.test_connection()
        except Exception as e:
            logger.warning("Tracer connectivity probe failed: %s", e)
            connected = False
        return JSONResponse(
            status_code=200 if connected else 503,
            content={
                "ok": connected,
                "enabled": tracer.enabled,
                "time": datetime.now(timezone.utc).isoformat(),
            },
        )

    return app
