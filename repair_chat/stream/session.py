"""Per-request session resolution, lifecycle state, and trace bracketing."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any

from ..types import RequestState, StreamSession, Tracer
from .wire import random_base36

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    """``session_<epoch-ms>_<base36>``."""
    return f"session_{int(time.time() * 1000)}_{random_base36(9)}"


def _clean(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resolve_session(
    headers: Mapping[str, str],
    body: Mapping[str, Any] | None,
    *,
    session_header: str = "X-Session-ID",
    user_header: str = "X-User-ID",
) -> StreamSession:
    """Header, then body field, then a freshly generated id.  Never fails."""
    body = body if isinstance(body, Mapping) else {}
    session_id = (
        _clean(headers.get(session_header))
        or _clean(body.get("sessionId"))
        or new_session_id()
    )
    user_id = _clean(headers.get(user_header)) or _clean(body.get("userId"))
    return StreamSession(session_id=session_id, user_id=user_id)


def session_headers(
    session: StreamSession,
    *,
    session_header: str = "X-Session-ID",
    user_header: str = "X-User-ID",
) -> dict[str, str]:
    headers = {session_header: session.session_id}
    if session.user_id:
        headers[user_header] = session.user_id
    return headers


# ---------------------------------------------------------------------------
# RequestLifecycle: Received -> Normalizing -> Invoking -> Streaming
#                   -> Finalizing -> Closed, with Errored -> Finalizing
# ---------------------------------------------------------------------------

_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.RECEIVED: frozenset({RequestState.NORMALIZING}),
    RequestState.NORMALIZING: frozenset({RequestState.INVOKING}),
    RequestState.INVOKING: frozenset({RequestState.STREAMING, RequestState.ERRORED}),
    RequestState.STREAMING: frozenset({RequestState.FINALIZING, RequestState.ERRORED}),
    RequestState.ERRORED: frozenset({RequestState.FINALIZING}),
    RequestState.FINALIZING: frozenset({RequestState.CLOSED}),
    RequestState.CLOSED: frozenset(),
}


class RequestLifecycle:
    """Tracks where a single request is in its lifecycle."""

    def __init__(self, session: StreamSession) -> None:
        self.session = session
        self.state = RequestState.RECEIVED
        self.history: list[RequestState] = [RequestState.RECEIVED]
        self.error: BaseException | None = None

    def advance(self, new_state: RequestState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(
                f"Invalid request transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(
            "session=%s %s -> %s",
            self.session.session_id, self.state.value, new_state.value,
        )
        self.state = new_state
        self.history.append(new_state)

    def fail(self, error: BaseException) -> None:
        """Record *error* and move to ERRORED (no-op once finalizing)."""
        self.error = error
        if RequestState.ERRORED in _TRANSITIONS[self.state]:
            self.advance(RequestState.ERRORED)

    @property
    def errored(self) -> bool:
        return RequestState.ERRORED in self.history


# ---------------------------------------------------------------------------
# TraceCorrelator
# ---------------------------------------------------------------------------

class TraceCorrelator:
    """Brackets one request with start/end calls to the tracer.

    Every tracer call is best-effort: failures are logged and swallowed so
    that tracing can never fail the request.
    """

    def __init__(self, tracer: Tracer | None, session: StreamSession) -> None:
        self.tracer = tracer
        self.session = session
        self.trace_id: str | None = None
        self._closed = False

    async def open(self, endpoint: str, message_count: int, **extra: Any) -> str | None:
        if self.tracer is None:
            return None
        metadata = {
            "endpoint": endpoint,
            "messageCount": message_count,
            "sessionId": self.session.session_id,
            "userId": self.session.user_id or "",
            **extra,
        }
        try:
            self.trace_id = await self.tracer.start_trace(endpoint, metadata)
        except Exception as e:
            logger.warning("Trace start failed for %s: %s", endpoint, e)
            self.trace_id = None
        return self.trace_id

    async def close(
        self,
        *,
        success: bool,
        response_length: int = 0,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        error: BaseException | None = None,
        **extra: Any,
    ) -> None:
        if self.tracer is None or self._closed:
            return
        self._closed = True
        elapsed_ms = round((time.time() - self.session.started_at) * 1000, 1)
        if error is not None:
            try:
                await self.tracer.log_tool_execution(
                    self.trace_id,
                    "agent.stream",
                    {"sessionId": self.session.session_id},
                    {"ok": False},
                    {"success": False, "error": repr(error)},
                )
            except Exception as e:
                logger.warning("Error trace logging failed: %s", e)
        metadata = {
            "success": success,
            "responseLength": response_length,
            "promptTokens": prompt_tokens,
            "completionTokens": completion_tokens,
            "durationMs": elapsed_ms,
            "sessionId": self.session.session_id,
            **extra,
        }
        try:
            await self.tracer.end_trace(self.trace_id, metadata)
        except Exception as e:
            logger.warning("Trace end failed for %s: %s", self.trace_id, e)
