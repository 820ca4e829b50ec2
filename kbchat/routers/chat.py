"""Chat widget API: turns, streaming turns, sessions and live agent replies."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Dict

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from ..assistant.pipeline import TurnChunk, TurnDone, TurnEvent, TurnFailed
from ..assistant.strategy import Strategy
from ..conversations import schemas
from ..core.errors import AssistantError, NotFoundError
from ..dependencies import ServiceContainer, get_container
from ..escalation.relay import AGENT_MESSAGE_EVENT
from ..rate_limit import chat_rate_limit, limiter
from ..sse_utils import KEEP_ALIVE, coalesce_chunks, sse_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

KEEP_ALIVE_SECONDS = 15.0
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _done_payload(event: TurnDone) -> Dict[str, Any]:
    return {
        "session_id": event.session_id,
        "citations": [c.model_dump() for c in event.citations],
        "confidence": event.confidence,
        "strategy": event.strategy.value,
        "requires_human": event.strategy is Strategy.HANDOFF,
        "clarification_needed": event.strategy is Strategy.CLARIFY,
        "reason": event.reason,
        "message_id": event.message_id,
    }


@router.post("", response_model=schemas.ChatResponse)
@limiter.limit(chat_rate_limit)
def submit_turn(
    request: Request,
    payload: schemas.ChatRequest,
    container: ServiceContainer = Depends(get_container),
) -> schemas.ChatResponse:
    """Answer one message and return the persisted reply."""
    result = container.orchestrator.submit_turn(
        payload.message, session_id=payload.session_id, user_id=payload.user_id
    )
    return schemas.ChatResponse(
        session_id=result.session_id,
        response=result.response,
        citations=result.citations,
        confidence=result.confidence,
        requires_human=result.requires_human,
        clarification_needed=result.clarification_needed,
        strategy=result.strategy.value,
        reason=result.reason,
    )


@router.post("/stream")
@limiter.limit(chat_rate_limit)
async def stream_turn(
    request: Request,
    payload: schemas.ChatRequest,
    container: ServiceContainer = Depends(get_container),
) -> StreamingResponse:
    """Streaming variant of :func:`submit_turn` (SSE).

    Validation, session and retrieval errors are raised before the stream
    opens and surface as regular JSON errors. Afterwards the stream emits
    ``chunk`` events followed by exactly one ``done`` or ``error`` event.
    """
    orchestrator = container.orchestrator
    turn = await run_in_threadpool(
        orchestrator.prepare,
        payload.message,
        session_id=payload.session_id,
        user_id=payload.user_id,
    )
    events = orchestrator.stream(turn)
    terminal: list[TurnEvent] = []

    async def pieces() -> AsyncIterator[str]:
        while True:
            item = await run_in_threadpool(next, events, None)
            if item is None:
                return
            if isinstance(item, TurnChunk):
                yield item.content
            else:
                terminal.append(item)

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for text in coalesce_chunks(pieces()):
                if await request.is_disconnected():
                    logger.info("Client left session %s mid-stream", turn.session_id)
                    return
                yield sse_event("chunk", {"content": text})
            for item in terminal:
                if isinstance(item, TurnDone):
                    yield sse_event("done", _done_payload(item))
                elif isinstance(item, TurnFailed):
                    yield sse_event(
                        "error",
                        {
                            "session_id": item.session_id,
                            "message": item.message,
                            "retryable": item.retryable,
                        },
                    )
        except AssistantError as exc:
            logger.warning("Stream for session %s failed: %s", turn.session_id, exc)
            yield sse_event(
                "error",
                {
                    "session_id": turn.session_id,
                    "message": exc.user_message,
                    "retryable": exc.retryable,
                },
            )
        finally:
            await run_in_threadpool(events.close)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream; charset=utf-8",
        headers=SSE_HEADERS,
    )


@router.post("/sessions", response_model=schemas.SessionCreateResponse)
@limiter.limit(chat_rate_limit)
def create_session(
    request: Request,
    payload: schemas.SessionCreateRequest,
    container: ServiceContainer = Depends(get_container),
) -> schemas.SessionCreateResponse:
    """Open a session that starts directly with a human request.

    Used by the contact form: the optional first message is stored as a user
    message flagged for human attention.
    """
    store = container.store
    session_id = store.create_session(
        user_id=payload.user_id, user_name=payload.name, user_email=payload.email
    )
    text = (payload.message or "").strip()
    if text:
        store.append_message(
            session_id,
            schemas.NewMessage(role="user", content=text, requires_human=True),
        )
    return schemas.SessionCreateResponse(session_id=session_id)


@router.get("/sessions/{session_id}/messages", response_model=schemas.MessageList)
def list_messages(
    session_id: str,
    limit: int | None = Query(None, ge=1, le=500),
    container: ServiceContainer = Depends(get_container),
) -> schemas.MessageList:
    """Conversation history, oldest first (polling fallback for the widget)."""
    if container.store.get_session(session_id) is None:
        raise NotFoundError(f"Unknown session {session_id}")
    return schemas.MessageList(
        session_id=session_id, items=container.store.history(session_id, limit=limit)
    )


@router.get("/sessions/{session_id}/events")
async def session_events(
    request: Request,
    session_id: str,
    container: ServiceContainer = Depends(get_container),
) -> StreamingResponse:
    """Push agent replies for ``session_id`` as they arrive."""
    session = await run_in_threadpool(container.store.get_session, session_id)
    if session is None:
        raise NotFoundError(f"Unknown session {session_id}")
    listener = container.broker.listen(session_id)

    async def event_stream() -> AsyncIterator[str]:
        pending: asyncio.Future | None = None
        try:
            yield KEEP_ALIVE
            while True:
                if pending is None:
                    pending = asyncio.ensure_future(listener.__anext__())
                done, _ = await asyncio.wait({pending}, timeout=KEEP_ALIVE_SECONDS)
                if await request.is_disconnected():
                    return
                if not done:
                    yield KEEP_ALIVE
                    continue
                event = pending.result()
                pending = None
                yield sse_event(event.get("type") or AGENT_MESSAGE_EVENT, event)
        except StopAsyncIteration:
            return
        finally:
            if pending is not None and not pending.done():
                pending.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await pending
            await listener.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream; charset=utf-8",
        headers=SSE_HEADERS,
    )


__all__ = ["router"]
