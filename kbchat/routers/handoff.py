"""Human handoff routes: open a support ticket and relay user messages to it."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..conversations import schemas
from ..dependencies import ServiceContainer, get_container
from ..rate_limit import chat_rate_limit, limiter

router = APIRouter(prefix="/api/chat/handoff", tags=["handoff"])


@router.post("", response_model=schemas.HandoffResponse)
@limiter.limit(chat_rate_limit)
def begin_handoff(
    request: Request,
    payload: schemas.HandoffRequest,
    container: ServiceContainer = Depends(get_container),
) -> schemas.HandoffResponse:
    """Create (or return the existing) ticket for a session."""
    result = container.escalation.escalate(
        payload.session_id,
        payload.reason,
        schemas.ContactInfo(name=payload.name, email=payload.email),
    )
    return schemas.HandoffResponse(
        ticket_id=result.ticket_id, already_existed=result.already_existed
    )


@router.post("/message", response_model=schemas.RelayResponse)
@limiter.limit(chat_rate_limit)
def relay_message(
    request: Request,
    payload: schemas.RelayRequest,
    container: ServiceContainer = Depends(get_container),
) -> schemas.RelayResponse:
    """Store a user message and forward it to the session's ticket.

    Once the message is stored the call answers 200; forwarding problems are
    reported in the body (``ok=false``, ``needs_reauth``) because the message
    itself is not lost.
    """
    result = container.escalation.relay_message(
        payload.session_id, payload.message, payload.ticket_id
    )
    return schemas.RelayResponse(
        ok=result.ok,
        ticket_id=result.ticket_id,
        needs_reauth=result.needs_reauth,
        error=result.error,
    )


__all__ = ["router"]
