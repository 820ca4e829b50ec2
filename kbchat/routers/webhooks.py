"""Inbound ticketing webhooks (agent replies)."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from starlette.concurrency import run_in_threadpool

from ..channels import get_adapter
from ..conversations import schemas
from ..core.errors import AssistantError
from ..dependencies import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _read_payload(request: Request) -> Any:
    """Decode a JSON or form-encoded callback; undecodable bodies become ``{}``."""

    body_bytes = await request.body()
    if not body_bytes:
        return {}
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/x-www-form-urlencoded"):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        return json.loads(body_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Webhook body is not valid JSON: %s", exc)
        return {}


def _check_provider(provider: str, container: ServiceContainer) -> None:
    try:
        get_adapter(provider)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if provider.lower() != container.webhook_adapter.provider_name:
        raise HTTPException(status_code=404, detail=f"Provider '{provider}' is not enabled")


@router.api_route("/{provider}", methods=["GET", "HEAD"])
def validate_callback(
    provider: str, container: ServiceContainer = Depends(get_container)
) -> Response:
    """Answer the URL validation probe ticketing systems send before saving a webhook."""
    _check_provider(provider, container)
    return Response(
        content='{"ok": true}', media_type="application/json", status_code=status.HTTP_200_OK
    )


@router.post("/{provider}", response_model=schemas.WebhookAck)
async def receive_agent_reply(
    provider: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> schemas.WebhookAck:
    """Deliver an agent reply into its conversation.

    Only authentication failures are answered with an error status; every
    other outcome is acknowledged so the ticketing system does not retry
    callbacks that can never succeed.
    """
    _check_provider(provider, container)
    adapter = container.webhook_adapter
    if not adapter.verify_request(request.headers, request.query_params):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret"
        )

    payload = await _read_payload(request)
    reply = adapter.parse_incoming(payload)
    try:
        outcome = await run_in_threadpool(container.relay.deliver, reply)
    except AssistantError as exc:
        logger.error("Agent reply for ticket %s not stored: %s", reply.ticket_id, exc)
        return schemas.WebhookAck(ok=False, status="failed", reason=exc.user_message)
    return schemas.WebhookAck(
        status=outcome.status,
        session_id=outcome.session_id,
        message_id=outcome.message_id,
        reason=outcome.reason,
    )


__all__ = ["router"]
