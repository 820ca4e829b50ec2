"""Agent Reply Relay: inbound ticket replies back into the live conversation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from ..channels.base import InboundAgentReply
from ..conversations.repository import ConversationStore
from ..conversations.schemas import NewMessage
from .broker import ReplyBroker

logger = logging.getLogger(__name__)

AGENT_MESSAGE_EVENT = "agent_message"


@dataclass(frozen=True)
class RelayOutcome:
    status: str  # delivered | unmapped | skipped
    session_id: str | None = None
    message_id: int | None = None
    reason: str | None = None


class AgentReplyRelay:
    """Stores agent replies as ``agent`` messages and pushes them to listeners.

    Redelivery of the same callback appends the message again; duplicates
    are tolerated rather than detected.
    """

    def __init__(self, store: ConversationStore, broker: ReplyBroker) -> None:
        self._store = store
        self._broker = broker

    def deliver(self, reply: InboundAgentReply) -> RelayOutcome:
        if not reply.ticket_id:
            logger.warning("Agent reply without a recognisable ticket id")
            return RelayOutcome("unmapped", reason="missing ticket id")
        mapping = self._store.get_ticket_by_external_id(reply.ticket_id)
        if mapping is None:
            logger.info("Agent reply for unmapped ticket %s ignored", reply.ticket_id)
            return RelayOutcome("unmapped", reason=f"unknown ticket {reply.ticket_id}")
        session_id = mapping.session_id
        if not reply.body:
            logger.info("Agent reply for ticket %s has no content", reply.ticket_id)
            return RelayOutcome("skipped", session_id=session_id, reason="empty content")

        message_id = self._store.append_message(
            session_id, NewMessage(role="agent", content=reply.body)
        )
        self._broker.publish(session_id, self.event(session_id, message_id, reply.body))
        logger.info(
            "Delivered agent reply %s from ticket %s to session %s",
            message_id,
            reply.ticket_id,
            session_id,
        )
        return RelayOutcome("delivered", session_id=session_id, message_id=message_id)

    @staticmethod
    def event(session_id: str, message_id: int, content: str) -> Dict[str, Any]:
        return {
            "type": AGENT_MESSAGE_EVENT,
            "message": {
                "id": message_id,
                "session_id": session_id,
                "role": "agent",
                "content": content,
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
        }


__all__ = ["AGENT_MESSAGE_EVENT", "AgentReplyRelay", "RelayOutcome"]
