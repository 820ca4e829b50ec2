"""Escalation Manager: idempotent ticket creation and user-message relay."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from ..assistant.strategy import USER_REQUESTED_REASON, low_confidence_reason
from ..conversations.repository import ConversationStore
from ..conversations.schemas import ContactInfo, Message, NewMessage, TicketRecord
from ..core.errors import (
    AssistantError,
    AuthorizationMissingError,
    InputValidationError,
    NotFoundError,
)
from ..nlp import HandoffIntentMatcher
from .ticketing import TicketContact, TicketingProvider

logger = logging.getLogger(__name__)

ROLE_PREFIX = {"user": "User", "assistant": "Assistant", "agent": "Agent"}
TICKET_RULE = "----------------------------------------"


def render_transcript(messages: Sequence[Message]) -> str:
    """One ``Role: text`` line per message, oldest first."""

    return "\n".join(
        f"{ROLE_PREFIX.get(m.role, m.role.title())}: {m.content}" for m in messages
    )


def build_subject(reason: str, session_id: str) -> str:
    kind = "Low Confidence" if "low confidence" in reason.lower() else "User Request"
    return f"Chatbot Handoff - {kind} ({session_id[:8]})"


def build_ticket_body(
    *, reason: str, session_id: str, contact: TicketContact, transcript: str
) -> str:
    return "\n".join(
        [
            "Chatbot Human Handoff",
            TICKET_RULE,
            f"Handoff reason: {reason}",
            "",
            "User information:",
            f"- Name: {contact.name or 'Not provided'}",
            f"- Email: {contact.email or 'Not provided'}",
            f"- Session ID: {session_id}",
            "",
            "Chat history:",
            transcript or "(no prior messages)",
            "",
            TICKET_RULE,
            "Note: This ticket was automatically created by the chatbot handoff system.",
        ]
    )


def infer_handoff_reason(
    messages: Sequence[Message], matcher: HandoffIntentMatcher | None = None
) -> str:
    """Reason for a handoff the client did not explain.

    Uses the latest assistant turn flagged ``requires_human``: when the user
    message that triggered it asked for a person the request wins, otherwise
    the turn's confidence explains the handoff.
    """

    matcher = matcher or HandoffIntentMatcher()
    for position in range(len(messages) - 1, -1, -1):
        message = messages[position]
        if message.role != "assistant" or not message.requires_human:
            continue
        asked = next(
            (m for m in reversed(messages[:position]) if m.role == "user"), None
        )
        if asked is not None and matcher.matches(asked.content):
            return USER_REQUESTED_REASON
        return low_confidence_reason(message.confidence or 0.0)
    return USER_REQUESTED_REASON


@dataclass(frozen=True)
class EscalationResult:
    ticket: TicketRecord
    already_existed: bool

    @property
    def ticket_id(self) -> str:
        return self.ticket.external_ticket_id


@dataclass(frozen=True)
class RelayResult:
    ok: bool
    ticket_id: str | None = None
    message_id: int | None = None
    needs_reauth: bool = False
    error: str | None = None


class EscalationManager:
    """Creates at most one ticket per session and relays user messages to it."""

    def __init__(
        self,
        store: ConversationStore,
        ticketing: TicketingProvider | None,
        *,
        matcher: HandoffIntentMatcher | None = None,
    ) -> None:
        self._store = store
        self._ticketing = ticketing
        self._matcher = matcher or HandoffIntentMatcher()

    @property
    def enabled(self) -> bool:
        return self._ticketing is not None

    def _provider(self) -> TicketingProvider:
        if self._ticketing is None:
            raise AuthorizationMissingError("Ticketing provider is not configured")
        return self._ticketing

    def escalate(
        self,
        session_id: str,
        reason: str | None = None,
        contact: ContactInfo | None = None,
    ) -> EscalationResult:
        """Return the session's ticket, creating it upstream on first call.

        Upstream failures propagate as :class:`AssistantError` subclasses and
        leave no mapping behind, so a later call can retry.
        """

        session = self._store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Unknown session {session_id}")
        existing = self._store.get_ticket_for_session(session_id)
        if existing is not None:
            return EscalationResult(existing, already_existed=True)

        if contact and (contact.name or contact.email):
            session = self._store.update_contact(
                session_id, name=contact.name, email=contact.email
            )
        ticket_contact = TicketContact(name=session.user_name, email=session.user_email)
        history = self._store.history(session_id)
        reason = (reason or "").strip() or infer_handoff_reason(history, self._matcher)
        transcript = render_transcript(history)

        external_id = self._provider().create_ticket(
            build_subject(reason, session_id),
            build_ticket_body(
                reason=reason,
                session_id=session_id,
                contact=ticket_contact,
                transcript=transcript,
            ),
            ticket_contact,
        )
        record, created = self._store.save_ticket(session_id, external_id, reason)
        if not created:
            logger.warning(
                "Session %s was escalated concurrently; upstream ticket %s is orphaned",
                session_id,
                external_id,
            )
        else:
            logger.info("Session %s escalated to ticket %s (%s)", session_id, external_id, reason)
        return EscalationResult(record, already_existed=not created)

    def relay_message(
        self, session_id: str, text: str, ticket_id: str | None = None
    ) -> RelayResult:
        """Store a user message and forward it to the session's ticket.

        The message is persisted before forwarding, so upstream failures are
        reported in the result and never lose it.
        """

        text = (text or "").strip()
        if not text:
            raise InputValidationError("Message is required")
        if self._store.get_session(session_id) is None:
            raise NotFoundError(f"Unknown session {session_id}")
        if not ticket_id:
            mapping = self._store.get_ticket_for_session(session_id)
            if mapping is None:
                raise NotFoundError(f"Session {session_id} has no handoff ticket")
            ticket_id = mapping.external_ticket_id

        message_id = self._store.append_message(
            session_id, NewMessage(role="user", content=text, requires_human=True)
        )
        try:
            self._provider().post_reply(ticket_id, text, public=True)
        except AuthorizationMissingError as exc:
            logger.error("Relay to ticket %s needs re-authorization: %s", ticket_id, exc)
            return RelayResult(
                ok=False,
                ticket_id=ticket_id,
                message_id=message_id,
                needs_reauth=True,
                error=exc.user_message,
            )
        except AssistantError as exc:
            logger.warning("Relay to ticket %s failed: %s", ticket_id, exc)
            return RelayResult(
                ok=False, ticket_id=ticket_id, message_id=message_id, error=exc.user_message
            )
        return RelayResult(ok=True, ticket_id=ticket_id, message_id=message_id)


__all__ = [
    "EscalationManager",
    "EscalationResult",
    "RelayResult",
    "build_subject",
    "build_ticket_body",
    "infer_handoff_reason",
    "render_transcript",
]
