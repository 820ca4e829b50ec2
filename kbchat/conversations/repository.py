"""Conversation Store: sessions, ordered messages and ticket mappings."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..core.errors import InputValidationError, NotFoundError
from ..models import ChatMessage, ChatSession, HandoffTicket
from ..models.session import Database
from . import schemas

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    """Persistence contract used by the orchestrator and escalation flow."""

    def create_session(
        self,
        *,
        user_id: str | None = None,
        user_name: str | None = None,
        user_email: str | None = None,
    ) -> str:
        ...

    def get_session(self, session_id: str) -> schemas.SessionInfo | None:
        ...

    def update_contact(
        self, session_id: str, *, name: str | None = None, email: str | None = None
    ) -> schemas.SessionInfo:
        ...

    def append_message(self, session_id: str, message: schemas.NewMessage) -> int:
        ...

    def history(
        self, session_id: str, limit: int | None = None
    ) -> list[schemas.Message]:
        ...

    def get_ticket_for_session(self, session_id: str) -> schemas.TicketRecord | None:
        ...

    def get_ticket_by_external_id(
        self, external_ticket_id: str
    ) -> schemas.TicketRecord | None:
        ...

    def save_ticket(
        self, session_id: str, external_ticket_id: str, reason: str
    ) -> tuple[schemas.TicketRecord, bool]:
        ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementation


def _to_session(row: ChatSession) -> schemas.SessionInfo:
    return schemas.SessionInfo(
        id=row.id,
        user_id=row.user_id,
        user_name=row.user_name,
        user_email=row.user_email,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_message(row: ChatMessage) -> schemas.Message:
    return schemas.Message(
        id=row.id,
        session_id=row.session_id,
        role=row.role,  # type: ignore[arg-type]
        content=row.content,
        citations=[schemas.Citation(**item) for item in (row.citations or [])],
        confidence=row.confidence,
        requires_human=bool(row.requires_human),
        created_at=row.created_at,
    )


def _to_ticket(row: HandoffTicket) -> schemas.TicketRecord:
    return schemas.TicketRecord(
        session_id=row.session_id,
        external_ticket_id=row.external_ticket_id,
        reason=row.reason,
        created_at=row.created_at,
    )


class SqlAlchemyConversationStore:
    """Conversation Store backed by any SQLAlchemy-supported database.

    Appends are plain inserts; the database assigns the message id, which is
    the ordering key for :meth:`history`. No per-session lock is taken.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    # ------------------------------------------------------------------
    # Sessions

    def create_session(
        self,
        *,
        user_id: str | None = None,
        user_name: str | None = None,
        user_email: str | None = None,
    ) -> str:
        with self._db.session_scope() as session:
            row = ChatSession(user_id=user_id, user_name=user_name, user_email=user_email)
            session.add(row)
            session.flush()
            session_id = row.id
        logger.debug("Created chat session %s", session_id)
        return session_id

    def get_session(self, session_id: str) -> schemas.SessionInfo | None:
        with self._db.session_scope() as session:
            row = session.get(ChatSession, session_id)
            return _to_session(row) if row else None

    def update_contact(
        self, session_id: str, *, name: str | None = None, email: str | None = None
    ) -> schemas.SessionInfo:
        with self._db.session_scope() as session:
            row = session.get(ChatSession, session_id)
            if row is None:
                raise NotFoundError(f"Unknown session {session_id}")
            if name:
                row.user_name = name
            if email:
                row.user_email = email
            session.flush()
            return _to_session(row)

    # ------------------------------------------------------------------
    # Messages

    def append_message(self, session_id: str, message: schemas.NewMessage) -> int:
        """Persist ``message`` and return its sequence id.

        Raises :class:`NotFoundError` for unknown sessions and
        :class:`PersistenceError` when the write fails.
        """

        if message.role not in ("user", "assistant", "agent"):
            raise InputValidationError(f"Unsupported role {message.role!r}")
        with self._db.session_scope() as session:
            owner = session.get(ChatSession, session_id)
            if owner is None:
                raise NotFoundError(f"Unknown session {session_id}")
            row = ChatMessage(
                session_id=session_id,
                role=message.role,
                content=message.content,
                citations=[c.model_dump() for c in message.citations],
                confidence=message.confidence,
                requires_human=message.requires_human,
            )
            session.add(row)
            session.flush()
            message_id = row.id
        return message_id

    def history(
        self, session_id: str, limit: int | None = None
    ) -> list[schemas.Message]:
        """Return messages in chronological order.

        With ``limit`` the most recent ``limit`` messages are returned, still
        oldest first.
        """

        with self._db.session_scope() as session:
            stmt = select(ChatMessage).where(ChatMessage.session_id == session_id)
            if limit is not None:
                stmt = stmt.order_by(ChatMessage.id.desc()).limit(limit)
                rows = list(reversed(session.scalars(stmt).all()))
            else:
                rows = list(session.scalars(stmt.order_by(ChatMessage.id.asc())).all())
            return [_to_message(row) for row in rows]

    # ------------------------------------------------------------------
    # Handoff tickets

    def get_ticket_for_session(self, session_id: str) -> schemas.TicketRecord | None:
        with self._db.session_scope() as session:
            row = session.scalars(
                select(HandoffTicket).where(HandoffTicket.session_id == session_id)
            ).first()
            return _to_ticket(row) if row else None

    def get_ticket_by_external_id(
        self, external_ticket_id: str
    ) -> schemas.TicketRecord | None:
        with self._db.session_scope() as session:
            row = session.scalars(
                select(HandoffTicket).where(
                    HandoffTicket.external_ticket_id == external_ticket_id
                )
            ).first()
            return _to_ticket(row) if row else None

    def save_ticket(
        self, session_id: str, external_ticket_id: str, reason: str
    ) -> tuple[schemas.TicketRecord, bool]:
        """Record the session-to-ticket mapping.

        Returns ``(record, created)``. When another writer already mapped the
        session, the existing record is returned with ``created=False``.
        """

        with self._db.session_scope() as session:
            row = HandoffTicket(
                session_id=session_id,
                external_ticket_id=external_ticket_id,
                reason=reason,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                existing = session.scalars(
                    select(HandoffTicket).where(HandoffTicket.session_id == session_id)
                ).first()
                if existing is None:
                    raise
                return _to_ticket(existing), False
            return _to_ticket(row), True


__all__ = ["ConversationStore", "SqlAlchemyConversationStore"]
