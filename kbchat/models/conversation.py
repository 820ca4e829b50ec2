"""Conversation Store models: sessions, messages and handoff tickets.

Messages use an autoincrement integer key assigned by the database at insert
time. That key is the ordering sequence for a session's history, so
concurrent appends always read back in one total order even when two rows
share the same ``created_at``.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


def _new_session_id() -> str:
    return str(uuid.uuid4())


class ChatSession(Base):
    """A single conversation thread.

    Attributes:
        id: Opaque server-generated identifier (UUID4 string).
        user_id: Optional identifier supplied by the embedding site.
        user_name: Contact name captured before a handoff.
        user_email: Contact e-mail captured before a handoff.
        messages: Ordered messages owned by the session.
        ticket: Handoff ticket mapped to this session, if any.
    """

    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(
        String(length=64), primary_key=True, default=_new_session_id
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    user_name: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    user_email: Mapped[Optional[str]] = mapped_column(String(length=320), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    messages: Mapped[List["ChatMessage"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ChatMessage.id",
    )
    ticket: Mapped[Optional["HandoffTicket"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )


class ChatMessage(Base):
    """An immutable message within a session."""

    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_session_id_id", "session_id", "id"),)

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    session_id: Mapped[str] = mapped_column(
        String(length=64),
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(length=16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    citations: Mapped[List[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    requires_human: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    session: Mapped[ChatSession] = relationship(back_populates="messages")


class HandoffTicket(Base):
    """Maps one session to exactly one external ticket."""

    __tablename__ = "handoff_tickets"
    __table_args__ = (
        Index("ix_handoff_tickets_session_id_unique", "session_id", unique=True),
        Index("ix_handoff_tickets_external_id_unique", "external_ticket_id", unique=True),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    session_id: Mapped[str] = mapped_column(
        String(length=64),
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    external_ticket_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    reason: Mapped[str] = mapped_column(String(length=255), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    session: Mapped[ChatSession] = relationship(back_populates="ticket")


__all__ = ["ChatMessage", "ChatSession", "HandoffTicket"]
