"""Pydantic schemas for conversation persistence and the chat APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

MessageRole = Literal["user", "assistant", "agent"]
Strategy = Literal["direct_answer", "clarify", "handoff"]


class Citation(BaseModel):
    """Reference back to a knowledge-base passage."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    title: str
    url: str


class NewMessage(BaseModel):
    """Message payload accepted by the store before it has an id."""

    role: MessageRole
    content: str
    citations: list[Citation] = Field(default_factory=list)
    confidence: float | None = None
    requires_human: bool = False


class Message(NewMessage):
    id: int
    session_id: str
    created_at: datetime


class SessionInfo(BaseModel):
    id: str
    user_id: str | None = None
    user_name: str | None = None
    user_email: str | None = None
    created_at: datetime
    updated_at: datetime


class ContactInfo(BaseModel):
    name: str | None = None
    email: str | None = None


class TicketRecord(BaseModel):
    session_id: str
    external_ticket_id: str
    reason: str
    created_at: datetime


# ---------------------------------------------------------------------------
# HTTP payloads


class ChatRequest(BaseModel):
    message: str
    session_id: str | None = Field(default=None, max_length=64)
    user_id: str | None = Field(default=None, max_length=255)

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("message must not be empty")
        return value


class ChatResponse(BaseModel):
    session_id: str
    response: str
    citations: list[Citation] = Field(default_factory=list)
    confidence: float
    requires_human: bool
    clarification_needed: bool
    strategy: Strategy
    reason: str | None = None


class SessionCreateRequest(BaseModel):
    message: str | None = None
    user_id: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = None


class SessionCreateResponse(BaseModel):
    session_id: str


class MessageList(BaseModel):
    session_id: str
    items: list[Message]


class HandoffRequest(BaseModel):
    session_id: str = Field(max_length=64)
    reason: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = None


class HandoffResponse(BaseModel):
    ticket_id: str
    already_existed: bool


class RelayRequest(BaseModel):
    session_id: str = Field(max_length=64)
    message: str
    ticket_id: str | None = Field(default=None, max_length=128)

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("message must not be empty")
        return value


class RelayResponse(BaseModel):
    ok: bool
    ticket_id: str | None = None
    needs_reauth: bool = False
    error: str | None = None


class WebhookAck(BaseModel):
    ok: bool = True
    status: Literal["delivered", "unmapped", "skipped", "failed"]
    session_id: str | None = None
    message_id: int | None = None
    reason: str | None = None


__all__ = [
    "ChatRequest",
    "ChatResponse",
    "Citation",
    "ContactInfo",
    "HandoffRequest",
    "HandoffResponse",
    "Message",
    "MessageList",
    "MessageRole",
    "NewMessage",
    "RelayRequest",
    "RelayResponse",
    "SessionCreateRequest",
    "SessionCreateResponse",
    "SessionInfo",
    "Strategy",
    "TicketRecord",
    "WebhookAck",
]
