"""SQLAlchemy declarative base and conversation models.

This package hosts the SQLAlchemy models backing the Conversation Store. It
exposes a single declarative ``Base`` class; individual models live in
dedicated modules within this package.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export the models so callers can import them via
# ``from kbchat.models import ChatSession`` instead of touching private modules.
from .conversation import ChatMessage, ChatSession, HandoffTicket


__all__ = [
    "Base",
    "ChatMessage",
    "ChatSession",
    "HandoffTicket",
]
