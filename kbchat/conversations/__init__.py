"""Conversation persistence: schemas and the Conversation Store."""

from .repository import ConversationStore, SqlAlchemyConversationStore

__all__ = ["ConversationStore", "SqlAlchemyConversationStore"]
