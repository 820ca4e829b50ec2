"""Webhook adapter registry for ticketing providers."""

from __future__ import annotations

from .base import InboundAgentReply, TicketWebhookAdapter
from .zoho import ZohoDeskWebhookAdapter

_REGISTRY: dict[str, type[TicketWebhookAdapter]] = {}


def register_adapter(adapter: type[TicketWebhookAdapter]) -> None:
    """Register a webhook adapter class in the global registry."""
    _REGISTRY[adapter.provider_name] = adapter


def get_adapter(name: str) -> type[TicketWebhookAdapter]:
    """Retrieve an adapter class for ``name`` or raise ``KeyError``."""
    normalized = name.lower()
    if normalized not in _REGISTRY:
        raise KeyError(f"Ticketing provider '{name}' is not configured")
    return _REGISTRY[normalized]


# Pre-register built-in adapters
register_adapter(ZohoDeskWebhookAdapter)

__all__ = [
    "InboundAgentReply",
    "TicketWebhookAdapter",
    "get_adapter",
    "register_adapter",
]
