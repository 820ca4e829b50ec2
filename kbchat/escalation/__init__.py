"""Human handoff: ticket creation, message relay and agent reply delivery."""

from .broker import InMemoryReplyBroker, PostgresReplyBroker, ReplyBroker
from .relay import AgentReplyRelay, RelayOutcome
from .service import EscalationManager, EscalationResult, RelayResult
from .ticketing import TicketContact, TicketingProvider, ZohoDeskClient

__all__ = [
    "AgentReplyRelay",
    "EscalationManager",
    "EscalationResult",
    "InMemoryReplyBroker",
    "PostgresReplyBroker",
    "RelayOutcome",
    "RelayResult",
    "ReplyBroker",
    "TicketContact",
    "TicketingProvider",
    "ZohoDeskClient",
]
