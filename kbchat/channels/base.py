"""Base abstractions for inbound ticketing webhooks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class InboundAgentReply:
    """Agent message extracted from a ticketing-system callback.

    ``ticket_id`` is ``None`` when no identifier could be found; ``body`` is
    the sanitised plain text and may be empty.
    """

    ticket_id: str | None
    body: str


class TicketWebhookAdapter(ABC):
    """Abstract base class encapsulating provider-specific webhook handling."""

    #: Lowercase provider identifier used in routes and configuration.
    provider_name: str

    def __init__(self, *, secret: str | None = None) -> None:
        self.secret = secret

    @abstractmethod
    def parse_incoming(self, payload: Any) -> InboundAgentReply:
        """Extract the ticket identifier and message body from ``payload``."""

    def verify_request(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> bool:
        """Validate authenticity of the webhook call.

        Adapters can override this to implement signature checks. The default
        implementation returns ``True``.
        """

        return True
