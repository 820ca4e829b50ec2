"""Zoho Desk webhook adapter.

Zoho Desk callbacks differ by event type and account configuration, so the
ticket id and the message body are located with best-effort extractors:

1. an ordered list of candidate key paths is tried at the top level;
2. failing that, a bounded traversal (``max_depth`` levels, ``max_nodes``
   containers) looks for any known key anywhere in the payload.

Both return ``None``/``""`` rather than guessing further.
"""

from __future__ import annotations

import hmac
import html
import re
from collections import deque
from collections.abc import Mapping
from typing import Any, Iterable

from bs4 import BeautifulSoup

from .base import InboundAgentReply, TicketWebhookAdapter

TICKET_ID_PATHS: tuple[str, ...] = (
    "ticketId",
    "ticket_id",
    "ticketID",
    "ticket",
    "ticket.id",
    "data.ticketId",
    "data.ticket_id",
    "data.ticket.id",
    "resourceId",
    "resource_id",
    "entityId",
    "entity_id",
    "id",
)
TICKET_ID_DEEP_KEYS = frozenset(
    {"ticketId", "ticket_id", "ticketID", "resourceId", "resource_id", "entityId", "entity_id"}
)

BODY_PATHS: tuple[str, ...] = (
    "content",
    "message",
    "text",
    "plainText",
    "comment.content",
    "comment.plainText",
    "thread.content",
    "thread.plainText",
    "thread.summary",
    "data.content",
    "data.plainText",
    "data.comment.content",
    "data.thread.content",
    "data.thread.plainText",
    "data.thread.summary",
    "response.content",
)
BODY_DEEP_KEYS = frozenset(
    {
        "content",
        "plainText",
        "plain_text",
        "message",
        "text",
        "summary",
        "body",
        "description",
        "comment",
        "reply",
    }
)
MIN_DEEP_BODY_LENGTH = 2

_QUOTE_MARKER = re.compile(r"----\s*on\s+", re.I)
_SURVEY_HOLDER = re.compile(
    r'<div[^>]*title="survey_holder::start"[\s\S]*?title="survey_holder::end"[^>]*>[\s\S]*?</div>',
    re.I,
)


def _resolve_path(payload: Any, path: str) -> Any:
    current = payload
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _as_identifier(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, int):
        return str(value)
    return None


def _walk(payload: Any, *, max_depth: int, max_nodes: int) -> Iterable[tuple[str, Any]]:
    """Yield ``(key, value)`` pairs breadth-first within the given bounds."""

    queue: deque[tuple[Any, int]] = deque([(payload, 0)])
    seen: set[int] = set()
    visited = 0
    while queue and visited < max_nodes:
        node, depth = queue.popleft()
        if id(node) in seen:
            continue
        seen.add(id(node))
        visited += 1
        if isinstance(node, Mapping):
            children = list(node.items())
        elif isinstance(node, list):
            children = [("", item) for item in node]
        else:
            continue
        for key, value in children:
            if key:
                yield key, value
            if depth < max_depth and isinstance(value, (Mapping, list)):
                queue.append((value, depth + 1))


def extract_ticket_id(
    payload: Any, *, max_depth: int = 8, max_nodes: int = 5000
) -> str | None:
    """Return the ticket identifier carried by ``payload``, if any."""

    for path in TICKET_ID_PATHS:
        found = _as_identifier(_resolve_path(payload, path))
        if found:
            return found
    for key, value in _walk(payload, max_depth=max_depth, max_nodes=max_nodes):
        if key in TICKET_ID_DEEP_KEYS:
            found = _as_identifier(value)
            if found:
                return found
    return None


def extract_body(payload: Any, *, max_depth: int = 8, max_nodes: int = 8000) -> str:
    """Return the raw (possibly HTML) message body, or ``""``."""

    for path in BODY_PATHS:
        value = _resolve_path(payload, path)
        if isinstance(value, str) and value.strip():
            return value
    for key, value in _walk(payload, max_depth=max_depth, max_nodes=max_nodes):
        if key in BODY_DEEP_KEYS and isinstance(value, str):
            if len(value.strip()) >= MIN_DEEP_BODY_LENGTH:
                return value
    return ""


def _normalize_whitespace(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\xa0", " ")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def clean_agent_html(raw: str) -> str:
    """Turn an agent reply into plain text.

    Quoted history after a ``---- On ...`` marker is dropped, together with
    survey holders, the ``ZDeskInteg`` block and blockquotes. Line breaks
    survive as newlines and entities are decoded.
    """

    text = raw or ""
    if "<" not in text:
        return _normalize_whitespace(html.unescape(text))
    marker = _QUOTE_MARKER.search(text)
    if marker:
        text = text[: marker.start()]
    text = _SURVEY_HOLDER.sub("", text)

    soup = BeautifulSoup(text, "html.parser")
    for tag in soup.find_all("div", id="ZDeskInteg"):
        tag.decompose()
    for tag in soup.find_all("blockquote"):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(["div", "p"]):
        block.append("\n")
    return _normalize_whitespace(soup.get_text())


class ZohoDeskWebhookAdapter(TicketWebhookAdapter):
    provider_name = "zoho"

    SECRET_HEADER = "x-zoho-webhook-secret"
    SECRET_QUERY = "secret"

    def verify_request(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> bool:
        if not self.secret:
            return True
        expected = self.secret.encode("utf-8")
        for candidate in (headers.get(self.SECRET_HEADER), query.get(self.SECRET_QUERY)):
            if candidate and hmac.compare_digest(candidate.encode("utf-8"), expected):
                return True
        return False

    def parse_incoming(self, payload: Any) -> InboundAgentReply:
        return InboundAgentReply(
            ticket_id=extract_ticket_id(payload),
            body=clean_agent_html(extract_body(payload).strip()),
        )


__all__ = [
    "BODY_PATHS",
    "TICKET_ID_PATHS",
    "ZohoDeskWebhookAdapter",
    "clean_agent_html",
    "extract_body",
    "extract_ticket_id",
]
