"""Publish/subscribe channel for live agent replies, keyed by session.

Delivery is best effort and at most once per subscriber: a session with no
connected listener simply misses the push and the client sees the message on
its next history fetch.

- :class:`InMemoryReplyBroker` fans events out to ``asyncio`` queues of the
  current process. ``publish`` is thread-safe so it can be called from the
  worker threads FastAPI runs sync endpoints in.
- :class:`PostgresReplyBroker` uses PostgreSQL ``NOTIFY``/``LISTEN`` so every
  API process sees every event.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, Protocol, Set, Tuple

import psycopg

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "kbchat_agent_replies"
# PostgreSQL rejects NOTIFY payloads of 8000 bytes or more.
MAX_NOTIFY_BYTES = 7900


class ReplyBroker(Protocol):
    def publish(self, session_id: str, event: Dict[str, Any]) -> None:
        ...

    def listen(self, session_id: str) -> AsyncIterator[Dict[str, Any]]:
        ...


_Subscriber = Tuple[asyncio.AbstractEventLoop, "asyncio.Queue[Dict[str, Any]]"]


def _offer(queue: "asyncio.Queue[Dict[str, Any]]", event: Dict[str, Any]) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.warning("Dropping agent reply event for a slow subscriber")


class InMemoryReplyBroker:
    """Single-process broker backed by per-subscriber ``asyncio.Queue`` objects."""

    def __init__(self, *, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, Set[_Subscriber]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, ()))

    def publish(self, session_id: str, event: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(session_id, ()))
        for loop, queue in subscribers:
            try:
                loop.call_soon_threadsafe(_offer, queue, event)
            except RuntimeError:
                # Event loop already closed; the listener is gone.
                self._discard(session_id, (loop, queue))

    def _discard(self, session_id: str, subscriber: _Subscriber) -> None:
        with self._lock:
            subscribers = self._subscribers.get(session_id)
            if subscribers is None:
                return
            subscribers.discard(subscriber)
            if not subscribers:
                del self._subscribers[session_id]

    async def listen(self, session_id: str) -> AsyncIterator[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(self.max_queue_size)
        subscriber = (loop, queue)
        with self._lock:
            self._subscribers[session_id].add(subscriber)
        try:
            while True:
                yield await queue.get()
        finally:
            self._discard(session_id, subscriber)


class PostgresReplyBroker:
    """Cross-process broker over PostgreSQL ``LISTEN``/``NOTIFY``."""

    def __init__(self, conninfo: str, *, channel: str = NOTIFY_CHANNEL) -> None:
        self.conninfo = conninfo
        self.channel = channel

    def _payload(self, session_id: str, event: Dict[str, Any]) -> str:
        payload = json.dumps({"session_id": session_id, "event": event}, default=str)
        if len(payload.encode("utf-8")) <= MAX_NOTIFY_BYTES:
            return payload
        message = event.get("message") or {}
        slim = {
            "type": event.get("type"),
            "message": {"id": message.get("id"), "session_id": session_id},
            "truncated": True,
        }
        return json.dumps({"session_id": session_id, "event": slim}, default=str)

    def publish(self, session_id: str, event: Dict[str, Any]) -> None:
        try:
            with psycopg.connect(self.conninfo, autocommit=True) as conn:
                conn.execute(
                    "SELECT pg_notify(%s, %s)",
                    (self.channel, self._payload(session_id, event)),
                )
        except psycopg.Error as exc:
            # The message is already stored; only the live push is lost.
            logger.warning("Agent reply notification failed for %s: %s", session_id, exc)

    async def listen(self, session_id: str) -> AsyncIterator[Dict[str, Any]]:
        conn = await psycopg.AsyncConnection.connect(self.conninfo, autocommit=True)
        try:
            await conn.execute(f'LISTEN "{self.channel}"')
            async for notify in conn.notifies():
                try:
                    data = json.loads(notify.payload)
                except ValueError:
                    logger.warning("Ignoring malformed notification on %s", self.channel)
                    continue
                if data.get("session_id") == session_id:
                    yield data.get("event") or {}
        finally:
            await conn.close()


__all__ = [
    "InMemoryReplyBroker",
    "NOTIFY_CHANNEL",
    "PostgresReplyBroker",
    "ReplyBroker",
]
