"""SSE helpers for reply streaming.

This module groups tiny utilities that coalesce a stream of provider deltas
into readable chunks and emit them as Server-Sent Events (SSE). Chunks are
only grouped, never rewritten, so concatenating every ``chunk`` event gives
back exactly the text that was stored for the reply.

Event format produced:
- "event: chunk" with ``data: {"content": "<partial text>"}``
- "event: done" / "event: error" with a JSON object, once per stream
- "event: agent_message" for replies pushed by a human agent
- ": keep-alive" comments while a listener is idle
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Mapping

# Punctuation that ends a phrase and triggers a flush
PUNCT_CUTOFF = set(list(".,;:!?…"))
CLOSE_PUNCT = set(list(")]}"))

MAX_BUFFER_CHARS = 80
KEEP_ALIVE = ": keep-alive\n\n"


def sse_event(event: str, payload: Mapping[str, Any]) -> str:
    """Format one SSE frame whose ``data`` line is a JSON object.

    JSON encoding escapes newlines, so multi-line text never splits the
    frame.
    """
    data = json.dumps(payload, ensure_ascii=False, default=str)
    return f"event: {event}\ndata: {data}\n\n"


def _should_flush(buf: str) -> bool:
    """Heuristic to decide when to emit an intermediate chunk.

    We flush on whitespace boundaries and after closing/terminal punctuation so
    the UI displays smooth phrases, with a safety cutoff for very long buffers.
    """
    if not buf:
        return False
    last = buf[-1]
    if last.isspace() or last in PUNCT_CUTOFF or last in CLOSE_PUNCT:
        return True
    return len(buf) >= MAX_BUFFER_CHARS


async def coalesce_chunks(pieces: AsyncIterator[str]) -> AsyncIterator[str]:
    """Aggregate provider deltas into phrase-sized pieces.

    Parameters
    ----------
    pieces:
        Asynchronous iterator yielding reply fragments of any size.

    Yields
    ------
    str:
        Consecutive slices of the input; their concatenation equals the
        concatenation of ``pieces``.
    """
    buf = ""
    async for piece in pieces:
        if not piece:
            continue
        buf += piece
        if _should_flush(buf):
            yield buf
            buf = ""
    if buf:
        yield buf


__all__ = ["KEEP_ALIVE", "coalesce_chunks", "sse_event"]
