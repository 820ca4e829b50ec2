"""Split help-article bodies into overlapping, embedding-sized chunks."""

from __future__ import annotations

from typing import List


def chunk_text(text: str, *, max_chars: int = 1200, overlap: int = 200) -> List[str]:
    """Split ``text`` on paragraph boundaries into chunks of at most ``max_chars``.

    Paragraphs longer than ``max_chars`` are hard-cut with ``overlap``
    characters repeated between consecutive pieces. Each chunk after the first
    is prefixed with the tail of its predecessor when that keeps it within
    ``max_chars + overlap``.
    """

    if overlap >= max_chars:
        raise ValueError("overlap must be smaller than max_chars")
    if not text or not text.strip():
        return []
    text = text.replace("\r", "")
    pieces: List[str] = []
    buf = ""
    for part in text.split("\n\n"):
        part = part.strip()
        if not part:
            continue
        if len(buf) + len(part) + 2 <= max_chars:
            buf += ("\n\n" if buf else "") + part
            continue
        if buf:
            pieces.append(buf)
        buf = part
        while len(buf) > max_chars:
            pieces.append(buf[:max_chars].strip())
            buf = buf[max_chars - overlap:]
    if buf.strip():
        pieces.append(buf.strip())

    chunks: List[str] = []
    for piece in pieces:
        if not chunks:
            chunks.append(piece)
            continue
        prev = chunks[-1]
        tail = prev[-overlap:] if len(prev) > overlap else prev
        merged = f"{tail}\n\n{piece}".strip()
        chunks.append(merged if len(merged) <= max_chars + overlap else piece)
    return chunks


__all__ = ["chunk_text"]
