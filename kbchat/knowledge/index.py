"""Similarity indexes over knowledge-base chunks.

:class:`PgVectorIndex` stores chunk embeddings in PostgreSQL with the
``pgvector`` extension and ranks them by cosine distance (``<=>``);
similarity is reported as ``1 - distance``. :class:`InMemoryVectorIndex`
implements the same contract in pure Python for development and tests.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Dict, List, Protocol, Sequence, Tuple

import numpy as np
import psycopg
from pgvector.psycopg import register_vector

from ..conversations.schemas import Citation
from ..core.errors import ProviderUnavailableError
from .models import Article, Passage

logger = logging.getLogger(__name__)


class SimilarityIndex(Protocol):
    def search(
        self, vector: Sequence[float], *, limit: int, floor: float
    ) -> List[Passage]:
        """Return passages with similarity >= ``floor``, best first."""

    def upsert_article(
        self,
        article: Article,
        chunks: Sequence[str],
        vectors: Sequence[Sequence[float]],
    ) -> int:
        """Replace the stored chunks of ``article``; return the chunk count."""

    def has_article(self, article_id: str) -> bool:
        ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""

    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


def _citation(article_id: str, title: str, url: str) -> Citation:
    return Citation(source_id=str(article_id), title=title or "", url=url or "")


class InMemoryVectorIndex:
    """Brute-force cosine search over chunks held in memory."""

    def __init__(self) -> None:
        self._articles: Dict[str, Article] = {}
        self._chunks: Dict[str, List[Tuple[str, List[float]]]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return sum(len(chunks) for chunks in self._chunks.values())

    def upsert_article(
        self,
        article: Article,
        chunks: Sequence[str],
        vectors: Sequence[Sequence[float]],
    ) -> int:
        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must have the same length")
        with self._lock:
            self._articles[article.id] = article
            self._chunks[article.id] = [
                (content, [float(v) for v in vector])
                for content, vector in zip(chunks, vectors)
            ]
        return len(chunks)

    def has_article(self, article_id: str) -> bool:
        return bool(self._chunks.get(article_id))

    def search(
        self, vector: Sequence[float], *, limit: int, floor: float
    ) -> List[Passage]:
        with self._lock:
            candidates = [
                (article_id, content, cosine_similarity(vector, chunk_vector))
                for article_id, chunks in self._chunks.items()
                for content, chunk_vector in chunks
            ]
            articles = dict(self._articles)
        ranked = sorted(
            (c for c in candidates if c[2] >= floor), key=lambda c: c[2], reverse=True
        )[:limit]
        return [
            Passage(
                citation=_citation(
                    article_id, articles[article_id].title, articles[article_id].url
                ),
                content=content,
                similarity=similarity,
            )
            for article_id, content, similarity in ranked
        ]


class PgVectorIndex:
    """pgvector-backed index over ``help_articles`` and ``article_chunks``."""

    def __init__(
        self, conninfo: str, *, dimensions: int, connect_timeout: int = 10
    ) -> None:
        self.conninfo = conninfo
        self.dimensions = dimensions
        self.connect_timeout = connect_timeout

    def _connect(self) -> psycopg.Connection:
        """Open a connection with pgvector adapters registered.

        The caller is responsible for closing the returned connection.
        """

        try:
            conn = psycopg.connect(self.conninfo, connect_timeout=self.connect_timeout)
        except psycopg.Error as exc:
            raise ProviderUnavailableError(f"Knowledge database unavailable: {exc}") from exc
        register_vector(conn)
        return conn

    def ensure_schema(self) -> None:
        """Create the extension, tables and ANN index if they are missing."""

        conn = psycopg.connect(self.conninfo, connect_timeout=self.connect_timeout)
        try:
            with conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS help_articles (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        url TEXT NOT NULL DEFAULT '',
                        content TEXT NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS article_chunks (
                        id BIGSERIAL PRIMARY KEY,
                        article_id TEXT NOT NULL REFERENCES help_articles(id) ON DELETE CASCADE,
                        chunk_index INTEGER NOT NULL,
                        content TEXT NOT NULL,
                        embedding VECTOR({int(self.dimensions)}) NOT NULL,
                        UNIQUE (article_id, chunk_index)
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE INDEX IF NOT EXISTS ix_article_chunks_embedding
                    ON article_chunks USING hnsw (embedding vector_cosine_ops)
                    """
                )
            conn.commit()
        finally:
            conn.close()

    def has_article(self, article_id: str) -> bool:
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM article_chunks WHERE article_id = %s LIMIT 1",
                    (article_id,),
                )
                return cur.fetchone() is not None
        finally:
            conn.close()

    def upsert_article(
        self,
        article: Article,
        chunks: Sequence[str],
        vectors: Sequence[Sequence[float]],
    ) -> int:
        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must have the same length")
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO help_articles (id, title, url, content)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET title = EXCLUDED.title,
                        url = EXCLUDED.url,
                        content = EXCLUDED.content,
                        updated_at = now()
                    """,
                    (article.id, article.title, article.url, article.content),
                )
                cur.execute("DELETE FROM article_chunks WHERE article_id = %s", (article.id,))
                cur.executemany(
                    """
                    INSERT INTO article_chunks (article_id, chunk_index, content, embedding)
                    VALUES (%s, %s, %s, %s)
                    """,
                    [
                        (article.id, idx, content, np.asarray(vector, dtype=np.float32))
                        for idx, (content, vector) in enumerate(zip(chunks, vectors))
                    ],
                )
            conn.commit()
        except psycopg.Error:
            conn.rollback()
            raise
        finally:
            conn.close()
        return len(chunks)

    def search(
        self, vector: Sequence[float], *, limit: int, floor: float
    ) -> List[Passage]:
        qvec = np.asarray(vector, dtype=np.float32)
        sql = """
        SELECT a.id, a.title, a.url, c.content, 1 - (c.embedding <=> %s) AS similarity
        FROM article_chunks c
        JOIN help_articles a ON a.id = c.article_id
        WHERE 1 - (c.embedding <=> %s) >= %s
        ORDER BY c.embedding <=> %s
        LIMIT %s
        """
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (qvec, qvec, floor, qvec, limit))
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise ProviderUnavailableError(f"Similarity search failed: {exc}") from exc
        finally:
            conn.close()
        return [
            Passage(
                citation=_citation(article_id, title, url),
                content=content,
                similarity=float(similarity),
            )
            for article_id, title, url, content, similarity in rows
        ]


__all__ = [
    "InMemoryVectorIndex",
    "PgVectorIndex",
    "SimilarityIndex",
    "cosine_similarity",
]
