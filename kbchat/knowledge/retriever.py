"""Knowledge Retriever: text in, ranked passages out."""

from __future__ import annotations

import logging

from ..core.errors import AssistantError, AuthorizationMissingError
from .embeddings import EmbeddingProvider
from .index import SimilarityIndex
from .models import Passage, RetrievalResult

logger = logging.getLogger(__name__)


class KnowledgeRetriever:
    """Embed a query and search the similarity index.

    Provider failures never escape :meth:`retrieve`; they degrade to an empty
    result, which the strategy selector treats as "no evidence".
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        index: SimilarityIndex,
        *,
        similarity_floor: float = 0.3,
        default_limit: int = 5,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self.similarity_floor = similarity_floor
        self.default_limit = default_limit

    def retrieve(self, query: str, limit: int | None = None) -> RetrievalResult:
        limit = self.default_limit if limit is None else limit
        if limit <= 0 or not (query or "").strip():
            return RetrievalResult.empty()
        try:
            vector = self._embedder.embed(query)
            hits = self._index.search(vector, limit=limit, floor=self.similarity_floor)
        except AuthorizationMissingError as exc:
            logger.error(
                "Retrieval disabled: embedding credentials rejected (%s). "
                "Re-authorise the embedding provider.",
                exc,
            )
            return RetrievalResult.empty()
        except AssistantError as exc:
            logger.warning("Retrieval degraded to empty result: %s", exc)
            return RetrievalResult.empty()
        except ValueError as exc:
            # Dimension mismatch between the query vector and the index.
            logger.error("Retrieval degraded to empty result: %s", exc)
            return RetrievalResult.empty()

        kept = [
            Passage(p.citation, p.content, min(1.0, max(0.0, p.similarity)))
            for p in hits
            if p.similarity >= self.similarity_floor
        ]
        kept.sort(key=lambda p: p.similarity, reverse=True)
        return RetrievalResult(tuple(kept[:limit]))


__all__ = ["KnowledgeRetriever"]
