"""Knowledge base: embeddings, similarity indexes, retrieval and ingestion."""

from .index import InMemoryVectorIndex, PgVectorIndex, SimilarityIndex
from .models import Article, Passage, RetrievalResult
from .retriever import KnowledgeRetriever

__all__ = [
    "Article",
    "InMemoryVectorIndex",
    "KnowledgeRetriever",
    "Passage",
    "PgVectorIndex",
    "RetrievalResult",
    "SimilarityIndex",
]
