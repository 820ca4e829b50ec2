"""Transient retrieval value objects (never persisted)."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..conversations.schemas import Citation


@dataclass(frozen=True)
class Article:
    """Help article as stored in the knowledge base."""

    id: str
    title: str
    url: str
    content: str


@dataclass(frozen=True)
class Passage:
    """One retrieved chunk with its cosine similarity to the query."""

    citation: Citation
    content: str
    similarity: float

    @property
    def title(self) -> str:
        return self.citation.title


@dataclass(frozen=True)
class RetrievalResult:
    """Ranked passages, most similar first."""

    passages: tuple[Passage, ...] = field(default_factory=tuple)

    @classmethod
    def empty(cls) -> "RetrievalResult":
        return cls(())

    @property
    def is_empty(self) -> bool:
        return not self.passages

    @property
    def similarities(self) -> list[float]:
        return [p.similarity for p in self.passages]

    @property
    def titles(self) -> list[str]:
        return [p.title for p in self.passages]

    def citations(self) -> list[Citation]:
        """Return citations in rank order, one per source article."""

        seen: set[str] = set()
        unique: list[Citation] = []
        for passage in self.passages:
            if passage.citation.source_id in seen:
                continue
            seen.add(passage.citation.source_id)
            unique.append(passage.citation)
        return unique


__all__ = ["Article", "Passage", "RetrievalResult"]
