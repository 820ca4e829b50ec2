"""Confidence Scorer.

Confidence is the arithmetic mean of the similarities of the retained
passages (after the similarity floor and the retrieval limit were applied),
and 0.0 for an empty result. Because the floor removes weak matches before
averaging, confidence is either 0.0 or at least the floor. Thresholds in
:mod:`kbchat.assistant.strategy` are tuned against exactly this value.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..knowledge.models import RetrievalResult


def score(result: RetrievalResult) -> float:
    """Mean similarity of ``result`` clamped to [0, 1]; 0.0 when empty."""

    similarities = result.similarities
    if not similarities:
        return 0.0
    mean = sum(similarities) / len(similarities)
    return min(1.0, max(0.0, mean))


@dataclass(frozen=True)
class ConfidenceScorer:
    """Scorer bundled with the decision thresholds it is tuned against."""

    low_threshold: float = 0.2
    answer_threshold: float = 0.5

    def __post_init__(self) -> None:
        if not 0.0 <= self.low_threshold <= self.answer_threshold <= 1.0:
            raise ValueError(
                "thresholds must satisfy 0 <= low_threshold <= answer_threshold <= 1"
            )

    def score(self, result: RetrievalResult) -> float:
        return score(result)


__all__ = ["ConfidenceScorer", "score"]
