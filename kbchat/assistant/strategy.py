"""Response Strategy Selector.

Rules, evaluated in order for every user turn:

1. The message contains a handoff keyword -> ``HANDOFF`` ("user requested human").
2. ``confidence < low_threshold`` -> ``HANDOFF`` ("low confidence - N%").
3. ``confidence < answer_threshold`` -> ``CLARIFY``.
4. Otherwise -> ``DIRECT_ANSWER``.

A keyword always wins, even over a high-confidence retrieval. An empty
retrieval has confidence 0.0 and therefore resolves through rule 2 unless the
low threshold is configured as 0.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from ..nlp import HandoffIntentMatcher
from .scoring import ConfidenceScorer

USER_REQUESTED_REASON = "user requested human"


class Strategy(str, enum.Enum):
    DIRECT_ANSWER = "direct_answer"
    CLARIFY = "clarify"
    HANDOFF = "handoff"


@dataclass(frozen=True)
class StrategyDecision:
    strategy: Strategy
    reason: str | None = None
    matched_keyword: str | None = None

    @property
    def requires_human(self) -> bool:
        return self.strategy is Strategy.HANDOFF

    @property
    def clarification_needed(self) -> bool:
        return self.strategy is Strategy.CLARIFY


def low_confidence_reason(confidence: float) -> str:
    return f"low confidence - {round(confidence * 100)}%"


def select_strategy(
    confidence: float,
    message: str,
    *,
    thresholds: ConfidenceScorer,
    matcher: HandoffIntentMatcher,
) -> StrategyDecision:
    """Map a turn's confidence and text to a response strategy."""

    keyword = matcher.match(message)
    if keyword is not None:
        return StrategyDecision(Strategy.HANDOFF, USER_REQUESTED_REASON, keyword)
    if confidence < thresholds.low_threshold:
        return StrategyDecision(Strategy.HANDOFF, low_confidence_reason(confidence))
    if confidence < thresholds.answer_threshold:
        return StrategyDecision(Strategy.CLARIFY)
    return StrategyDecision(Strategy.DIRECT_ANSWER)


__all__ = [
    "Strategy",
    "StrategyDecision",
    "USER_REQUESTED_REASON",
    "low_confidence_reason",
    "select_strategy",
]
