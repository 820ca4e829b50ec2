"""Confidence-gated answer pipeline."""

from .generation import AnswerGenerator, OpenAIGenerationProvider
from .pipeline import TurnOrchestrator, TurnResult
from .scoring import ConfidenceScorer, score
from .strategy import Strategy, StrategyDecision, select_strategy

__all__ = [
    "AnswerGenerator",
    "ConfidenceScorer",
    "OpenAIGenerationProvider",
    "Strategy",
    "StrategyDecision",
    "TurnOrchestrator",
    "TurnResult",
    "score",
    "select_strategy",
]
