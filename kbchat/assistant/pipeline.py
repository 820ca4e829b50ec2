"""Turn orchestration: retrieve, score, decide, respond, persist.

Every user turn is an independent unit of work against the Conversation
Store. :meth:`TurnOrchestrator.prepare` performs the steps shared by the
blocking and streaming variants (validation, session resolution, persisting
the user message, retrieval and the strategy decision). :meth:`respond` and
:meth:`stream` then produce the reply.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterator, List, Union

from ..conversations.repository import ConversationStore
from ..conversations.schemas import Citation, Message, NewMessage
from ..core.errors import AssistantError, InputValidationError, NotFoundError
from ..knowledge.models import RetrievalResult
from ..knowledge.retriever import KnowledgeRetriever
from ..nlp import HandoffIntentMatcher, detect_language
from . import prompts
from .generation import AnswerChunk, AnswerComplete, AnswerGenerator
from .scoring import ConfidenceScorer
from .strategy import Strategy, StrategyDecision, select_strategy

logger = logging.getLogger(__name__)

_WORDS = re.compile(r"\S+\s*")


@dataclass
class PreparedTurn:
    session_id: str
    message: str
    language: str
    history: List[Message]
    retrieval: RetrievalResult
    confidence: float
    decision: StrategyDecision


@dataclass
class TurnResult:
    session_id: str
    response: str
    citations: List[Citation]
    confidence: float
    strategy: Strategy
    reason: str | None = None
    message_id: int | None = None
    degraded: bool = False

    @property
    def requires_human(self) -> bool:
        return self.strategy is Strategy.HANDOFF

    @property
    def clarification_needed(self) -> bool:
        return self.strategy is Strategy.CLARIFY


@dataclass(frozen=True)
class TurnChunk:
    content: str


@dataclass(frozen=True)
class TurnDone:
    session_id: str
    citations: List[Citation]
    confidence: float
    strategy: Strategy
    reason: str | None = None
    message_id: int | None = None


@dataclass(frozen=True)
class TurnFailed:
    session_id: str
    message: str
    retryable: bool = True


TurnEvent = Union[TurnChunk, TurnDone, TurnFailed]


@dataclass
class _CannedReply:
    text: str
    citations: List[Citation] = field(default_factory=list)


class TurnOrchestrator:
    """Runs a single conversational turn end to end."""

    def __init__(
        self,
        store: ConversationStore,
        retriever: KnowledgeRetriever,
        generator: AnswerGenerator,
        *,
        scorer: ConfidenceScorer | None = None,
        matcher: HandoffIntentMatcher | None = None,
        history_limit: int = 20,
        max_message_length: int = 5000,
    ) -> None:
        self._store = store
        self._retriever = retriever
        self._generator = generator
        self._scorer = scorer or ConfidenceScorer()
        self._matcher = matcher or HandoffIntentMatcher()
        self.history_limit = history_limit
        self.max_message_length = max_message_length

    # ------------------------------------------------------------------
    # Shared preparation

    def prepare(
        self,
        message: str,
        *,
        session_id: str | None = None,
        user_id: str | None = None,
    ) -> PreparedTurn:
        """Validate input, persist the user message and decide the strategy.

        Raises :class:`InputValidationError`, :class:`NotFoundError` or
        :class:`PersistenceError` before any reply is produced.
        """

        text = (message or "").strip()
        if not text:
            raise InputValidationError("Message is required")
        if len(text) > self.max_message_length:
            raise InputValidationError("Message too long")

        if session_id:
            if self._store.get_session(session_id) is None:
                raise NotFoundError(f"Unknown session {session_id}")
        else:
            session_id = self._store.create_session(user_id=user_id)

        history = self._store.history(session_id, limit=self.history_limit)
        self._store.append_message(session_id, NewMessage(role="user", content=text))

        retrieval = self._retriever.retrieve(text)
        confidence = self._scorer.score(retrieval)
        decision = select_strategy(
            confidence, text, thresholds=self._scorer, matcher=self._matcher
        )
        logger.info(
            "Turn session=%s strategy=%s confidence=%.3f passages=%d",
            session_id,
            decision.strategy.value,
            confidence,
            len(retrieval.passages),
        )
        return PreparedTurn(
            session_id=session_id,
            message=text,
            language=detect_language(text),
            history=history,
            retrieval=retrieval,
            confidence=confidence,
            decision=decision,
        )

    def _canned_reply(self, turn: PreparedTurn) -> _CannedReply:
        if turn.decision.strategy is Strategy.HANDOFF:
            return _CannedReply(prompts.handoff_reply(turn.language))
        return _CannedReply(
            prompts.clarifying_question(turn.retrieval.titles, turn.language),
            turn.retrieval.citations(),
        )

    def _persist_reply(
        self, turn: PreparedTurn, text: str, citations: List[Citation]
    ) -> int:
        return self._store.append_message(
            turn.session_id,
            NewMessage(
                role="assistant",
                content=text,
                citations=citations,
                confidence=turn.confidence,
                requires_human=turn.decision.requires_human,
            ),
        )

    # ------------------------------------------------------------------
    # Blocking variant

    def submit_turn(
        self,
        message: str,
        *,
        session_id: str | None = None,
        user_id: str | None = None,
    ) -> TurnResult:
        return self.respond(
            self.prepare(message, session_id=session_id, user_id=user_id)
        )

    def respond(self, turn: PreparedTurn) -> TurnResult:
        degraded = False
        if turn.decision.strategy is Strategy.DIRECT_ANSWER:
            try:
                answer = self._generator.generate(
                    turn.history, turn.message, turn.retrieval.passages
                )
                text, citations = answer.text, answer.citations
            except AssistantError as exc:
                logger.warning(
                    "Answer generation failed for session %s: %s", turn.session_id, exc
                )
                text, citations = prompts.generation_apology(turn.language), []
                degraded = True
        else:
            reply = self._canned_reply(turn)
            text, citations = reply.text, reply.citations

        message_id = self._persist_reply(turn, text, citations)
        return TurnResult(
            session_id=turn.session_id,
            response=text,
            citations=citations,
            confidence=turn.confidence,
            strategy=turn.decision.strategy,
            reason=turn.decision.reason,
            message_id=message_id,
            degraded=degraded,
        )

    # ------------------------------------------------------------------
    # Streaming variant

    def stream_turn(
        self,
        message: str,
        *,
        session_id: str | None = None,
        user_id: str | None = None,
    ) -> Iterator[TurnEvent]:
        return self.stream(self.prepare(message, session_id=session_id, user_id=user_id))

    def stream(self, turn: PreparedTurn) -> Iterator[TurnEvent]:
        """Yield :class:`TurnChunk` items followed by one terminal event.

        The reply is persisted only after the last chunk, and before the
        terminal :class:`TurnDone`. Closing the iterator early closes the
        provider stream and persists nothing.
        """

        if turn.decision.strategy is not Strategy.DIRECT_ANSWER:
            reply = self._canned_reply(turn)
            for piece in _WORDS.findall(reply.text):
                yield TurnChunk(piece)
            message_id = self._persist_reply(turn, reply.text, reply.citations)
            yield self._done(turn, reply.citations, message_id)
            return

        answer_stream = self._generator.stream(
            turn.history, turn.message, turn.retrieval.passages
        )
        complete: AnswerComplete | None = None
        try:
            for item in answer_stream:
                if isinstance(item, AnswerChunk):
                    yield TurnChunk(item.content)
                else:
                    complete = item
        except AssistantError as exc:
            logger.warning(
                "Streaming generation failed for session %s: %s", turn.session_id, exc
            )
            apology = prompts.generation_apology(turn.language)
            self._persist_reply(turn, apology, [])
            yield TurnFailed(turn.session_id, apology, retryable=exc.retryable)
            return
        finally:
            answer_stream.close()

        if complete is None:
            return
        message_id = self._persist_reply(turn, complete.text, complete.citations)
        yield self._done(turn, complete.citations, message_id)

    @staticmethod
    def _done(
        turn: PreparedTurn, citations: List[Citation], message_id: int
    ) -> TurnDone:
        return TurnDone(
            session_id=turn.session_id,
            citations=citations,
            confidence=turn.confidence,
            strategy=turn.decision.strategy,
            reason=turn.decision.reason,
            message_id=message_id,
        )


__all__ = [
    "PreparedTurn",
    "TurnChunk",
    "TurnDone",
    "TurnEvent",
    "TurnFailed",
    "TurnOrchestrator",
    "TurnResult",
]
