"""Answer Generator and generation providers.

:class:`AnswerGenerator` turns retrieved passages plus conversation history
into a grounded answer. It talks to a :class:`GenerationProvider`; the
bundled :class:`OpenAIGenerationProvider` works with any OpenAI-compatible
endpoint (set ``OPENAI_BASE_URL`` for DeepSeek and similar services). When
no provider is configured the generator falls back to a deterministic
extractive answer so the system stays usable in development and CI without
network access.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Protocol, Sequence, Union

import openai
from openai import OpenAI

from ..conversations.schemas import Citation, Message
from ..core.errors import (
    AssistantError,
    AuthorizationMissingError,
    ProviderRejectedError,
    ProviderUnavailableError,
)
from ..knowledge.models import Passage
from . import prompts

logger = logging.getLogger(__name__)

ChatPayload = List[Dict[str, str]]


class GenerationProvider(Protocol):
    def complete(
        self, messages: ChatPayload, *, temperature: float, max_tokens: int
    ) -> str:
        ...

    def stream(
        self, messages: ChatPayload, *, temperature: float, max_tokens: int
    ) -> Iterator[str]:
        """Yield text deltas; closing the iterator must release the upstream stream."""


def translate_openai_error(exc: Exception) -> AssistantError:
    """Map ``openai`` exceptions onto the kbchat error taxonomy."""

    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthorizationMissingError(f"Generation provider rejected credentials: {exc}")
    if isinstance(
        exc,
        (
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ),
    ):
        return ProviderUnavailableError(f"Generation provider unavailable: {exc}")
    if isinstance(exc, openai.APIStatusError):
        return ProviderRejectedError(f"Generation request rejected: {exc}")
    return ProviderUnavailableError(f"Generation failed: {exc}")


class OpenAIGenerationProvider:
    """Chat completions through the official ``openai`` SDK."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout: float = 30.0,
        client: Any = None,
    ) -> None:
        self.model = model
        self._client = client or OpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=1
        )

    def complete(
        self, messages: ChatPayload, *, temperature: float, max_tokens: int
    ) -> str:
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc
        if not completion.choices:
            return ""
        return (completion.choices[0].message.content or "").strip()

    def stream(
        self, messages: ChatPayload, *, temperature: float, max_tokens: int
    ) -> Iterator[str]:
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc
        try:
            for chunk in response:
                if not chunk.choices:
                    continue
                token = getattr(chunk.choices[0].delta, "content", None)
                if token:
                    yield token
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc
        finally:
            response.close()


# ---------------------------------------------------------------------------
# Answer generator


@dataclass(frozen=True)
class GeneratedAnswer:
    text: str
    citations: List[Citation] = field(default_factory=list)
    used_llm: bool = False


@dataclass(frozen=True)
class AnswerChunk:
    content: str


@dataclass(frozen=True)
class AnswerComplete:
    """Terminal stream item: generated text and the citations block."""

    raw_text: str
    text: str
    citations: List[Citation]
    used_llm: bool


StreamItem = Union[AnswerChunk, AnswerComplete]

_WORDS = re.compile(r"\S+\s*")


def _history_payload(history: Sequence[Message]) -> ChatPayload:
    payload: ChatPayload = []
    for message in history:
        if message.role == "user":
            payload.append({"role": "user", "content": message.content})
        elif message.role == "agent":
            payload.append(
                {"role": "assistant", "content": f"[Support agent] {message.content}"}
            )
        else:
            payload.append({"role": "assistant", "content": message.content})
    return payload


class AnswerGenerator:
    """Grounded answer generation with numbered citations appended."""

    def __init__(
        self,
        provider: GenerationProvider | None,
        *,
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ) -> None:
        self._provider = provider
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def uses_llm(self) -> bool:
        return self._provider is not None

    def build_messages(
        self, history: Sequence[Message], query: str, passages: Sequence[Passage]
    ) -> ChatPayload:
        context = prompts.build_context(passages)
        return [
            {"role": "system", "content": prompts.SYSTEM_PROMPT},
            *_history_payload(history),
            {"role": "user", "content": prompts.build_user_prompt(context, query)},
        ]

    @staticmethod
    def citations_for(passages: Sequence[Passage]) -> List[Citation]:
        seen: set[str] = set()
        citations: List[Citation] = []
        for passage in passages:
            if passage.citation.source_id not in seen:
                seen.add(passage.citation.source_id)
                citations.append(passage.citation)
        return citations

    @staticmethod
    def _extractive_answer(query: str, passages: Sequence[Passage]) -> str:
        if passages:
            return passages[0].content.strip()
        return f"You asked: {query}"

    def generate(
        self, history: Sequence[Message], query: str, passages: Sequence[Passage]
    ) -> GeneratedAnswer:
        """Return the answer text with the sources block appended.

        Provider failures propagate as :class:`AssistantError` subclasses.
        """

        citations = self.citations_for(passages)
        if self._provider is None:
            raw = self._extractive_answer(query, passages)
            used_llm = False
        else:
            raw = self._provider.complete(
                self.build_messages(history, query, passages),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            used_llm = True
        return GeneratedAnswer(
            text=raw + prompts.format_citations(citations),
            citations=citations,
            used_llm=used_llm,
        )

    def stream(
        self, history: Sequence[Message], query: str, passages: Sequence[Passage]
    ) -> Iterator[StreamItem]:
        """Yield :class:`AnswerChunk` items in order, then one :class:`AnswerComplete`.

        Closing this generator early closes the provider stream; no
        :class:`AnswerComplete` is produced in that case.
        """

        citations = self.citations_for(passages)
        if self._provider is None:
            upstream: Iterator[str] = iter(
                _WORDS.findall(self._extractive_answer(query, passages))
            )
            used_llm = False
        else:
            upstream = self._provider.stream(
                self.build_messages(history, query, passages),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            used_llm = True

        parts: List[str] = []
        try:
            for token in upstream:
                if not token:
                    continue
                parts.append(token)
                yield AnswerChunk(token)
        finally:
            close = getattr(upstream, "close", None)
            if close is not None:
                close()
        raw = "".join(parts)
        yield AnswerComplete(
            raw_text=raw,
            text=raw + prompts.format_citations(citations),
            citations=citations,
            used_llm=used_llm,
        )


__all__ = [
    "AnswerChunk",
    "AnswerComplete",
    "AnswerGenerator",
    "GeneratedAnswer",
    "GenerationProvider",
    "OpenAIGenerationProvider",
    "StreamItem",
    "translate_openai_error",
]
