"""Embedding providers.

Two implementations share the :class:`EmbeddingProvider` protocol:

- :class:`FastEmbedProvider` runs a multilingual sentence-transformer locally
  through ``fastembed``. The model is loaded lazily so importing this module
  never downloads anything.
- :class:`HuggingFaceEmbeddingProvider` calls the hosted feature-extraction
  pipeline over HTTP with ``requests``. Rate limits and server errors
  (including 503 cold starts) are retried with exponential backoff; auth
  failures are not.

Both raise :class:`ProviderUnavailableError` for transient failures and
:class:`AuthorizationMissingError` for credential problems.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, List, Protocol, Sequence

import requests

from ..core.errors import AuthorizationMissingError, ProviderUnavailableError

logger = logging.getLogger(__name__)

BASE_MODEL_NAME = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"


class EmbeddingProvider(Protocol):
    dimensions: int

    def embed(self, text: str) -> List[float]:
        ...

    def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        ...


class FastEmbedProvider:
    """Local sentence embeddings via ``fastembed.TextEmbedding``."""

    def __init__(self, model_name: str = BASE_MODEL_NAME, *, dimensions: int = 384) -> None:
        self.model_name = model_name
        self.dimensions = dimensions
        self._model: Any = None
        self._lock = threading.Lock()

    def _load(self) -> Any:
        with self._lock:
            if self._model is None:
                from fastembed import TextEmbedding

                try:
                    self._model = TextEmbedding(model_name=self.model_name)
                except ValueError:
                    if self.model_name == BASE_MODEL_NAME:
                        raise
                    logger.warning(
                        "Embedding model %s unavailable, using %s",
                        self.model_name,
                        BASE_MODEL_NAME,
                    )
                    self._model = TextEmbedding(model_name=BASE_MODEL_NAME)
            return self._model

    def embed(self, text: str) -> List[float]:
        return self.embed_many([text])[0]

    def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            model = self._load()
            vectors = [[float(v) for v in vec] for vec in model.embed(list(texts))]
        except (OSError, RuntimeError, ValueError) as exc:
            raise ProviderUnavailableError(f"Local embedding failed: {exc}") from exc
        return vectors


def _as_floats(row: Any) -> List[float]:
    if not isinstance(row, list) or not row:
        raise ValueError("Embedding row is empty")
    values = []
    for value in row:
        # bool is an int subclass but never a valid component.
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"Non-numeric embedding value {value!r}")
        values.append(float(value))
    return values


def _flatten_embedding(data: Any) -> List[float]:
    """Normalise the shapes returned by the feature-extraction pipeline.

    Accepts ``[f, ...]``, ``[[f, ...]]``, token-level ``[[[f, ...], ...]]``
    (mean pooled) and ``{"embeddings": [...]}``. Anything else, including
    empty rows and non-numeric values, raises :class:`ValueError`.
    """

    if isinstance(data, dict) and "embeddings" in data:
        data = data["embeddings"]
    if not isinstance(data, list) or not data:
        raise ValueError(f"Unexpected embedding payload of type {type(data).__name__}")
    while len(data) == 1 and isinstance(data[0], list):
        data = data[0]
    if not data:
        raise ValueError("Embedding payload is empty")
    if isinstance(data[0], list):
        rows = [_as_floats(row) for row in data]
        width = len(rows[0])
        if any(len(row) != width for row in rows):
            raise ValueError("Token embeddings have different widths")
        return [sum(row[i] for row in rows) / len(rows) for i in range(width)]
    return _as_floats(data)


class HuggingFaceEmbeddingProvider:
    """Embeddings from the hosted HuggingFace inference router."""

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str,
        url_template: str,
        dimensions: int,
        timeout: float = 30.0,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.url = url_template.format(model=model)
        self.dimensions = dimensions
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._session = session or requests.Session()
        self._sleep = sleep

    def _retry_delay(self, attempt: int, response: requests.Response | None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return min(float(retry_after), self.timeout)
                except ValueError:
                    pass
        return self.backoff_seconds * (2**attempt)

    def embed(self, text: str) -> List[float]:
        if not self.api_key:
            raise AuthorizationMissingError("HUGGINGFACE_API_KEY is not set")
        headers = {"Authorization": f"Bearer {self.api_key}"}
        payload = {"inputs": text}
        last_error = "no attempt made"
        for attempt in range(self.max_retries + 1):
            response: requests.Response | None = None
            try:
                response = self._session.post(
                    self.url, json=payload, headers=headers, timeout=self.timeout
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code in (401, 403):
                    raise AuthorizationMissingError(
                        f"Embedding API rejected credentials ({response.status_code})"
                    )
                if response.status_code < 400:
                    try:
                        vector = _flatten_embedding(response.json())
                    except (ValueError, TypeError, IndexError) as exc:
                        raise ProviderUnavailableError(
                            f"Invalid embedding response: {exc}"
                        ) from exc
                    if len(vector) != self.dimensions:
                        logger.warning(
                            "Embedding dimensions mismatch: expected %s, got %s",
                            self.dimensions,
                            len(vector),
                        )
                    return vector
                last_error = f"HTTP {response.status_code}"
                if response.status_code not in self.RETRYABLE_STATUS:
                    break
            if attempt < self.max_retries:
                delay = self._retry_delay(attempt, response)
                logger.warning(
                    "Embedding request failed (%s); retrying in %.1fs", last_error, delay
                )
                self._sleep(delay)
        raise ProviderUnavailableError(f"Embedding API unavailable: {last_error}")

    def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        return [self.embed(text) for text in texts]


__all__ = [
    "BASE_MODEL_NAME",
    "EmbeddingProvider",
    "FastEmbedProvider",
    "HuggingFaceEmbeddingProvider",
]
