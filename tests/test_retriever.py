import logging

import pytest

from conftest import AMBIGUOUS, PASSWORD, FakeEmbedder, seed_articles
from kbchat.core.errors import (
    AuthorizationMissingError,
    ProviderRejectedError,
    ProviderUnavailableError,
)
from kbchat.knowledge import Article, InMemoryVectorIndex, KnowledgeRetriever
from kbchat.knowledge.embeddings import HuggingFaceEmbeddingProvider
from kbchat.knowledge.index import cosine_similarity


@pytest.fixture
def index():
    idx = InMemoryVectorIndex()
    seed_articles(idx)
    return idx


def test_cosine_similarity_handles_zero_vectors():
    assert cosine_similarity([0, 0, 0], [1, 0, 0]) == 0.0
    assert cosine_similarity([2, 0, 0], [1, 0, 0]) == pytest.approx(1.0)


def test_retrieve_returns_best_match_first(index):
    retriever = KnowledgeRetriever(FakeEmbedder(), index, similarity_floor=0.3)
    result = retriever.retrieve("How do I reset my password?")
    assert result.titles == ["Reset your password"]
    assert result.similarities == [pytest.approx(1.0)]
    citation = result.citations()[0]
    assert citation.url == "https://help.example.com/reset-password"


def test_floor_removes_weak_matches(index):
    retriever = KnowledgeRetriever(FakeEmbedder(), index, similarity_floor=0.5)
    assert retriever.retrieve("I have a problem with my account").is_empty


def test_mid_similarity_matches_are_kept_above_floor(index):
    retriever = KnowledgeRetriever(FakeEmbedder(), index, similarity_floor=0.3)
    result = retriever.retrieve("I have a problem with my account")
    assert sorted(result.titles) == ["Download invoices", "Reset your password"]
    assert all(s == pytest.approx(0.4, abs=1e-3) for s in result.similarities)


def test_limit_truncates(index):
    index.upsert_article(
        Article(id="kb-3", title="Password rules", url="", content="..."),
        ["Passwords need twelve characters."],
        [[0.9, 0.1, 0.0]],
    )
    retriever = KnowledgeRetriever(FakeEmbedder(), index, similarity_floor=0.0)
    result = retriever.retrieve("How do I reset my password?", limit=2)
    assert result.titles == ["Reset your password", "Password rules"]


def test_empty_index_yields_empty_result():
    retriever = KnowledgeRetriever(FakeEmbedder(), InMemoryVectorIndex())
    assert retriever.retrieve("How do I reset my password?").is_empty


def test_blank_query_skips_embedding(index):
    embedder = FakeEmbedder()
    retriever = KnowledgeRetriever(embedder, index)
    assert retriever.retrieve("   ").is_empty
    assert embedder.calls == []


def test_unavailable_embedder_degrades_to_empty(index, caplog):
    embedder = FakeEmbedder()
    embedder.fail_with = ProviderUnavailableError("503")
    retriever = KnowledgeRetriever(embedder, index)
    with caplog.at_level(logging.WARNING, logger="kbchat.knowledge.retriever"):
        assert retriever.retrieve("How do I reset my password?").is_empty
    assert "degraded" in caplog.text


def test_rejected_credentials_are_logged_as_error(index, caplog):
    embedder = FakeEmbedder()
    embedder.fail_with = AuthorizationMissingError("401")
    retriever = KnowledgeRetriever(embedder, index)
    with caplog.at_level(logging.ERROR, logger="kbchat.knowledge.retriever"):
        assert retriever.retrieve("How do I reset my password?").is_empty
    assert any(r.levelno == logging.ERROR for r in caplog.records)


def test_upsert_replaces_previous_chunks(index):
    article = Article(id="kb-1", title="Reset your password", url="", content="new")
    index.upsert_article(article, ["a", "b"], [PASSWORD, AMBIGUOUS])
    assert index.has_article("kb-1")
    assert len(index) == 3


def test_cosine_similarity_rejects_mismatched_dimensions():
    with pytest.raises(ValueError):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


def test_wrong_dimension_query_degrades_to_empty(index, caplog):
    embedder = FakeEmbedder({"hello": [1.0, 0.0]})
    retriever = KnowledgeRetriever(embedder, index)
    with caplog.at_level(logging.ERROR, logger="kbchat.knowledge.retriever"):
        assert retriever.retrieve("hello").is_empty
    assert "dimensions differ" in caplog.text


def test_rejected_request_degrades_to_empty(index):
    embedder = FakeEmbedder()
    embedder.fail_with = ProviderRejectedError("422 input too long")
    retriever = KnowledgeRetriever(embedder, index)
    assert retriever.retrieve("How do I reset my password?").is_empty


class _JsonResponse:
    status_code = 200
    headers: dict = {}

    def __init__(self, payload):
        self._payload = payload

    def json(self):
        return self._payload


class _OneShotSession:
    def __init__(self, payload):
        self.payload = payload

    def post(self, url, **kwargs):
        return _JsonResponse(self.payload)


@pytest.mark.parametrize("payload", [[[]], [None, None, None], [[0.1, "x", 0.3]]])
def test_malformed_embedding_payload_degrades_to_empty(index, payload):
    embedder = HuggingFaceEmbeddingProvider(
        "hf-key",
        model="org/model",
        url_template="https://hf.test/{model}",
        dimensions=3,
        session=_OneShotSession(payload),
    )
    retriever = KnowledgeRetriever(embedder, index)
    assert retriever.retrieve("hello").is_empty
