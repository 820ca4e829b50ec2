import pathlib
import sys
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Sequence

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from kbchat.assistant import AnswerGenerator
from kbchat.config import AssistantSettings, reset_settings_cache
from kbchat.core.errors import ProviderUnavailableError
from kbchat.dependencies import ServiceContainer
from kbchat.escalation import InMemoryReplyBroker, TicketContact
from kbchat.knowledge import Article, InMemoryVectorIndex
from kbchat.models.session import Database
from kbchat.rate_limit import limiter

# Three orthogonal topics; query vectors below are placed relative to them.
PASSWORD = [1.0, 0.0, 0.0]
BILLING = [0.0, 1.0, 0.0]
UNKNOWN = [0.0, 0.0, 1.0]
# Cosine 0.4 against both PASSWORD and BILLING: mean confidence 0.4.
AMBIGUOUS = [0.4, 0.4, 0.824621]

QUERY_VECTORS: Dict[str, List[float]] = {
    "How do I reset my password?": PASSWORD,
    "Where can I download my invoice?": BILLING,
    "Tell me about the weather": UNKNOWN,
    "I have a problem with my account": AMBIGUOUS,
}


class FakeEmbedder:
    """Maps known texts to fixed vectors; anything else lands on UNKNOWN."""

    dimensions = 3

    def __init__(self, vectors: Dict[str, List[float]] | None = None):
        self.vectors = dict(QUERY_VECTORS if vectors is None else vectors)
        self.calls: List[str] = []
        self.fail_with: Exception | None = None

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.vectors.get(text, UNKNOWN))

    def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        return [self.embed(text) for text in texts]


class ScriptedGenerationProvider:
    """Generation provider replaying a fixed reply, recording every call."""

    def __init__(self, reply: str = "Open Settings and choose Reset password."):
        self.reply = reply
        self.calls: List[list] = []
        self.fail_with: Exception | None = None
        self.closed = 0

    def complete(self, messages, *, temperature, max_tokens) -> str:
        self.calls.append(messages)
        if self.fail_with is not None:
            raise self.fail_with
        return self.reply

    def stream(self, messages, *, temperature, max_tokens) -> Iterator[str]:
        self.calls.append(messages)
        if self.fail_with is not None:
            raise self.fail_with
        try:
            for word in self.reply.split(" "):
                yield word + " "
        finally:
            self.closed += 1


@dataclass
class FakeTicketing:
    next_id: int = 100
    created: List[dict] = field(default_factory=list)
    replies: List[tuple] = field(default_factory=list)
    create_error: Exception | None = None
    reply_error: Exception | None = None

    def create_ticket(self, subject: str, body: str, contact: TicketContact) -> str:
        if self.create_error is not None:
            raise self.create_error
        ticket_id = f"T-{self.next_id}"
        self.next_id += 1
        self.created.append(
            {"id": ticket_id, "subject": subject, "body": body, "contact": contact}
        )
        return ticket_id

    def post_reply(self, external_id: str, text: str, *, public: bool = True) -> bool:
        if self.reply_error is not None:
            raise self.reply_error
        self.replies.append((external_id, text, public))
        return True


def seed_articles(index: InMemoryVectorIndex) -> None:
    index.upsert_article(
        Article(
            id="kb-1",
            title="Reset your password",
            url="https://help.example.com/reset-password",
            content="Open Settings and choose Reset password.",
        ),
        ["Open Settings, choose Security and click Reset password."],
        [PASSWORD],
    )
    index.upsert_article(
        Article(
            id="kb-2",
            title="Download invoices",
            url="https://help.example.com/invoices",
            content="Invoices are listed under Billing.",
        ),
        ["Invoices are listed under Billing > History."],
        [BILLING],
    )


@dataclass
class Services:
    container: ServiceContainer
    database: Database
    embedder: FakeEmbedder
    index: InMemoryVectorIndex
    provider: ScriptedGenerationProvider
    ticketing: FakeTicketing
    broker: InMemoryReplyBroker


@pytest.fixture
def database(tmp_path) -> Iterator[Database]:
    db = Database(f"sqlite+pysqlite:///{tmp_path / 'kbchat.db'}")
    db.create_schema()
    yield db
    db.close()


@pytest.fixture
def settings() -> AssistantSettings:
    return AssistantSettings(
        database_url="sqlite+pysqlite:///:memory:",
        embedding_dimensions=3,
        zoho_webhook_secret="hook-secret",
    )


@pytest.fixture
def services(database, settings) -> Services:
    embedder = FakeEmbedder()
    index = InMemoryVectorIndex()
    seed_articles(index)
    provider = ScriptedGenerationProvider()
    ticketing = FakeTicketing()
    broker = InMemoryReplyBroker()
    container = ServiceContainer.build(
        settings,
        database=database,
        embedder=embedder,
        index=index,
        generator=AnswerGenerator(provider),
        ticketing=ticketing,
        broker=broker,
    )
    return Services(container, database, embedder, index, provider, ticketing, broker)


@pytest.fixture
def store(services):
    return services.container.store


@pytest.fixture
def client(services, monkeypatch, tmp_path) -> Iterator[TestClient]:
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("CHAT_RATE_LIMIT", "1000/minute")
    reset_settings_cache()
    limiter.reset()
    from kbchat.main import create_app

    app = create_app(services.container)
    with TestClient(app) as test_client:
        yield test_client
    reset_settings_cache()


@pytest.fixture
def unavailable() -> ProviderUnavailableError:
    return ProviderUnavailableError("upstream timed out")
