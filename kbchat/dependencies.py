"""Service wiring for the HTTP app and the CLIs.

:class:`ServiceContainer` builds every collaborator from
:class:`~kbchat.config.AssistantSettings` once per process. Tests construct
the container directly with fakes instead of going through
:meth:`ServiceContainer.from_settings`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request

from .assistant import AnswerGenerator, ConfidenceScorer, TurnOrchestrator
from .assistant.generation import OpenAIGenerationProvider
from .channels import TicketWebhookAdapter, get_adapter
from .config import AssistantSettings, get_settings
from .conversations import ConversationStore, SqlAlchemyConversationStore
from .escalation import (
    AgentReplyRelay,
    EscalationManager,
    InMemoryReplyBroker,
    PostgresReplyBroker,
    ReplyBroker,
    ZohoDeskClient,
)
from .escalation.ticketing import TicketingProvider
from .knowledge import KnowledgeRetriever
from .knowledge.embeddings import (
    EmbeddingProvider,
    FastEmbedProvider,
    HuggingFaceEmbeddingProvider,
)
from .knowledge.index import InMemoryVectorIndex, PgVectorIndex, SimilarityIndex
from .models.session import Database
from .nlp import HandoffIntentMatcher

logger = logging.getLogger(__name__)


def psycopg_conninfo(url: str) -> str:
    """Strip a SQLAlchemy driver suffix so psycopg accepts the URL."""

    for prefix in ("postgresql+psycopg://", "postgres+psycopg://"):
        if url.startswith(prefix):
            return "postgresql://" + url[len(prefix):]
    return url


def build_embedder(settings: AssistantSettings) -> EmbeddingProvider:
    if settings.embedding_backend == "huggingface":
        return HuggingFaceEmbeddingProvider(
            settings.huggingface_api_key,
            model=settings.embedding_model,
            url_template=settings.huggingface_api_url,
            dimensions=settings.embedding_dimensions,
            timeout=settings.provider_timeout_seconds,
            max_retries=settings.provider_max_retries,
        )
    if settings.embedding_backend != "fastembed":
        raise RuntimeError(
            f"Unknown EMBEDDING_BACKEND {settings.embedding_backend!r}; "
            "use 'fastembed' or 'huggingface'."
        )
    return FastEmbedProvider(
        settings.embedding_model, dimensions=settings.embedding_dimensions
    )


def build_index(settings: AssistantSettings) -> SimilarityIndex:
    if settings.knowledge_database_url:
        return PgVectorIndex(
            psycopg_conninfo(settings.knowledge_database_url),
            dimensions=settings.embedding_dimensions,
        )
    logger.warning("KNOWLEDGE_DATABASE_URL not set; using an empty in-memory index")
    return InMemoryVectorIndex()


def build_generator(settings: AssistantSettings) -> AnswerGenerator:
    provider = None
    if settings.openai_api_key:
        provider = OpenAIGenerationProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout=settings.provider_timeout_seconds,
        )
    else:
        logger.info("OPENAI_API_KEY not set; answers are extracted from passages")
    return AnswerGenerator(
        provider,
        temperature=settings.generation_temperature,
        max_tokens=settings.generation_max_tokens,
    )


def build_ticketing(settings: AssistantSettings) -> TicketingProvider | None:
    if not settings.ticketing_configured:
        logger.warning("Zoho Desk credentials missing; human handoff is disabled")
        return None
    return ZohoDeskClient(
        accounts_url=settings.zoho_accounts_url,
        desk_api_url=settings.zoho_desk_api_url,
        client_id=settings.zoho_client_id,
        client_secret=settings.zoho_client_secret,
        refresh_token=settings.zoho_refresh_token,
        org_id=settings.zoho_org_id,
        department_id=settings.zoho_department_id,
        timeout=settings.provider_timeout_seconds,
    )


def build_broker(settings: AssistantSettings) -> ReplyBroker:
    if settings.reply_broker == "postgres":
        url = settings.knowledge_database_url or settings.database_url
        if not url.startswith(("postgres://", "postgresql")):
            raise RuntimeError("REPLY_BROKER=postgres requires a PostgreSQL database URL.")
        return PostgresReplyBroker(psycopg_conninfo(url))
    return InMemoryReplyBroker()


@dataclass
class ServiceContainer:
    """Every long-lived collaborator the API needs, built once."""

    settings: AssistantSettings
    database: Database
    store: ConversationStore
    retriever: KnowledgeRetriever
    orchestrator: TurnOrchestrator
    escalation: EscalationManager
    broker: ReplyBroker
    webhook_adapter: TicketWebhookAdapter
    relay: AgentReplyRelay
    index: SimilarityIndex | None = None

    @classmethod
    def build(
        cls,
        settings: AssistantSettings,
        *,
        database: Database,
        embedder: EmbeddingProvider,
        index: SimilarityIndex,
        generator: AnswerGenerator,
        ticketing: TicketingProvider | None,
        broker: ReplyBroker,
    ) -> "ServiceContainer":
        store = SqlAlchemyConversationStore(database)
        matcher = HandoffIntentMatcher.from_keywords(settings.handoff_keywords)
        retriever = KnowledgeRetriever(
            embedder,
            index,
            similarity_floor=settings.similarity_floor,
            default_limit=settings.retrieval_limit,
        )
        orchestrator = TurnOrchestrator(
            store,
            retriever,
            generator,
            scorer=ConfidenceScorer(
                settings.low_confidence_threshold,
                settings.answer_confidence_threshold,
            ),
            matcher=matcher,
            history_limit=settings.history_limit,
            max_message_length=settings.chat_max_message_length,
        )
        adapter_cls = get_adapter("zoho")
        return cls(
            settings=settings,
            database=database,
            store=store,
            retriever=retriever,
            orchestrator=orchestrator,
            escalation=EscalationManager(store, ticketing, matcher=matcher),
            broker=broker,
            webhook_adapter=adapter_cls(secret=settings.zoho_webhook_secret),
            relay=AgentReplyRelay(store, broker),
            index=index,
        )

    @classmethod
    def from_settings(cls, settings: AssistantSettings | None = None) -> "ServiceContainer":
        settings = settings or get_settings()
        return cls.build(
            settings,
            database=Database(settings.database_url),
            embedder=build_embedder(settings),
            index=build_index(settings),
            generator=build_generator(settings),
            ticketing=build_ticketing(settings),
            broker=build_broker(settings),
        )

    def startup(self) -> None:
        """Connect the store and make sure the schema exists."""

        self.database.connect()
        self.database.create_schema()
        if isinstance(self.index, PgVectorIndex):
            self.index.ensure_schema()

    def shutdown(self) -> None:
        self.database.close()


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container attached by ``create_app``."""

    return request.app.state.container


__all__ = [
    "ServiceContainer",
    "build_broker",
    "build_embedder",
    "build_generator",
    "build_index",
    "build_ticketing",
    "get_container",
    "psycopg_conninfo",
]
