"""Runtime configuration loaded from environment variables.

All tunables of the answer pipeline (similarity floor, the two confidence
thresholds, the handoff keyword list) live here so they can be adjusted per
deployment without code changes. Settings are cached; tests call
:func:`reset_settings_cache` after changing the environment.
"""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

DEFAULT_HANDOFF_KEYWORDS: tuple[str, ...] = (
    "nói chuyện với người",
    "nói chuyện với nhân viên",
    "gặp nhân viên",
    "human",
    "agent",
    "support agent",
    "speak to someone",
    "talk to human",
    "talk to agent",
    "connect me with",
    "kết nối với",
    "chuyển cho",
)


@dataclasses.dataclass(frozen=True)
class AssistantSettings:
    """Configuration for retrieval, decision thresholds and providers."""

    database_url: str = "sqlite+pysqlite:///./kbchat.db"
    knowledge_database_url: str | None = None

    similarity_floor: float = 0.3
    retrieval_limit: int = 5
    low_confidence_threshold: float = 0.2
    answer_confidence_threshold: float = 0.5
    handoff_keywords: tuple[str, ...] = DEFAULT_HANDOFF_KEYWORDS
    history_limit: int = 20

    embedding_backend: str = "fastembed"
    embedding_model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
    embedding_dimensions: int = 384
    huggingface_api_key: str | None = None
    huggingface_api_url: str = (
        "https://router.huggingface.co/hf-inference/models/{model}/pipeline/feature-extraction"
    )

    openai_api_key: str | None = None
    openai_base_url: str | None = None
    openai_model: str = "gpt-4o-mini"
    generation_temperature: float = 0.7
    generation_max_tokens: int = 2000

    provider_timeout_seconds: float = 30.0
    provider_max_retries: int = 2

    zoho_accounts_url: str = "https://accounts.zoho.com"
    zoho_desk_api_url: str = "https://desk.zoho.com/api/v1"
    zoho_org_id: str | None = None
    zoho_client_id: str | None = None
    zoho_client_secret: str | None = None
    zoho_refresh_token: str | None = None
    zoho_department_id: str | None = None
    zoho_webhook_secret: str | None = None

    reply_broker: str = "memory"
    chat_max_message_length: int = 5000
    chat_rate_limit: str = "20/minute"
    cors_origins: tuple[str, ...] = ()

    @property
    def ticketing_configured(self) -> bool:
        return bool(
            self.zoho_client_id and self.zoho_client_secret and self.zoho_refresh_token
        )


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _csv(name: str) -> tuple[str, ...] | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _optional(name: str) -> str | None:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None


@lru_cache(maxsize=1)
def get_settings() -> AssistantSettings:
    """Load settings from the environment with development defaults."""

    defaults = AssistantSettings()
    low = _float("LOW_CONFIDENCE_THRESHOLD", defaults.low_confidence_threshold)
    answer = _float("ANSWER_CONFIDENCE_THRESHOLD", defaults.answer_confidence_threshold)
    floor = _float("SIMILARITY_FLOOR", defaults.similarity_floor)
    for name, value in (
        ("LOW_CONFIDENCE_THRESHOLD", low),
        ("ANSWER_CONFIDENCE_THRESHOLD", answer),
        ("SIMILARITY_FLOOR", floor),
    ):
        if not 0.0 <= value <= 1.0:
            raise RuntimeError(f"{name} must be between 0 and 1, got {value}")
    if low > answer:
        raise RuntimeError(
            "LOW_CONFIDENCE_THRESHOLD must not exceed ANSWER_CONFIDENCE_THRESHOLD."
        )
    retrieval_limit = _int("RETRIEVAL_LIMIT", defaults.retrieval_limit)
    if retrieval_limit < 1:
        raise RuntimeError("RETRIEVAL_LIMIT must be at least 1.")

    return AssistantSettings(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        knowledge_database_url=_optional("KNOWLEDGE_DATABASE_URL"),
        similarity_floor=floor,
        retrieval_limit=retrieval_limit,
        low_confidence_threshold=low,
        answer_confidence_threshold=answer,
        handoff_keywords=_csv("HANDOFF_KEYWORDS") or defaults.handoff_keywords,
        history_limit=_int("HISTORY_LIMIT", defaults.history_limit),
        embedding_backend=os.getenv("EMBEDDING_BACKEND", defaults.embedding_backend).lower(),
        embedding_model=os.getenv("EMBEDDING_MODEL", defaults.embedding_model),
        embedding_dimensions=_int("EMBEDDING_DIMENSIONS", defaults.embedding_dimensions),
        huggingface_api_key=_optional("HUGGINGFACE_API_KEY"),
        huggingface_api_url=os.getenv("HUGGINGFACE_API_URL", defaults.huggingface_api_url),
        openai_api_key=_optional("OPENAI_API_KEY"),
        openai_base_url=_optional("OPENAI_BASE_URL"),
        openai_model=os.getenv("OPENAI_MODEL", defaults.openai_model),
        generation_temperature=_float("GENERATION_TEMPERATURE", defaults.generation_temperature),
        generation_max_tokens=_int("GENERATION_MAX_TOKENS", defaults.generation_max_tokens),
        provider_timeout_seconds=_float(
            "PROVIDER_TIMEOUT_SECONDS", defaults.provider_timeout_seconds
        ),
        provider_max_retries=_int("PROVIDER_MAX_RETRIES", defaults.provider_max_retries),
        zoho_accounts_url=os.getenv("ZOHO_ACCOUNTS_URL", defaults.zoho_accounts_url),
        zoho_desk_api_url=os.getenv("ZOHO_DESK_API_URL", defaults.zoho_desk_api_url),
        zoho_org_id=_optional("ZOHO_ORG_ID"),
        zoho_client_id=_optional("ZOHO_CLIENT_ID"),
        zoho_client_secret=_optional("ZOHO_CLIENT_SECRET"),
        zoho_refresh_token=_optional("ZOHO_REFRESH_TOKEN"),
        zoho_department_id=_optional("ZOHO_DEPARTMENT_ID"),
        zoho_webhook_secret=_optional("ZOHO_WEBHOOK_SECRET"),
        reply_broker=os.getenv("REPLY_BROKER", defaults.reply_broker).lower(),
        chat_max_message_length=_int(
            "CHAT_MAX_MESSAGE_LENGTH", defaults.chat_max_message_length
        ),
        chat_rate_limit=os.getenv("CHAT_RATE_LIMIT", defaults.chat_rate_limit),
        cors_origins=_csv("CORS_ORIGINS") or (),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = [
    "AssistantSettings",
    "DEFAULT_HANDOFF_KEYWORDS",
    "get_settings",
    "reset_settings_cache",
]
