"""Error taxonomy used across providers, stores and the turn orchestrator.

Provider adapters translate library exceptions (``requests``, ``openai``,
``psycopg``, SQLAlchemy) into these classes at their boundary so the rest of
the application never inspects raw third-party errors. Every error carries a
plain-language ``user_message`` that is safe to show to end users.
"""

from __future__ import annotations


class AssistantError(RuntimeError):
    """Base class for all handled kbchat failures."""

    retryable: bool = False
    needs_reauth: bool = False
    user_message: str = (
        "Sorry, something went wrong on our side. Please try again in a moment "
        "or ask to talk to a human."
    )

    def __init__(self, message: str = "", *, user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ProviderUnavailableError(AssistantError):
    """Transient upstream failure (timeout, rate limit, 5xx)."""

    retryable = True
    user_message = (
        "Sorry, the assistant is busy right now. Please try again in a moment "
        "or ask to talk to a human."
    )


class AuthorizationMissingError(AssistantError):
    """Credential absent, expired or lacking the required scope."""

    needs_reauth = True
    user_message = (
        "Sorry, our support desk connection needs to be re-authorized. Your "
        "message was saved; please try again later."
    )


class ProviderRejectedError(AssistantError):
    """Upstream refused the request permanently; retrying will not help."""

    user_message = (
        "Sorry, our support system could not accept this request. Please "
        "contact us through another channel."
    )


class InputValidationError(AssistantError):
    """Malformed caller input, rejected before any side effect."""

    user_message = "Sorry, that request was not valid."


class NotFoundError(AssistantError):
    """Unknown session or ticket identifier."""

    user_message = "Sorry, we could not find that conversation."


class PersistenceError(AssistantError):
    """The conversation store could not durably record data."""

    user_message = (
        "Sorry, we could not save your message. Please try again in a moment."
    )


__all__ = [
    "AssistantError",
    "AuthorizationMissingError",
    "InputValidationError",
    "NotFoundError",
    "PersistenceError",
    "ProviderRejectedError",
    "ProviderUnavailableError",
]
