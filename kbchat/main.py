"""FastAPI application wiring for kbchat.

This module bootstraps the HTTP API behind the embeddable chat widget:

- Configures logging, optional CORS for the widget origins, Prometheus
  metrics and per-IP rate limiting.
- Mounts the chat, handoff and webhook routers on top of a
  :class:`~kbchat.dependencies.ServiceContainer`.
- Maps the :class:`~kbchat.core.errors.AssistantError` taxonomy to HTTP
  status codes with plain-language bodies, so clients never see raw
  exception text.

``create_app`` accepts a prebuilt container, which is how the tests inject
fakes; the module-level ``app`` builds its container from the environment on
startup.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .config import get_settings
from .core.errors import (
    AssistantError,
    AuthorizationMissingError,
    InputValidationError,
    NotFoundError,
    PersistenceError,
    ProviderRejectedError,
    ProviderUnavailableError,
)
from .dependencies import ServiceContainer
from .rate_limit import limiter
from .routers import chat, handoff, webhooks

load_dotenv()

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[AssistantError], int], ...] = (
    (InputValidationError, 400),
    (NotFoundError, 404),
    (ProviderUnavailableError, 503),
    (AuthorizationMissingError, 502),
    (ProviderRejectedError, 502),
    (PersistenceError, 500),
)


def error_status(exc: AssistantError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return 500


async def assistant_error_handler(request: Request, exc: AssistantError) -> JSONResponse:
    """Translate handled failures into JSON responses."""
    status_code = error_status(exc)
    log = logger.error if status_code >= 500 else logger.info
    log("%s %s failed with %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.user_message,
            "retryable": exc.retryable,
            "needs_reauth": exc.needs_reauth,
        },
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed payloads are answered with 400 like other invalid input."""
    return JSONResponse(
        status_code=400,
        content={
            "detail": InputValidationError.user_message,
            "errors": jsonable_encoder(exc.errors()),
        },
    )


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Build the FastAPI application.

    When ``container`` is omitted one is created from the environment during
    startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "container", None) is None:
            app.state.container = ServiceContainer.from_settings()
        app.state.container.startup()
        logger.info("kbchat %s started", __version__)
        try:
            yield
        finally:
            app.state.container.shutdown()

    app = FastAPI(title="kbchat", version=__version__, lifespan=lifespan)
    app.state.container = container
    init_logging(app)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(AssistantError, assistant_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Optional CORS for the embeddable widget
    settings = container.settings if container is not None else get_settings()
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(chat.router)
    app.include_router(handoff.router)
    app.include_router(webhooks.router)

    @app.get("/api/health")
    async def health():
        """Liveness/readiness probe with a minimal JSON body."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version():
        """Return version information for the application."""
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    @app.get("/api/config")
    async def config(request: Request):
        """Expose widget configuration. Decision thresholds stay private."""
        current = request.app.state.container
        return {
            "BRAND_NAME": os.getenv("BRAND_NAME", "Help Center"),
            "POWERED_BY_LABEL": os.getenv("POWERED_BY_LABEL", "Powered by kbchat"),
            "LOGO_URL": os.getenv("LOGO_URL", ""),
            "CHAT_MAX_MESSAGE_LENGTH": current.settings.chat_max_message_length,
            "HANDOFF_ENABLED": current.escalation.enabled,
        }

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )
    return app


app = create_app()

__all__ = ["app", "create_app", "error_status"]
