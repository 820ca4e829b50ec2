"""Logging for the kbchat service.

Two rotating files are written under ``LOG_DIR``:

``app.log``
    Everything logged below the ``kbchat`` package logger (retrieval
    fallbacks, escalations, webhook outcomes).
``access.log``
    One JSON line per HTTP request, emitted on the ``uvicorn.access`` logger
    by the middleware installed here.

Access records carry contact details from handoff requests and the shared
secret used by ticketing webhooks, so headers, query parameters and bodies
are masked before they are written. Long-lived SSE responses and probe
endpoints are not recorded.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request

from .rate_limit import get_client_ip

APP_LOGGER_NAME = "kbchat"
ACCESS_LOGGER_NAME = "uvicorn.access"

MASK = "***"
MASKED_KEYS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "password",
        "token",
        "access_token",
        "refresh_token",
        "client_secret",
        "email",
        "secret",
        "x-zoho-webhook-secret",
    }
)
UNLOGGED_PATHS = frozenset({"/api/health", "/api/metrics", "/api/chat/stream"})


def _flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class LogOptions:
    directory: str = "logs"
    level: int = logging.INFO
    as_json: bool = False
    request_bodies: bool = False
    retention_days: int = 7
    rotate_utc: bool = False

    @classmethod
    def from_env(cls) -> "LogOptions":
        level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
        return cls(
            directory=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, level_name, logging.INFO),
            as_json=_flag("LOG_JSON"),
            request_bodies=_flag("LOG_REQUEST_BODIES"),
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=_flag("LOG_ROTATE_UTC"),
        )


class JsonFormatter(logging.Formatter):
    """Render records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _formatter(options: LogOptions) -> logging.Formatter:
    if options.as_json:
        return JsonFormatter()
    return logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")


def _rotating_handler(options: LogOptions, filename: str) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        os.path.join(options.directory, filename),
        when="midnight",
        backupCount=options.retention_days,
        utc=options.rotate_utc,
        encoding="utf-8",
    )
    handler.setFormatter(_formatter(options))
    return handler


def mask_sensitive(data: object) -> object:
    """Return ``data`` with sensitive mapping keys replaced by ``***``."""

    if isinstance(data, dict):
        return {
            key: MASK if str(key).lower() in MASKED_KEYS else mask_sensitive(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [mask_sensitive(item) for item in data]
    return data


def _is_unlogged(path: str) -> bool:
    return path in UNLOGGED_PATHS or path.endswith("/events")


async def _read_body(request: Request) -> object | None:
    """Read and mask the request body, replaying it for the route handler."""

    raw = await request.body()

    async def replay() -> dict:
        return {"type": "http.request", "body": raw, "more_body": False}

    request._receive = replay  # type: ignore[attr-defined]
    if not raw:
        return None
    try:
        return mask_sensitive(json.loads(raw))
    except ValueError:
        return raw.decode("utf-8", errors="replace")


def _access_record(
    request: Request, status: int, started: float, request_id: str
) -> dict[str, Any]:
    return {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "query": mask_sensitive(dict(request.query_params)),
        "status": status,
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "client_ip": get_client_ip(request),
        "headers": mask_sensitive(dict(request.headers)),
    }


def _install_access_logging(app: FastAPI, options: LogOptions | None = None) -> None:
    """Attach the access-log middleware to ``app``.

    Each recorded request gets an ``X-Request-Id`` (the caller's, when sent)
    that is exposed on ``request.state`` and echoed in the response.
    """

    options = options or LogOptions.from_env()
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        if _is_unlogged(request.url.path):
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        body = await _read_body(request) if options.request_bodies else None

        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id

        record = _access_record(request, response.status_code, started, request_id)
        if body is not None:
            record["body"] = body
        access_logger.info(json.dumps(record, default=str, ensure_ascii=False))
        return response


def init_logging(app: FastAPI | None = None) -> None:
    """Configure the package and access loggers, then instrument ``app``."""

    options = LogOptions.from_env()
    os.makedirs(options.directory, exist_ok=True)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    # Handlers survive repeated create_app() calls; add the file once.
    if not any(isinstance(h, TimedRotatingFileHandler) for h in app_logger.handlers):
        app_logger.addHandler(_rotating_handler(options, "app.log"))
    app_logger.setLevel(options.level)

    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    access_logger.handlers.clear()
    access_logger.addHandler(_rotating_handler(options, "access.log"))
    access_logger.setLevel(options.level)

    if app is not None:
        _install_access_logging(app, options)


__all__ = [
    "APP_LOGGER_NAME",
    "JsonFormatter",
    "LogOptions",
    "init_logging",
    "mask_sensitive",
]
