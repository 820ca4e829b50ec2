import json
import logging
from logging.handlers import TimedRotatingFileHandler

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from kbchat.app_logging import (
    ACCESS_LOGGER_NAME,
    APP_LOGGER_NAME,
    JsonFormatter,
    LogOptions,
    _install_access_logging,
    init_logging,
    mask_sensitive,
)


@pytest.fixture
def loggers(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    touched = [logging.getLogger(APP_LOGGER_NAME), logging.getLogger(ACCESS_LOGGER_NAME)]
    for logger in touched:
        logger.handlers.clear()
    yield touched
    for logger in touched:
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()


def _handoff_app(options: LogOptions) -> FastAPI:
    app = FastAPI()

    @app.post("/api/chat/handoff")
    async def handoff(payload: dict):
        return {"ticket_id": "T-1", "session_id": payload["session_id"]}

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/chat/sessions/{session_id}/events")
    async def events(session_id: str):
        return {"session_id": session_id}

    _install_access_logging(app, options)
    return app


def _rotating(logger: logging.Logger) -> TimedRotatingFileHandler:
    return next(h for h in logger.handlers if isinstance(h, TimedRotatingFileHandler))


def test_options_read_from_environment(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_JSON", "1")
    monkeypatch.setenv("LOG_RETENTION_DAYS", "3")
    options = LogOptions.from_env()
    assert options.level == logging.DEBUG
    assert options.as_json is True
    assert options.retention_days == 3
    assert options.request_bodies is False


def test_both_files_rotate_nightly_with_retention(monkeypatch, loggers):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")
    init_logging()
    for logger in loggers:
        handler = _rotating(logger)
        assert handler.when == "MIDNIGHT"
        assert handler.backupCount == 5


def test_access_logger_output_is_redirected_to_file(loggers):
    _, access_logger = loggers
    console = logging.StreamHandler()
    access_logger.addHandler(console)

    init_logging()

    assert console not in access_logger.handlers
    assert _rotating(access_logger).baseFilename.endswith("access.log")


def test_package_loggers_write_to_app_log(tmp_path, loggers):
    init_logging()
    init_logging()
    app_logger, _ = loggers
    assert len(app_logger.handlers) == 1

    logging.getLogger("kbchat.escalation.relay").warning("agent reply for unmapped ticket T-9")
    app_logger.handlers[0].flush()

    assert "unmapped ticket T-9" in (tmp_path / "app.log").read_text(encoding="utf-8")


def test_mask_sensitive_walks_nested_payloads():
    masked = mask_sensitive(
        {
            "contact": {"Email": "lan@example.com", "name": "Lan"},
            "tokens": [{"refresh_token": "r"}, {"scope": "Desk.tickets.ALL"}],
        }
    )
    assert masked == {
        "contact": {"Email": "***", "name": "Lan"},
        "tokens": [{"refresh_token": "***"}, {"scope": "Desk.tickets.ALL"}],
    }


def test_access_record_masks_contact_and_webhook_secret(caplog):
    app = _handoff_app(LogOptions(request_bodies=True))
    with TestClient(app) as client, caplog.at_level(logging.INFO, logger=ACCESS_LOGGER_NAME):
        resp = client.post(
            "/api/chat/handoff?secret=tok-8f3a91",
            json={"session_id": "s-1", "email": "lan@example.com", "name": "Lan"},
            headers={
                "X-Request-Id": "req-42",
                "X-Zoho-Webhook-Secret": "tok-8f3a91",
                "X-Forwarded-For": "203.0.113.7, 10.0.0.1",
            },
        )

    assert resp.status_code == 200
    assert resp.json()["session_id"] == "s-1"
    assert resp.headers["X-Request-Id"] == "req-42"

    line = caplog.records[0].getMessage()
    record = json.loads(line)
    assert record["request_id"] == "req-42"
    assert record["status"] == 200
    assert record["client_ip"] == "203.0.113.7"
    assert record["body"] == {"session_id": "s-1", "email": "***", "name": "Lan"}
    assert record["query"]["secret"] == "***"
    assert record["headers"]["x-zoho-webhook-secret"] == "***"
    assert "tok-8f3a91" not in line
    assert "lan@example.com" not in line


def test_bodies_are_omitted_unless_enabled(caplog):
    app = _handoff_app(LogOptions())
    with TestClient(app) as client, caplog.at_level(logging.INFO, logger=ACCESS_LOGGER_NAME):
        resp = client.post("/api/chat/handoff", json={"session_id": "s-2"})

    record = json.loads(caplog.records[0].getMessage())
    assert "body" not in record
    assert len(resp.headers["X-Request-Id"]) == 32


def test_probes_and_event_streams_are_not_recorded(caplog):
    app = _handoff_app(LogOptions())
    with TestClient(app) as client, caplog.at_level(logging.INFO, logger=ACCESS_LOGGER_NAME):
        client.get("/api/health")
        client.get("/api/chat/sessions/s-1/events")
    assert caplog.records == []


def test_json_formatter_emits_one_object_per_record():
    record = logging.LogRecord(
        "kbchat.assistant", logging.ERROR, __file__, 1, "generation failed for %s", ("s-1",), None
    )
    payload = json.loads(JsonFormatter().format(record))
    assert payload["level"] == "ERROR"
    assert payload["logger"] == "kbchat.assistant"
    assert payload["message"] == "generation failed for s-1"
