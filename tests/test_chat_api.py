import asyncio
import json
import threading
import time

import pytest
from fastapi import FastAPI

from kbchat.config import reset_settings_cache
from kbchat.core.errors import PersistenceError
from kbchat.knowledge import InMemoryVectorIndex
from kbchat.rate_limit import limiter
from kbchat.routers import chat


def _parse_sse(body: str):
    events = []
    for block in body.split("\n\n"):
        lines = [line for line in block.splitlines() if line and not line.startswith(":")]
        if not lines:
            continue
        name = lines[0].split(": ", 1)[1]
        data = json.loads(lines[1].split(": ", 1)[1])
        events.append((name, data))
    return events


def test_chat_turn_direct_answer(client):
    resp = client.post("/api/chat", json={"message": "How do I reset my password?"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["strategy"] == "direct_answer"
    assert body["requires_human"] is False
    assert body["citations"][0]["source_id"] == "kb-1"
    assert body["session_id"]


def test_chat_turn_empty_index_requests_handoff(client, services):
    services.container.retriever._index = InMemoryVectorIndex()
    body = client.post("/api/chat", json={"message": "How do I reset my password?"}).json()
    assert body["requires_human"] is True
    assert body["reason"] == "low confidence - 0%"
    assert body["confidence"] == 0.0


def test_chat_turn_rejects_blank_message(client):
    resp = client.post("/api/chat", json={"message": "   "})
    assert resp.status_code == 400
    assert resp.json()["errors"]


def test_chat_turn_rejects_overlong_message(client):
    resp = client.post("/api/chat", json={"message": "x" * 5001})
    assert resp.status_code == 400
    assert resp.json()["retryable"] is False


def test_chat_turn_unknown_session(client):
    resp = client.post("/api/chat", json={"message": "hi", "session_id": "missing"})
    assert resp.status_code == 404


def test_chat_stream_emits_chunks_then_done(client, store):
    resp = client.post("/api/chat/stream", json={"message": "How do I reset my password?"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")

    events = _parse_sse(resp.text)
    names = [name for name, _ in events]
    assert names[-1] == "done"
    assert set(names[:-1]) == {"chunk"}

    done = events[-1][1]
    text = "".join(data["content"] for name, data in events if name == "chunk")
    stored = store.history(done["session_id"])[-1]
    assert stored.id == done["message_id"]
    assert stored.content.startswith(text)
    assert done["strategy"] == "direct_answer"
    assert done["citations"][0]["url"] == "https://help.example.com/reset-password"


def test_chat_stream_reports_generation_failure(client, services, unavailable):
    services.provider.fail_with = unavailable
    resp = client.post("/api/chat/stream", json={"message": "How do I reset my password?"})
    events = _parse_sse(resp.text)
    assert [name for name, _ in events] == ["error"]
    assert events[0][1]["retryable"] is True


def test_chat_stream_validation_happens_before_streaming(client):
    resp = client.post("/api/chat/stream", json={"message": "hi", "session_id": "missing"})
    assert resp.status_code == 404
    assert resp.headers["content-type"].startswith("application/json")


def test_session_creation_and_history(client):
    resp = client.post(
        "/api/chat/sessions",
        json={"name": "Lan", "email": "lan@example.com", "message": "Please call me"},
    )
    assert resp.status_code == 200
    session_id = resp.json()["session_id"]

    history = client.get(f"/api/chat/sessions/{session_id}/messages").json()
    assert history["session_id"] == session_id
    assert [(m["role"], m["content"]) for m in history["items"]] == [("user", "Please call me")]
    assert history["items"][0]["requires_human"] is True


def test_session_creation_rejects_bad_email(client):
    resp = client.post("/api/chat/sessions", json={"email": "not-an-email"})
    assert resp.status_code == 400


def test_history_limit_and_unknown_session(client):
    session_id = client.post("/api/chat", json={"message": "How do I reset my password?"}).json()[
        "session_id"
    ]
    limited = client.get(f"/api/chat/sessions/{session_id}/messages", params={"limit": 1}).json()
    assert [m["role"] for m in limited["items"]] == ["assistant"]
    assert client.get("/api/chat/sessions/missing/messages").status_code == 404
    assert client.get("/api/chat/sessions/missing/events").status_code == 404


def test_handoff_is_idempotent_over_http(client, services):
    session_id = client.post("/api/chat", json={"message": "I want to talk to a human"}).json()[
        "session_id"
    ]
    first = client.post(
        "/api/chat/handoff",
        json={"session_id": session_id, "name": "Lan", "email": "lan@example.com"},
    )
    second = client.post("/api/chat/handoff", json={"session_id": session_id})

    assert first.status_code == 200
    assert first.json() == {"ticket_id": "T-100", "already_existed": False}
    assert second.json() == {"ticket_id": "T-100", "already_existed": True}
    assert len(services.ticketing.created) == 1


def test_handoff_without_reason_keeps_low_confidence_reason(client, services, store):
    turn = client.post("/api/chat", json={"message": "Tell me about the weather"}).json()
    assert turn["reason"] == "low confidence - 0%"

    resp = client.post("/api/chat/handoff", json={"session_id": turn["session_id"]})

    assert resp.status_code == 200
    assert store.get_ticket_for_session(turn["session_id"]).reason == "low confidence - 0%"
    assert "Handoff reason: low confidence - 0%" in services.ticketing.created[0]["body"]


def test_handoff_upstream_outage_is_retryable(client, services, unavailable):
    session_id = client.post("/api/chat/sessions", json={}).json()["session_id"]
    services.ticketing.create_error = unavailable
    resp = client.post("/api/chat/handoff", json={"session_id": session_id})
    assert resp.status_code == 503
    assert resp.json()["retryable"] is True
    assert "upstream timed out" not in resp.json()["detail"]


def test_relay_message_over_http(client, services):
    session_id = client.post("/api/chat/sessions", json={}).json()["session_id"]
    client.post("/api/chat/handoff", json={"session_id": session_id})

    resp = client.post(
        "/api/chat/handoff/message", json={"session_id": session_id, "message": "Any news?"}
    )
    assert resp.json() == {"ok": True, "ticket_id": "T-100", "needs_reauth": False, "error": None}
    assert services.ticketing.replies == [("T-100", "Any news?", True)]


def test_relay_without_ticket_is_not_found(client):
    session_id = client.post("/api/chat/sessions", json={}).json()["session_id"]
    resp = client.post(
        "/api/chat/handoff/message", json={"session_id": session_id, "message": "Hello"}
    )
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Webhooks

HEADERS = {"x-zoho-webhook-secret": "hook-secret"}


def test_webhook_for_unmapped_ticket_is_acknowledged(client):
    resp = client.post(
        "/api/webhooks/zoho", json={"ticketId": "T-404", "content": "Hi"}, headers=HEADERS
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "unmapped"


def test_webhook_delivers_agent_reply(client, store):
    session_id = client.post("/api/chat/sessions", json={}).json()["session_id"]
    client.post("/api/chat/handoff", json={"session_id": session_id})

    resp = client.post(
        "/api/webhooks/zoho?secret=hook-secret",
        json={"data": {"ticket": {"id": "T-100"}, "content": "<p>We fixed it.</p>"}},
    )
    body = resp.json()
    assert body["status"] == "delivered"
    assert body["session_id"] == session_id

    last = store.history(session_id)[-1]
    assert (last.role, last.content) == ("agent", "We fixed it.")


def test_webhook_accepts_form_encoded_payload(client, store):
    session_id = client.post("/api/chat/sessions", json={}).json()["session_id"]
    client.post("/api/chat/handoff", json={"session_id": session_id})
    resp = client.post(
        "/api/webhooks/zoho",
        data={"ticketId": "T-100", "content": "Thanks for waiting"},
        headers=HEADERS,
    )
    assert resp.json()["status"] == "delivered"


def test_webhook_rejects_bad_secret(client):
    resp = client.post(
        "/api/webhooks/zoho",
        json={"ticketId": "T-100", "content": "x"},
        headers={"x-zoho-webhook-secret": "wrong"},
    )
    assert resp.status_code == 401


def test_webhook_storage_failure_still_acknowledged(client, services, monkeypatch):
    def _boom(reply):
        raise PersistenceError("disk full")

    monkeypatch.setattr(services.container.relay, "deliver", _boom)
    resp = client.post(
        "/api/webhooks/zoho", json={"ticketId": "T-1", "content": "x"}, headers=HEADERS
    )
    assert resp.status_code == 200
    assert resp.json()["ok"] is False
    assert resp.json()["status"] == "failed"


@pytest.mark.parametrize("method", ["get", "head"])
def test_webhook_validation_probe(client, method):
    resp = getattr(client, method)("/api/webhooks/zoho")
    assert resp.status_code == 200
    assert client.get("/api/webhooks/freshdesk").status_code == 404


def test_webhook_invalid_json_is_acknowledged(client):
    resp = client.post(
        "/api/webhooks/zoho",
        content=b"not json",
        headers={**HEADERS, "content-type": "application/json"},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "unmapped"


def _first_event_only(broker):
    """Wrap ``broker.listen`` so an event stream ends after one delivery."""

    real_listen = broker.listen

    async def listen(session_id):
        listener = real_listen(session_id)
        try:
            yield await asyncio.wait_for(listener.__anext__(), timeout=5)
        finally:
            await listener.aclose()

    return listen


def test_agent_reply_is_pushed_to_live_listener(client, services, store, monkeypatch):
    session_id = client.post("/api/chat/sessions", json={}).json()["session_id"]
    client.post("/api/chat/handoff", json={"session_id": session_id})
    broker = services.broker
    monkeypatch.setattr(broker, "listen", _first_event_only(broker))
    webhook_status = []

    def agent_replies():
        deadline = time.monotonic() + 5
        while broker.subscriber_count(session_id) == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        resp = client.post(
            "/api/webhooks/zoho",
            json={"ticketId": "T-100", "content": "Hello from support"},
            headers=HEADERS,
        )
        webhook_status.append(resp.json()["status"])

    agent = threading.Thread(target=agent_replies)
    agent.start()
    resp = client.get(f"/api/chat/sessions/{session_id}/events")
    agent.join(timeout=5)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.text.startswith(": keep-alive")
    assert webhook_status == ["delivered"]

    events = _parse_sse(resp.text)
    assert [name for name, _ in events] == ["agent_message"]
    message = events[0][1]["message"]
    stored = store.history(session_id)[-1]
    assert message["id"] == stored.id
    assert (message["role"], message["content"]) == ("agent", "Hello from support")


def test_client_disconnect_mid_stream_persists_no_reply(services, store, monkeypatch):
    monkeypatch.setenv("CHAT_RATE_LIMIT", "1000/minute")
    reset_settings_cache()
    limiter.reset()
    app = FastAPI()
    app.state.container = services.container
    app.state.limiter = limiter
    app.include_router(chat.router)

    session_id = store.create_session()
    body = json.dumps(
        {"message": "How do I reset my password?", "session_id": session_id}
    ).encode()
    received = []
    sent = []

    async def receive():
        received.append(True)
        if len(received) == 1:
            return {"type": "http.request", "body": body, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)

    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/chat/stream",
        "raw_path": b"/api/chat/stream",
        "root_path": "",
        "query_string": b"",
        "headers": [(b"host", b"testserver"), (b"content-type", b"application/json")],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    try:
        asyncio.run(app(scope, receive, send))
    finally:
        reset_settings_cache()

    streamed = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
    assert b"event: done" not in streamed
    assert [m.role for m in store.history(session_id)] == ["user"]


# ---------------------------------------------------------------------------
# Misc endpoints


def test_health_version_and_config(client):
    assert client.get("/api/health").json() == {"status": "ok"}
    version = client.get("/api/version").json()
    assert set(version) == {"version", "build_date", "commit_sha"}
    config = client.get("/api/config").json()
    assert config["HANDOFF_ENABLED"] is True
    assert config["CHAT_MAX_MESSAGE_LENGTH"] == 5000
    assert "LOW_CONFIDENCE_THRESHOLD" not in config


def test_metrics_endpoint(client):
    client.get("/api/health")
    resp = client.get("/api/metrics")
    assert resp.status_code == 200
    assert "http_request" in resp.text
