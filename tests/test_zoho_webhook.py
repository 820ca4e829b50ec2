import pytest

from kbchat.channels import get_adapter
from kbchat.channels.zoho import (
    ZohoDeskWebhookAdapter,
    clean_agent_html,
    extract_body,
    extract_ticket_id,
)


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"ticketId": "T-100"}, "T-100"),
        ({"ticket_id": 12345}, "12345"),
        ({"ticket": {"id": "T-7"}}, "T-7"),
        ({"data": {"ticket": {"id": "T-8"}}}, "T-8"),
        ({"payload": [{"event": {"resourceId": "T-9"}}]}, "T-9"),
        ({"id": "T-1", "ticketId": "T-2"}, "T-2"),
        ({"ticketId": True}, None),
        ({"nothing": "here"}, None),
        ([], None),
    ],
)
def test_extract_ticket_id(payload, expected):
    assert extract_ticket_id(payload) == expected


def test_deep_search_is_bounded():
    payload = {"a": {"b": {"c": {"ticketId": "T-deep"}}}}
    assert extract_ticket_id(payload) == "T-deep"
    assert extract_ticket_id(payload, max_depth=1) is None


def test_extract_body_prefers_known_paths():
    assert extract_body({"content": "<p>Hi</p>", "text": "other"}) == "<p>Hi</p>"
    assert extract_body({"data": {"thread": {"plainText": "Hello"}}}) == "Hello"
    assert extract_body({"events": [{"payload": {"summary": "Deep"}}]}) == "Deep"
    assert extract_body({"events": [{"payload": {"summary": "x"}}]}) == ""
    assert extract_body({"content": "   "}) == ""


def test_clean_agent_html_drops_quotes_and_markup():
    raw = (
        "<div>Hello&nbsp;Lan,<br>Your password is reset.</div>"
        "<blockquote>old stuff</blockquote>"
        "<div id=\"ZDeskInteg\">integration</div>"
        "---- On Mon, 1 Jan Lan wrote ----<div>previous message</div>"
    )
    assert clean_agent_html(raw) == "Hello Lan,\nYour password is reset."


def test_clean_agent_html_plain_text_and_survey():
    assert clean_agent_html("  Fish &amp; chips  ") == "Fish & chips"
    raw = (
        "<p>Thanks!</p>"
        '<div title="survey_holder::start">rate us</div>'
        '<div title="survey_holder::end">end</div>'
    )
    assert clean_agent_html(raw) == "Thanks!"


def test_parse_incoming():
    adapter = ZohoDeskWebhookAdapter()
    reply = adapter.parse_incoming({"ticketId": "T-100", "content": "<p>Done</p>"})
    assert reply.ticket_id == "T-100"
    assert reply.body == "Done"


def test_verify_request_accepts_header_or_query():
    adapter = ZohoDeskWebhookAdapter(secret="hook-secret")
    assert adapter.verify_request({"x-zoho-webhook-secret": "hook-secret"}, {})
    assert adapter.verify_request({}, {"secret": "hook-secret"})
    assert not adapter.verify_request({"x-zoho-webhook-secret": "nope"}, {})
    assert not adapter.verify_request({}, {})


def test_verify_request_without_secret_is_open():
    assert ZohoDeskWebhookAdapter().verify_request({}, {})


def test_registry_knows_zoho():
    assert get_adapter("zoho") is ZohoDeskWebhookAdapter
    with pytest.raises(KeyError):
        get_adapter("freshdesk")
