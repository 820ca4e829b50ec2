import pytest

from kbchat.assistant import prompts
from kbchat.assistant.pipeline import TurnChunk, TurnDone, TurnFailed
from kbchat.assistant.strategy import Strategy
from kbchat.core.errors import InputValidationError, NotFoundError
from kbchat.knowledge import InMemoryVectorIndex


@pytest.fixture
def orchestrator(services):
    return services.container.orchestrator


def test_empty_knowledge_base_hands_off(services, store):
    services.container.retriever._index = InMemoryVectorIndex()
    result = services.container.orchestrator.submit_turn("How do I reset my password?")

    assert result.strategy is Strategy.HANDOFF
    assert result.requires_human
    assert result.reason == "low confidence - 0%"
    assert result.confidence == 0.0
    assert result.citations == []
    assert result.response == prompts.handoff_reply("en")
    assert services.provider.calls == []

    history = store.history(result.session_id)
    assert [m.role for m in history] == ["user", "assistant"]
    assert history[-1].requires_human


def test_keyword_overrides_high_confidence(orchestrator, services):
    services.embedder.vectors["I want to talk to a human about my password"] = [1.0, 0.0, 0.0]
    result = orchestrator.submit_turn("I want to talk to a human about my password")

    assert result.strategy is Strategy.HANDOFF
    assert result.reason == "user requested human"
    assert result.confidence == pytest.approx(1.0)
    assert services.provider.calls == []


def test_direct_answer_cites_article(orchestrator, services, store):
    result = orchestrator.submit_turn("How do I reset my password?")

    assert result.strategy is Strategy.DIRECT_ANSWER
    assert not result.requires_human and not result.clarification_needed
    assert result.reason is None
    assert [c.source_id for c in result.citations] == ["kb-1"]
    assert result.response.startswith("Open Settings and choose Reset password.")
    assert "https://help.example.com/reset-password" in result.response

    stored = store.history(result.session_id)[-1]
    assert stored.id == result.message_id
    assert stored.content == result.response
    assert stored.confidence == pytest.approx(result.confidence)
    assert stored.citations == result.citations


def test_mid_confidence_asks_for_clarification(orchestrator, services):
    result = orchestrator.submit_turn("I have a problem with my account")

    assert result.strategy is Strategy.CLARIFY
    assert result.clarification_needed
    assert result.confidence == pytest.approx(0.4, abs=1e-3)
    assert "Reset your password" in result.response
    assert "Download invoices" in result.response
    assert services.provider.calls == []


def test_follow_up_turn_sees_prior_history(orchestrator, services):
    first = orchestrator.submit_turn("How do I reset my password?")
    orchestrator.submit_turn("Where can I download my invoice?", session_id=first.session_id)

    second_prompt = services.provider.calls[-1]
    assert {"role": "user", "content": "How do I reset my password?"} in second_prompt
    assert second_prompt[-1]["content"].endswith(
        "If the answer is not in the context, say so."
    )


def test_generation_failure_degrades_to_apology(orchestrator, services, store, unavailable):
    services.provider.fail_with = unavailable
    result = orchestrator.submit_turn("How do I reset my password?")

    assert result.degraded
    assert result.response == prompts.generation_apology("en")
    assert result.citations == []
    assert store.history(result.session_id)[-1].content == result.response


def test_vietnamese_turn_gets_vietnamese_canned_reply(orchestrator):
    result = orchestrator.submit_turn("Tôi muốn gặp nhân viên hỗ trợ")
    assert result.strategy is Strategy.HANDOFF
    assert result.response == prompts.handoff_reply("vi")


def test_invalid_input_persists_nothing(orchestrator, store):
    session_id = store.create_session()
    with pytest.raises(InputValidationError):
        orchestrator.submit_turn("   ", session_id=session_id)
    with pytest.raises(InputValidationError):
        orchestrator.submit_turn("x" * 5001, session_id=session_id)
    assert store.history(session_id) == []


def test_unknown_session_is_rejected(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.submit_turn("hello", session_id="does-not-exist")


def test_retrieval_outage_still_answers_turn(orchestrator, services, unavailable):
    services.embedder.fail_with = unavailable
    result = orchestrator.submit_turn("How do I reset my password?")
    assert result.strategy is Strategy.HANDOFF
    assert result.reason == "low confidence - 0%"


# ---------------------------------------------------------------------------
# Streaming


def test_stream_persists_before_done(orchestrator, store):
    events = orchestrator.stream_turn("How do I reset my password?")
    chunks = []
    for event in events:
        if isinstance(event, TurnChunk):
            chunks.append(event.content)
            continue
        assert isinstance(event, TurnDone)
        stored = store.history(event.session_id)[-1]
        assert stored.id == event.message_id
        assert stored.role == "assistant"
        assert stored.content.startswith("".join(chunks))
        assert [c.source_id for c in event.citations] == ["kb-1"]
        done = event
    assert done.strategy is Strategy.DIRECT_ANSWER


def test_stream_closed_early_persists_nothing(orchestrator, services, store):
    turn = orchestrator.prepare("How do I reset my password?")
    events = orchestrator.stream(turn)
    assert isinstance(next(events), TurnChunk)
    events.close()

    assert services.provider.closed == 1
    assert [m.role for m in store.history(turn.session_id)] == ["user"]


def test_stream_failure_emits_failed_and_persists_apology(
    orchestrator, services, store, unavailable
):
    services.provider.fail_with = unavailable
    events = list(orchestrator.stream_turn("How do I reset my password?"))

    assert len(events) == 1
    failed = events[0]
    assert isinstance(failed, TurnFailed)
    assert failed.retryable
    assert failed.message == prompts.generation_apology("en")
    assert store.history(failed.session_id)[-1].content == failed.message


def test_stream_canned_reply_for_clarify(orchestrator, store):
    events = list(orchestrator.stream_turn("I have a problem with my account"))
    done = events[-1]
    assert isinstance(done, TurnDone)
    assert done.strategy is Strategy.CLARIFY
    text = "".join(e.content for e in events[:-1])
    assert store.history(done.session_id)[-1].content == text

