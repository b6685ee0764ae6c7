import time
from datetime import datetime

import pytest
from fakes import FakeLLM

from wiki.api.chat import (
    FAILURE_MESSAGE,
    HISTORY_LIMIT,
    TIMEOUT_MESSAGE,
    UNAVAILABLE_MESSAGE,
    send_message,
)
from wiki.api.errors import AppError, UpstreamTimeoutError, UpstreamUnavailableError, ValidationError
from wiki.api.llm import OllamaClient
from wiki.api.models import ChatConversation, ChatMessage
from wiki.api.notes import create_note


class SlowClient(OllamaClient):
    """Real deadline handling, with a model that never answers in time."""

    def _post_chat(self, messages, model):
        time.sleep(0.5)
        return "too late"


def test_send_message_persists_exchange(db):
    llm = FakeLLM(replies=["Hi there"])
    reply = send_message(db, llm, "conv-1", "Hello")

    assert reply.response == "Hi there"
    assert reply.session_id == "conv-1"
    assert reply.model == "fake-model"
    stored = db.query(ChatMessage).order_by(ChatMessage.id).all()
    assert [(m.role, m.content) for m in stored] == [("user", "Hello"), ("assistant", "Hi there")]


def test_send_message_generates_session_id(db):
    reply = send_message(db, FakeLLM(replies=["ok"]), None, "Hello")
    assert reply.session_id
    assert db.query(ChatConversation).filter_by(session_id=reply.session_id).count() == 1


def test_history_is_sent_oldest_first_and_capped(db):
    llm = FakeLLM(replies=[f"answer {i}" for i in range(7)])
    for i in range(6):
        send_message(db, llm, "conv-1", f"question {i}")
    send_message(db, llm, "conv-1", "final question")

    messages = llm.calls[-1]["messages"]
    assert messages[0]["role"] == "system"
    history = messages[1:-1]
    assert len(history) == HISTORY_LIMIT
    assert history[0] == {"role": "user", "content": "question 1"}
    assert history[-1] == {"role": "assistant", "content": "answer 5"}
    assert messages[-1] == {"role": "user", "content": "final question"}


def test_system_prompt_has_date_and_notes(db):
    create_note(db, "Garden log", "Planted tomatoes", ["garden"])
    llm = FakeLLM(replies=["ok"])
    send_message(db, llm, "conv-1", "What did I plant?", now=datetime(2024, 5, 6, 7, 8))

    system = llm.calls[0]["messages"][0]["content"]
    assert "Monday, May 06, 2024 07:08" in system
    assert "Title: Garden log" in system
    assert "Tags: garden" in system
    assert "Planted tomatoes" in system


def test_deadline_is_passed_to_model(db):
    llm = FakeLLM(replies=["ok"])
    send_message(db, llm, "conv-1", "Hello", timeout=12)
    assert llm.calls[0]["deadline"] == 12


def test_empty_message_is_rejected(db):
    with pytest.raises(ValidationError):
        send_message(db, FakeLLM(), "conv-1", "   ")


def test_timeout_yields_timeout_message_and_persists_nothing(db):
    llm = SlowClient()
    try:
        with pytest.raises(UpstreamTimeoutError) as excinfo:
            send_message(db, llm, "conv-1", "Hello", timeout=0.05)
    finally:
        llm.close()
    assert excinfo.value.message == TIMEOUT_MESSAGE
    assert db.query(ChatMessage).count() == 0
    assert db.query(ChatConversation).count() == 0


def test_connection_failure_has_its_own_message(db):
    llm = FakeLLM(error=UpstreamUnavailableError("Could not connect"))
    with pytest.raises(UpstreamUnavailableError) as excinfo:
        send_message(db, llm, "conv-1", "Hello")
    assert not isinstance(excinfo.value, UpstreamTimeoutError)
    assert excinfo.value.message == UNAVAILABLE_MESSAGE


def test_unexpected_failure_is_generic_with_details(db):
    llm = FakeLLM(error=RuntimeError("boom"))
    with pytest.raises(AppError) as excinfo:
        send_message(db, llm, "conv-1", "Hello")
    assert excinfo.value.message == FAILURE_MESSAGE
    assert excinfo.value.details == "boom"


# -------- HTTP --------

def test_chat_route(auth_client, fake_llm):
    fake_llm.replies = ["Hello back"]
    resp = auth_client.post("/api/chat", json={"message": "Hello", "sessionId": "abc"})
    assert resp.status_code == 200
    assert resp.json() == {"response": "Hello back", "sessionId": "abc", "model": "fake-model"}

    history = auth_client.get("/api/chat/abc").json()
    assert history["sessionId"] == "abc"
    assert [m["role"] for m in history["messages"]] == ["user", "assistant"]


def test_chat_route_timeout_message(auth_client, fake_llm):
    fake_llm.error = UpstreamTimeoutError("No response within 30s")
    resp = auth_client.post("/api/chat", json={"message": "Hello"})
    assert resp.status_code == 500
    assert resp.json() == {"error": TIMEOUT_MESSAGE}


def test_chat_route_generic_failure_exposes_details(auth_client, fake_llm):
    fake_llm.error = RuntimeError("boom")
    resp = auth_client.post("/api/chat", json={"message": "Hello"})
    assert resp.status_code == 500
    assert resp.json() == {"error": FAILURE_MESSAGE, "details": "boom"}


def test_chat_route_requires_message(auth_client):
    resp = auth_client.post("/api/chat", json={})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Message is required"}


def test_unknown_conversation_is_404(auth_client):
    assert auth_client.get("/api/chat/missing").status_code == 404
