import pytest
from fakes import FakeLLM

from wiki.api.assist import (
    RELATED_FAILURE_MESSAGE,
    TAGS_FAILURE_MESSAGE,
    find_related_notes,
    parse_tag_suggestions,
    suggest_tags,
)
from wiki.api.errors import AppError, UpstreamUnavailableError, ValidationError
from wiki.api.notes import create_note


def test_related_notes_in_model_order_capped_at_three(db):
    current = create_note(db, "Current", "about rust", [])
    others = [create_note(db, f"Other {i}", "text", []) for i in range(4)]
    ids = [n.id for n in others]
    llm = FakeLLM(replies=[f"{ids[3]}, {current.id}, {ids[0]}, {ids[1]}, {ids[2]}"])

    related = find_related_notes(db, llm, current.id, current.title, current.content)

    # the current note is never a candidate, so its ID is dropped
    assert [n.id for n in related] == [ids[3], ids[0]]
    prompt = llm.calls[0]["messages"][0]["content"]
    assert f"ID: {current.id}" not in prompt


def test_related_notes_without_candidates_skips_model(db):
    only = create_note(db, "Only", "lonely", [])
    llm = FakeLLM()
    assert find_related_notes(db, llm, only.id, only.title, only.content) == []
    assert llm.calls == []


def test_related_notes_validation(db):
    with pytest.raises(ValidationError):
        find_related_notes(db, FakeLLM(), None, "t", "c")


def test_related_notes_upstream_failure(db):
    current = create_note(db, "Current", "x", [])
    create_note(db, "Other", "y", [])
    llm = FakeLLM(error=UpstreamUnavailableError("refused"))
    with pytest.raises(AppError) as excinfo:
        find_related_notes(db, llm, current.id, current.title, current.content)
    assert excinfo.value.message == RELATED_FAILURE_MESSAGE


def test_related_notes_any_model_failure_gets_hint_message(db):
    current = create_note(db, "Current", "x", [])
    create_note(db, "Other", "y", [])
    llm = FakeLLM(error=KeyError("message"))
    with pytest.raises(AppError) as excinfo:
        find_related_notes(db, llm, current.id, current.title, current.content)
    assert excinfo.value.message == RELATED_FAILURE_MESSAGE
    assert excinfo.value.status_code == 500


def test_parse_tag_suggestions():
    reply = "Python, Web Dev, , python, " + "x" * 40 + ", a, b, c, d"
    assert parse_tag_suggestions(reply) == ["python", "web dev", "a", "b", "c"]


def test_suggest_tags_requires_input():
    with pytest.raises(ValidationError):
        suggest_tags(FakeLLM(), "", "content")


# -------- HTTP --------

def test_suggest_tags_route(auth_client, fake_llm):
    fake_llm.replies = ["cooking, recipes, pasta"]
    resp = auth_client.post("/api/suggest-tags", json={"title": "Carbonara", "content": "eggs, cheese"})
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "tags": ["cooking", "recipes", "pasta"]}


def test_related_notes_route(auth_client, make_note, fake_llm):
    current = make_note("Current", "about gardening")
    other = make_note("Tomatoes", "growing tomatoes")
    fake_llm.replies = [str(other["id"])]
    resp = auth_client.post(
        "/api/related-notes",
        json={"noteId": current["id"], "title": current["title"], "content": current["content"]},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert [n["id"] for n in body["relatedNotes"]] == [other["id"]]


def test_related_notes_route_upstream_down(auth_client, make_note, fake_llm):
    current = make_note("Current", "x")
    make_note("Other", "y")
    fake_llm.error = UpstreamUnavailableError("refused")
    resp = auth_client.post(
        "/api/related-notes",
        json={"noteId": current["id"], "title": "Current", "content": "x"},
    )
    assert resp.status_code == 500
    assert resp.json()["error"] == RELATED_FAILURE_MESSAGE


def test_suggest_tags_route_unexpected_failure(auth_client, fake_llm):
    fake_llm.error = ValueError("unexpected payload")
    resp = auth_client.post("/api/suggest-tags", json={"title": "Carbonara", "content": "eggs"})
    assert resp.status_code == 500
    assert resp.json() == {"error": TAGS_FAILURE_MESSAGE, "details": "unexpected payload"}
