import pytest
from fakes import FakeLLM

from wiki.api.errors import UpstreamUnavailableError
from wiki.api.islands import (
    ChatIslandState,
    IslandState,
    IslandStateCache,
    RelatedIslandState,
    handle_island_action,
)
from wiki.api.notes import create_note


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return IslandStateCache(max_age=3600, clock=clock)


def test_get_unknown_island_is_empty_state(cache):
    state = cache.get("nope")
    assert state == IslandState()
    assert "nope" not in cache


def test_set_update_clear(cache, clock):
    cache.set("a", IslandState(chat=ChatIslandState(selected_model="llama2")))
    assert cache.last_updated("a") == clock.now

    clock.now += 10
    cache.update("a", related=RelatedIslandState(loading=True))
    state = cache.get("a")
    assert state.chat.selected_model == "llama2"
    assert state.related.loading is True
    assert cache.last_updated("a") == clock.now

    cache.clear("a")
    assert "a" not in cache
    cache.clear("a")


def test_update_rejects_unknown_fields(cache):
    with pytest.raises(TypeError):
        cache.update("a", selectedModel="llama2")


def test_cleanup_evicts_only_stale_entries(cache, clock):
    cache.set("old", IslandState(chat=ChatIslandState(last_message="old")))
    clock.now += 1800
    cache.set("recent", IslandState(chat=ChatIslandState(last_message="recent")))
    clock.now += 1801

    assert cache.cleanup() == 1
    assert "old" not in cache
    assert cache.get("recent").chat.last_message == "recent"
    assert cache.last_updated("recent") == clock.now - 1801
    assert cache.cleanup() == 0


def test_chat_action_appends_messages(cache, db):
    llm = FakeLLM(replies=["pong"])
    state = handle_island_action(cache, "island-1", "chat", {"message": "ping"}, db=db, llm=llm)

    assert [(m.role, m.content) for m in state.chat.messages] == [("user", "ping"), ("assistant", "pong")]
    assert state.chat.last_message == "ping"
    assert state.chat.error is None
    assert cache.get("island-1") == state
    assert llm.calls[0]["model"] == "fake-model"


def test_chat_action_uses_selected_model(cache, db):
    llm = FakeLLM(replies=["ok"])
    handle_island_action(cache, "i", "changeModel", {"model": "mistral"}, db=db, llm=llm)
    handle_island_action(cache, "i", "chat", {"message": "hi"}, db=db, llm=llm)
    assert llm.calls[0]["model"] == "mistral"
    assert cache.get("i").chat.selected_model == "mistral"


def test_chat_action_requires_message(cache, db):
    state = handle_island_action(cache, "i", "chat", {}, db=db, llm=FakeLLM())
    assert state.chat.error == "Message is required"
    assert "i" not in cache


def test_chat_action_failure_reports_error_in_state(cache, db):
    llm = FakeLLM(error=UpstreamUnavailableError("refused"))
    state = handle_island_action(cache, "i", "chat", {"message": "hi"}, db=db, llm=llm)
    assert state.chat.error.startswith("Failed to get response: ")
    assert state.chat.messages == []


def test_clear_action_resets_chat_only(cache, db):
    cache.set(
        "i",
        IslandState(
            chat=ChatIslandState(last_message="x", selected_model="m"),
            related=RelatedIslandState(loading=True),
        ),
    )
    state = handle_island_action(cache, "i", "clear", {}, db=db, llm=FakeLLM())
    assert state.chat == ChatIslandState()
    assert state.related.loading is True


def test_find_related_action(cache, db):
    current = create_note(db, "Current", "about bees", [])
    other = create_note(db, "Honey", "bees make honey", ["bees"])
    llm = FakeLLM(replies=[str(other.id)])
    form = {"noteId": str(current.id), "title": "Current", "content": "about bees"}

    state = handle_island_action(cache, "i", "findRelated", form, db=db, llm=llm)

    assert [n.id for n in state.related.related_notes] == [other.id]
    assert state.related.related_notes[0].tags == ["bees"]
    assert state.related.error is None


def test_find_related_action_validation(cache, db):
    state = handle_island_action(cache, "i", "findRelated", {"noteId": "abc"}, db=db, llm=FakeLLM())
    assert state.related.error == "Note ID, title, and content are required"


def test_unknown_action_returns_current_state(cache, db):
    cache.set("i", IslandState(chat=ChatIslandState(last_message="keep")))
    state = handle_island_action(cache, "i", "explode", {}, db=db, llm=FakeLLM())
    assert state.chat.last_message == "keep"


# -------- HTTP --------

def test_island_routes(auth_client, fake_llm):
    fake_llm.replies = ["hello from the model"]
    resp = auth_client.post("/api/islands/chat-1/chat", data={"message": "hi"})
    assert resp.status_code == 200
    assert resp.json()["chat"]["messages"][1]["content"] == "hello from the model"

    state = auth_client.get("/api/islands/chat-1").json()
    assert state["chat"]["last_message"] == "hi"

    resp = auth_client.post("/api/islands/chat-1/clear")
    assert resp.json()["chat"]["messages"] == []
