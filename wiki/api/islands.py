"""
Server-side state for independently hydrated UI islands.

Each island posts form actions (chat, clear, changeModel, findRelated); the
resulting state is kept in process memory keyed by island id and dropped after
an hour without updates. Nothing here is persisted and nothing is locked:
concurrent actions on one island race and the last writer wins.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

from fastapi import Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from wiki.api.assist import find_related_notes
from wiki.api.chat import send_message
from wiki.api.config import ISLAND_STATE_MAX_AGE_SECONDS
from wiki.api.errors import AppError

logger = logging.getLogger(__name__)


class IslandChatMessage(BaseModel):
    role: str
    content: str
    timestamp: float


class ChatIslandState(BaseModel):
    messages: List[IslandChatMessage] = Field(default_factory=list)
    selected_model: Optional[str] = None
    last_message: Optional[str] = None
    error: Optional[str] = None


class RelatedNoteSummary(BaseModel):
    id: int
    title: str
    slug: str
    tags: List[str] = Field(default_factory=list)


class RelatedIslandState(BaseModel):
    related_notes: List[RelatedNoteSummary] = Field(default_factory=list)
    loading: bool = False
    error: Optional[str] = None


class IslandState(BaseModel):
    chat: ChatIslandState = Field(default_factory=ChatIslandState)
    related: RelatedIslandState = Field(default_factory=RelatedIslandState)


@dataclass
class _Entry:
    state: IslandState
    last_updated: float


class IslandStateCache:
    """In-memory island id -> IslandState map with age-based eviction."""

    def __init__(self, max_age: float = ISLAND_STATE_MAX_AGE_SECONDS, clock: Callable[[], float] = time.time):
        self.max_age = max_age
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}

    def __len__(self):
        return len(self._entries)

    def __contains__(self, island_id):
        return island_id in self._entries

    def get(self, island_id: str) -> IslandState:
        entry = self._entries.get(island_id)
        return entry.state if entry else IslandState()

    def last_updated(self, island_id: str) -> Optional[float]:
        entry = self._entries.get(island_id)
        return entry.last_updated if entry else None

    def set(self, island_id: str, state: IslandState) -> IslandState:
        self._entries[island_id] = _Entry(state=state, last_updated=self._clock())
        return state

    def update(self, island_id: str, **fields) -> IslandState:
        """Shallow-merge whole feature states (chat=..., related=...) into the island."""
        unknown = set(fields) - set(IslandState.model_fields)
        if unknown:
            raise TypeError(f"Unknown island state fields: {', '.join(sorted(unknown))}")
        return self.set(island_id, self.get(island_id).model_copy(update=fields))

    def clear(self, island_id: str):
        self._entries.pop(island_id, None)

    def cleanup(self) -> int:
        """Drop islands not updated within max_age. Returns how many were dropped."""
        cutoff = self._clock() - self.max_age
        stale = [key for key, entry in self._entries.items() if entry.last_updated < cutoff]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("Evicted %d stale island state(s)", len(stale))
        return len(stale)


def get_island_cache(request: Request) -> IslandStateCache:
    return request.app.state.islands


def _chat_action(cache, island_id, form, state, db, llm):
    message = (form.get("message") or "").strip()
    model = form.get("model") or state.chat.selected_model or llm.model
    if not message:
        return state.model_copy(update={"chat": state.chat.model_copy(update={"error": "Message is required"})})

    try:
        reply = send_message(db, llm, island_id, message, model=model)
    except AppError as exc:
        logger.warning("Island %s chat action failed: %s", island_id, exc.message)
        failed = state.chat.model_copy(update={"error": f"Failed to get response: {exc.message}"})
        return state.model_copy(update={"chat": failed})

    now = time.time()
    chat = state.chat.model_copy(
        update={
            "messages": state.chat.messages + [
                IslandChatMessage(role="user", content=message, timestamp=now),
                IslandChatMessage(role="assistant", content=reply.response, timestamp=now),
            ],
            "last_message": message,
            "error": None,
        }
    )
    return cache.update(island_id, chat=chat)


def _clear_action(cache, island_id, form, state, db, llm):
    return cache.update(island_id, chat=ChatIslandState())


def _change_model_action(cache, island_id, form, state, db, llm):
    chat = state.chat.model_copy(update={"selected_model": form.get("model") or None, "error": None})
    return cache.update(island_id, chat=chat)


def _find_related_action(cache, island_id, form, state, db, llm):
    title = form.get("title") or ""
    content = form.get("content") or ""
    try:
        note_id = int(form.get("noteId") or 0)
    except ValueError:
        note_id = 0
    if not note_id or not title or not content:
        related = state.related.model_copy(update={"error": "Note ID, title, and content are required"})
        return state.model_copy(update={"related": related})

    try:
        notes = find_related_notes(db, llm, note_id, title, content)
    except AppError as exc:
        logger.warning("Island %s findRelated action failed: %s", island_id, exc.message)
        related = state.related.model_copy(update={"error": exc.message, "loading": False})
        return state.model_copy(update={"related": related})

    related = RelatedIslandState(
        related_notes=[
            RelatedNoteSummary(id=n.id, title=n.title, slug=n.slug, tags=n.tag_names) for n in notes
        ],
        loading=False,
        error=None,
    )
    return cache.update(island_id, related=related)


ACTIONS = {
    "chat": _chat_action,
    "clear": _clear_action,
    "changeModel": _change_model_action,
    "findRelated": _find_related_action,
}


# PUBLIC_INTERFACE
def handle_island_action(
    cache: IslandStateCache,
    island_id: str,
    action: str,
    form: Mapping,
    *,
    db: Session,
    llm,
) -> IslandState:
    """
    Route a named island action to its handler and return the resulting state.

    Unknown actions leave the state untouched. Validation and upstream failures
    come back as an error inside the returned state rather than as an exception.
    """
    state = cache.get(island_id)
    handler = ACTIONS.get(action)
    if handler is None:
        return state
    return handler(cache, island_id, form, state, db, llm)
