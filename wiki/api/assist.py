import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from wiki.api.errors import AppError, ValidationError
from wiki.api.models import Note
from wiki.api.notes import recent_notes, truncate
from wiki.api.search import parse_note_ids

logger = logging.getLogger(__name__)

RELATED_CANDIDATES = 20
RELATED_LIMIT = 3
RELATED_CONTENT_CHARS = 200
MAX_SUGGESTED_TAGS = 5
MAX_TAG_LENGTH = 30

RELATED_FAILURE_MESSAGE = "Failed to find related notes. Make sure Ollama is running."
TAGS_FAILURE_MESSAGE = "Failed to generate tag suggestions. Make sure Ollama is running."


def build_related_prompt(title: str, content: str, candidates: List[Note]) -> str:
    notes_list = "\n\n".join(
        f'{index}. Title: "{note.title}"\n'
        f'   Content: "{truncate(note.content, RELATED_CONTENT_CHARS)}"\n'
        f"   Tags: {', '.join(note.tag_names) or 'none'}\n"
        f"   ID: {note.id}"
        for index, note in enumerate(candidates, start=1)
    )
    return (
        f"Analyze the following note and find the {RELATED_LIMIT} most related notes "
        "from the list below. Consider content similarity, shared topics, and tags.\n\n"
        f'Current Note:\nTitle: "{title}"\nContent: "{content}"\n\n'
        f"Available Notes:\n{notes_list}\n\n"
        f"Please respond with only the IDs of the {RELATED_LIMIT} most related notes, "
        "separated by commas, no other text. Example: 5,12,8"
    )


# PUBLIC_INTERFACE
def find_related_notes(db: Session, llm, note_id: Optional[int], title: str, content: str) -> List[Note]:
    """
    Ask the model which of the most recent other notes relate to the given one.

    Returns at most three notes in the model's order; an empty list when there is
    nothing to compare against.
    """
    if not note_id or not title or not content:
        raise ValidationError("Note ID, title, and content are required")

    try:
        candidates = recent_notes(db, RELATED_CANDIDATES, exclude_id=note_id)
        if not candidates:
            return []
        reply = llm.complete(build_related_prompt(title, content, candidates))
        by_id = {note.id: note for note in candidates}
        return [by_id[i] for i in parse_note_ids(reply, RELATED_LIMIT) if i in by_id]
    except Exception as exc:
        logger.warning("Related notes lookup failed: %s", exc)
        raise AppError(RELATED_FAILURE_MESSAGE, details=str(exc)) from exc


def parse_tag_suggestions(text: str) -> List[str]:
    tags = []
    for part in (text or "").split(","):
        tag = part.strip().lower()
        if 0 < len(tag) < MAX_TAG_LENGTH and tag not in tags:
            tags.append(tag)
    return tags[:MAX_SUGGESTED_TAGS]


# PUBLIC_INTERFACE
def suggest_tags(llm, title: str, content: str) -> List[str]:
    """Ask the model for 3-5 short lowercase tags for a note."""
    if not title or not content:
        raise ValidationError("Title and content are required")
    prompt = (
        "Analyze the following note and suggest 3-5 relevant tags. The tags should be:\n"
        "- Short, descriptive keywords (1-2 words each)\n"
        "- Relevant to the main topics discussed\n"
        "- Useful for categorization and search\n"
        "- In lowercase, separated by commas\n\n"
        f'Note Title: "{title}"\nNote Content: "{content}"\n\n'
        "Please respond with only the suggested tags, separated by commas, no other text."
    )
    try:
        return parse_tag_suggestions(llm.complete(prompt))
    except Exception as exc:
        logger.warning("Tag suggestion failed: %s", exc)
        raise AppError(TAGS_FAILURE_MESSAGE, details=str(exc)) from exc
