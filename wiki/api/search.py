import logging
import re
from typing import List, Optional, Tuple

from sqlalchemy import case, or_
from sqlalchemy.orm import Session, selectinload

from wiki.api.errors import UpstreamResponseError, ValidationError
from wiki.api.models import Note
from wiki.api.notes import recent_notes, truncate, validate_page

logger = logging.getLogger(__name__)

SEARCH_TYPES = ("text", "semantic")
SEMANTIC_CANDIDATES = 20
SEMANTIC_CONTENT_CHARS = 300

TITLE_MATCH_SCORE = 3
CONTENT_MATCH_SCORE = 1

SearchHit = Tuple[Note, Optional[int]]

_LEADING_ID_RE = re.compile(r"\s*\+?(\d+)")


def parse_note_ids(text: str, limit: int) -> List[int]:
    """
    Permissively pull note IDs out of a comma-separated model reply.

    Each token contributes its leading digits ("5 (best match)" is 5). Tokens
    without them and non-positive IDs are skipped, duplicates keep their first
    position, and at most `limit` IDs are returned. No usable IDs gives [].
    """
    ids = []
    for token in (text or "").split(","):
        match = _LEADING_ID_RE.match(token)
        if match is None:
            continue
        value = int(match.group(1))
        if value > 0 and value not in ids:
            ids.append(value)
        if len(ids) >= limit:
            break
    return ids


# PUBLIC_INTERFACE
def text_search(db: Session, query: str, page: int = 1, limit: int = 10) -> Tuple[List[SearchHit], int]:
    """
    Case-insensitive substring search on title or content.

    Title matches score above content-only matches; ties go to the most recently updated.
    """
    validate_page(page, limit)
    like = f"%{query}%"
    where = or_(Note.title.ilike(like), Note.content.ilike(like))
    score = case(
        (Note.title.ilike(like), TITLE_MATCH_SCORE),
        (Note.content.ilike(like), CONTENT_MATCH_SCORE),
        else_=0,
    ).label("relevance_score")

    total = db.query(Note).filter(where).count()
    rows = (
        db.query(Note, score)
        .options(selectinload(Note.tags))
        .filter(where)
        .order_by(score.desc(), Note.updated_at.desc(), Note.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return [(note, relevance) for note, relevance in rows], total


def build_search_prompt(query: str, candidates: List[Note], limit: int) -> str:
    notes_list = "\n\n".join(
        f'{index}. Title: "{note.title}"\n'
        f'   Content: "{truncate(note.content, SEMANTIC_CONTENT_CHARS)}"\n'
        f"   Tags: {', '.join(note.tag_names) or 'none'}\n"
        f"   ID: {note.id}"
        for index, note in enumerate(candidates, start=1)
    )
    return (
        f'Find the most relevant notes for this search query: "{query}"\n\n'
        "Consider semantic meaning, context, and conceptual relationships, "
        "not just exact word matches.\n\n"
        f"Available Notes:\n{notes_list}\n\n"
        f"Please respond with the IDs of the most relevant notes (up to {limit}), "
        "separated by commas, in order of relevance. Example: 5,12,8,3"
    )


# PUBLIC_INTERFACE
def semantic_search(db: Session, llm, query: str, page: int = 1, limit: int = 10) -> Tuple[List[SearchHit], int]:
    """
    Let the language model rank the most recent notes for the query.

    Never raises on upstream trouble: any failure, including a reply without
    usable IDs, falls back to text_search with the same arguments.
    """
    validate_page(page, limit)
    try:
        candidates = recent_notes(db, SEMANTIC_CANDIDATES)
        if not candidates:
            return [], 0
        reply = llm.complete(build_search_prompt(query, candidates, limit))
        ids = parse_note_ids(reply, limit)
        if not ids:
            raise UpstreamResponseError("Language model returned no note IDs", details=reply[:200])
        by_id = {note.id: note for note in candidates}
        hits = [(by_id[note_id], None) for note_id in ids if note_id in by_id]
        return hits, len(hits)
    except Exception as exc:
        logger.warning("Semantic search failed, falling back to text search: %s", exc)
        return text_search(db, query, page, limit)


# PUBLIC_INTERFACE
def search_notes(db: Session, llm, query: str, search_type: str = "text", page: int = 1, limit: int = 10):
    """Dispatch a search by type. Returns (hits, total)."""
    if not query or not query.strip():
        raise ValidationError("Search query is required")
    if search_type not in SEARCH_TYPES:
        raise ValidationError(f"Unknown search type '{search_type}'", details="Use 'text' or 'semantic'")
    if search_type == "semantic":
        return semantic_search(db, llm, query, page, limit)
    return text_search(db, query, page, limit)
