import math
import re
import unicodedata
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from wiki.api.errors import ConflictError, NotFoundError, ValidationError
from wiki.api.models import Note, Tag, utcnow

_PUNCTUATION_RE = re.compile(r"[^\w\s-]+")
_SEPARATOR_RE = re.compile(r"[\s_-]+")


def slugify(title: str) -> str:
    """
    Derive a URL-safe slug: ASCII-fold, lowercase, drop punctuation, hyphen-join words.

    >>> slugify("Hello, World!")
    'hello-world'
    """
    text = unicodedata.normalize("NFKD", title or "")
    text = "".join(ch for ch in text if unicodedata.category(ch) != "Mn")
    text = text.encode("ascii", "ignore").decode("ascii").lower()
    text = _PUNCTUATION_RE.sub("", text)
    return _SEPARATOR_RE.sub("-", text).strip("-")


def parse_tags(raw: Optional[str]) -> List[str]:
    """Split a comma-separated tag string into unique, trimmed, lowercase names."""
    seen = []
    for part in (raw or "").split(","):
        name = part.strip().lower()
        if name and name not in seen:
            seen.append(name)
    return seen


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def validate_page(page: int, limit: int):
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive integers")


def _ensure_slug_free(db: Session, slug: str, exclude_id: Optional[int] = None):
    query = db.query(Note.id).filter(Note.slug == slug)
    if exclude_id is not None:
        query = query.filter(Note.id != exclude_id)
    if query.first() is not None:
        raise ConflictError("A note with this title already exists")


def _get_or_create_tag(db: Session, name: str) -> Tag:
    tag = db.query(Tag).filter(Tag.name == name).first()
    if tag is None:
        tag = Tag(name=name)
        db.add(tag)
        db.flush()
    return tag


# PUBLIC_INTERFACE
def create_note(db: Session, title: str, content: str, tags: Iterable[str] = ()) -> Note:
    """
    Create a note and link its tags in a single transaction.

    Raises:
        ValidationError if title or content is missing, or the title has no sluggable characters.
        ConflictError if another note already owns the derived slug.
    """
    title = (title or "").strip()
    if not title or not content:
        raise ValidationError("Title and content are required")
    slug = slugify(title)
    if not slug:
        raise ValidationError("Title must contain at least one letter or digit")
    _ensure_slug_free(db, slug)

    try:
        note = Note(title=title, slug=slug, content=content)
        db.add(note)
        for name in tags:
            tag = _get_or_create_tag(db, name)
            if tag not in note.tags:
                note.tags.append(tag)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("A note with this title already exists") from exc
    except Exception:
        db.rollback()
        raise
    db.refresh(note)
    return note


# PUBLIC_INTERFACE
def list_notes(db: Session, page: int = 1, limit: int = 10) -> Tuple[List[Note], int]:
    """Most recently updated notes first, offset-paginated. Returns (notes, total)."""
    validate_page(page, limit)
    total = db.query(Note).count()
    notes = (
        db.query(Note)
        .options(selectinload(Note.tags))
        .order_by(Note.updated_at.desc(), Note.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return notes, total


# PUBLIC_INTERFACE
def get_note(db: Session, note_id: int) -> Note:
    note = db.query(Note).filter(Note.id == note_id).first()
    if note is None:
        raise NotFoundError("Note not found")
    return note


# PUBLIC_INTERFACE
def get_note_by_slug(db: Session, slug: str) -> Note:
    note = db.query(Note).filter(Note.slug == slug).first()
    if note is None:
        raise NotFoundError("Note not found")
    return note


# PUBLIC_INTERFACE
def update_note(db: Session, note_id: int, title: str, content: str) -> Note:
    """
    Replace a note's title and content and refresh its updated timestamp.

    The slug follows the new title; colliding with another note is a conflict.
    """
    title = (title or "").strip()
    if not note_id or not title or not content:
        raise ValidationError("ID, title and content are required")
    note = get_note(db, note_id)
    slug = slugify(title)
    if not slug:
        raise ValidationError("Title must contain at least one letter or digit")
    _ensure_slug_free(db, slug, exclude_id=note.id)

    note.title = title
    note.slug = slug
    note.content = content
    note.updated_at = utcnow()
    db.commit()
    db.refresh(note)
    return note


# PUBLIC_INTERFACE
def delete_note(db: Session, note_id: int):
    """Delete a note; its tag links go with it, the tags themselves stay."""
    if not note_id:
        raise ValidationError("Note ID is required")
    note = get_note(db, note_id)
    db.delete(note)
    db.commit()


def recent_notes(db: Session, limit: int, exclude_id: Optional[int] = None) -> List[Note]:
    """Most recently updated notes with tags loaded, for building model prompts."""
    query = db.query(Note).options(selectinload(Note.tags))
    if exclude_id is not None:
        query = query.filter(Note.id != exclude_id)
    return query.order_by(Note.updated_at.desc(), Note.id.desc()).limit(limit).all()


def truncate(text: str, length: int) -> str:
    text = text or ""
    return text if len(text) <= length else text[:length] + "..."
