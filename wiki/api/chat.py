import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from wiki.api.config import CHAT_TIMEOUT_SECONDS
from wiki.api.errors import (
    AppError,
    NotFoundError,
    UpstreamResponseError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    ValidationError,
)
from wiki.api.models import ChatConversation, ChatMessage, utcnow
from wiki.api.notes import recent_notes, truncate

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
CONTEXT_NOTES = 10
CONTEXT_CONTENT_CHARS = 200

TIMEOUT_MESSAGE = "The language model took too long to respond. Please try again."
UNAVAILABLE_MESSAGE = "Could not reach the language model. Make sure Ollama is running."
FAILURE_MESSAGE = "Failed to get a response from the language model"


@dataclass
class ChatReply:
    response: str
    session_id: str
    model: str


def _get_or_create_conversation(db: Session, session_id: str) -> ChatConversation:
    conversation = (
        db.query(ChatConversation).filter(ChatConversation.session_id == session_id).first()
    )
    if conversation is None:
        conversation = ChatConversation(session_id=session_id)
        db.add(conversation)
        db.flush()
    return conversation


def _recent_history(db: Session, conversation: ChatConversation) -> List[ChatMessage]:
    rows = (
        db.query(ChatMessage)
        .filter(ChatMessage.conversation_id == conversation.id)
        .order_by(ChatMessage.id.desc())
        .limit(HISTORY_LIMIT)
        .all()
    )
    rows.reverse()
    return rows


def build_system_prompt(notes, now: datetime) -> str:
    """System prompt grounding the model in the current time and the user's recent notes."""
    if notes:
        notes_context = "\n\n".join(
            f"Title: {note.title}\n"
            f"Tags: {', '.join(note.tag_names) or 'none'}\n"
            f"Content: {truncate(note.content, CONTEXT_CONTENT_CHARS)}"
            for note in notes
        )
    else:
        notes_context = "The user has no notes yet."
    return (
        "You are a helpful assistant for a personal wiki. "
        f"The current date and time is {now.strftime('%A, %B %d, %Y %H:%M')}.\n\n"
        "Here are the user's most recent notes for context:\n\n"
        f"{notes_context}\n\n"
        "Use these notes when they are relevant to the question. "
        "If they are not, answer from general knowledge."
    )


# PUBLIC_INTERFACE
def send_message(
    db: Session,
    llm,
    session_id: Optional[str],
    message: str,
    model: Optional[str] = None,
    timeout: float = CHAT_TIMEOUT_SECONDS,
    now: Optional[datetime] = None,
) -> ChatReply:
    """
    Run one chat turn: load context, ask the model under a deadline, persist the exchange.

    Raises:
        ValidationError for an empty message.
        UpstreamTimeoutError when the deadline passes first.
        UpstreamUnavailableError when the model cannot be reached.
        AppError (500) for any other failure, with the cause in details.
    """
    if not message or not message.strip():
        raise ValidationError("Message is required")
    session_id = session_id or str(uuid.uuid4())
    model = model or llm.model
    now = now or datetime.now()

    try:
        conversation = _get_or_create_conversation(db, session_id)
        history = _recent_history(db, conversation)
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": build_system_prompt(recent_notes(db, CONTEXT_NOTES), now)}
        ]
        messages.extend({"role": m.role, "content": m.content} for m in history)
        messages.append({"role": "user", "content": message})

        reply = llm.chat(messages, model=model, deadline=timeout)

        db.add(ChatMessage(conversation_id=conversation.id, role="user", content=message))
        db.add(ChatMessage(conversation_id=conversation.id, role="assistant", content=reply))
        conversation.updated_at = utcnow()
        db.commit()
    except UpstreamTimeoutError as exc:
        db.rollback()
        logger.warning("Chat timed out for session %s: %s", session_id, exc)
        raise UpstreamTimeoutError(TIMEOUT_MESSAGE) from exc
    except UpstreamResponseError as exc:
        db.rollback()
        logger.warning("Chat got an unusable reply for session %s: %s", session_id, exc)
        raise AppError(FAILURE_MESSAGE, details=exc.message) from exc
    except UpstreamUnavailableError as exc:
        db.rollback()
        logger.warning("Chat upstream failure for session %s: %s", session_id, exc)
        raise UpstreamUnavailableError(UNAVAILABLE_MESSAGE, details=exc.message) from exc
    except Exception as exc:
        db.rollback()
        logger.exception("Chat failed for session %s", session_id)
        raise AppError(FAILURE_MESSAGE, details=str(exc)) from exc

    return ChatReply(response=reply, session_id=session_id, model=model)


# PUBLIC_INTERFACE
def get_history(db: Session, session_id: str) -> List[ChatMessage]:
    """Stored messages for a conversation, oldest first."""
    conversation = (
        db.query(ChatConversation).filter(ChatConversation.session_id == session_id).first()
    )
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return list(conversation.messages)
