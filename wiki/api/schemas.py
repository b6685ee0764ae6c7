from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


# Auth

class SignupRequest(BaseModel):
    """Request model to register a new user"""
    username: str = Field(..., min_length=1, max_length=255, description="Unique username")
    password: str = Field(..., min_length=6, description="Plaintext password (min 6 chars)")


class AuthResponse(BaseModel):
    """Returned after signup/login; the session itself travels in the cookie"""
    success: bool = True
    username: str


class MeResponse(BaseModel):
    """Identity behind the current session cookie"""
    username: str
    session_created_at: datetime


# Notes

class NoteResponse(BaseModel):
    """Note response model"""
    id: int
    title: str
    slug: str
    content: str
    tags: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    relevance_score: Optional[int] = None


class NoteUpdateRequest(BaseModel):
    """Update note request (full replace of title/content)"""
    id: int = Field(..., ge=1)
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)


class NoteDeleteRequest(BaseModel):
    id: int = Field(..., ge=1)


class NoteEnvelope(BaseModel):
    success: bool = True
    note: NoteResponse


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PaginatedNotesResponse(BaseModel):
    """Paginated response for notes listing"""
    notes: List[NoteResponse]
    pagination: Pagination


class SearchResponse(BaseModel):
    success: bool = True
    query: str
    type: str
    results: List[NoteResponse]
    pagination: Pagination


class MessageResponse(BaseModel):
    success: bool = True
    message: str


# Chat

class ChatRequest(BaseModel):
    message: str = ""
    model: Optional[str] = None
    session_id: Optional[str] = Field(None, alias="sessionId")

    class Config:
        populate_by_name = True


class ChatResponse(BaseModel):
    response: str
    session_id: str = Field(..., serialization_alias="sessionId")
    model: str


class ChatMessageResponse(BaseModel):
    role: str
    content: str
    created_at: datetime

    class Config:
        from_attributes = True


class ChatHistoryResponse(BaseModel):
    session_id: str = Field(..., serialization_alias="sessionId")
    messages: List[ChatMessageResponse]


# Assist

class RelatedNotesRequest(BaseModel):
    note_id: Optional[int] = Field(None, alias="noteId")
    title: str = ""
    content: str = ""

    class Config:
        populate_by_name = True


class RelatedNotesResponse(BaseModel):
    success: bool = True
    related_notes: List[NoteResponse] = Field(..., serialization_alias="relatedNotes")


class SuggestTagsRequest(BaseModel):
    title: str = ""
    content: str = ""


class SuggestTagsResponse(BaseModel):
    success: bool = True
    tags: List[str]


# PUBLIC_INTERFACE
def note_to_response(note, relevance_score: Optional[int] = None) -> NoteResponse:
    """Build a NoteResponse from an ORM Note."""
    return NoteResponse(
        id=note.id,
        title=note.title,
        slug=note.slug,
        content=note.content,
        tags=note.tag_names,
        created_at=note.created_at,
        updated_at=note.updated_at,
        relevance_score=relevance_score,
    )
