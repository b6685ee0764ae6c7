import logging
from typing import Optional

from fastapi import Depends, FastAPI, Form, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from wiki.api import database
from wiki.api.assist import find_related_notes, suggest_tags
from wiki.api.auth import (
    SessionInfo,
    SessionSweeper,
    create_session,
    create_user,
    delete_session,
    get_current_user,
    normalize_username,
    verify_user,
)
from wiki.api.chat import get_history, send_message
from wiki.api.config import (
    COOKIE_SECURE,
    FRONTEND_ORIGIN,
    SESSION_COOKIE_NAME,
    SESSION_TTL_HOURS,
    configure_logging,
)
from wiki.api.database import engine, get_db
from wiki.api.errors import AuthenticationError, install_error_handlers
from wiki.api.islands import IslandState, IslandStateCache, get_island_cache, handle_island_action
from wiki.api.llm import OllamaClient
from wiki.api.middleware import install_access_middleware
from wiki.api.models import Base
from wiki.api.notes import (
    create_note,
    delete_note,
    get_note,
    get_note_by_slug,
    list_notes,
    pagination,
    parse_tags,
    update_note,
)
from wiki.api.schemas import (
    AuthResponse,
    ChatHistoryResponse,
    ChatMessageResponse,
    ChatRequest,
    ChatResponse,
    MeResponse,
    MessageResponse,
    NoteDeleteRequest,
    NoteEnvelope,
    NoteResponse,
    NoteUpdateRequest,
    PaginatedNotesResponse,
    RelatedNotesRequest,
    RelatedNotesResponse,
    SearchResponse,
    SignupRequest,
    SuggestTagsRequest,
    SuggestTagsResponse,
    note_to_response,
)
from wiki.api.search import search_notes

configure_logging()
logger = logging.getLogger(__name__)

# Initialize database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Personal Wiki API",
    description="Personal wiki backend: session auth, tagged notes, search and a local language model.",
    version="1.0.0",
    openapi_tags=[
        {"name": "Health", "description": "Service health and status."},
        {"name": "Auth", "description": "Signup, login and logout with a session cookie."},
        {"name": "Notes", "description": "CRUD operations for notes."},
        {"name": "Search", "description": "Text and model-ranked note search."},
        {"name": "Assistant", "description": "Chat, related notes and tag suggestions."},
        {"name": "Islands", "description": "Server-side state for UI islands."},
    ],
)

install_error_handlers(app)
install_access_middleware(app)

# CORS setup - allow frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_llm(request: Request) -> OllamaClient:
    """Dependency returning the shared language-model client."""
    return request.app.state.llm


def _set_session_cookie(response: Response, token: str):
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=SESSION_TTL_HOURS * 3600,
        path="/",
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
    )


@app.on_event("startup")
def on_startup():
    app.state.llm = OllamaClient()
    app.state.islands = IslandStateCache()
    app.state.sweeper = SessionSweeper(database.SessionLocal)
    app.state.sweeper.start()
    logger.info("Personal wiki API started")


@app.on_event("shutdown")
def on_shutdown():
    app.state.sweeper.stop()
    app.state.llm.close()


# PUBLIC_INTERFACE
@app.get("/health", tags=["Health"], summary="Health Check")
def health_check():
    """
    Health check endpoint.

    Returns:
        JSON object indicating service status.
    """
    return {"message": "Healthy"}


# PUBLIC_INTERFACE
@app.get("/landing", tags=["Health"], summary="Landing page for anonymous visitors")
def landing():
    """Where unauthenticated requests are redirected."""
    return {"message": "Please log in", "login": "/api/login", "signup": "/api/signup"}


# -------- Auth Routes --------

# PUBLIC_INTERFACE
@app.post(
    "/api/signup",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Auth"],
    summary="Register a new user",
)
def signup(payload: SignupRequest, response: Response, db: Session = Depends(get_db)):
    """
    Register a new user and start a session for them.

    Raises:
        400 on missing fields, 409 if the username is taken.
    """
    user = create_user(db, payload.username, payload.password)
    _set_session_cookie(response, create_session(db, user.username))
    return AuthResponse(username=user.username)


# PUBLIC_INTERFACE
@app.post("/api/login", response_model=AuthResponse, tags=["Auth"], summary="Login and obtain a session cookie")
def login(response: Response, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    """
    Login endpoint using form fields `username` and `password`.

    Raises:
        401 on invalid credentials.
    """
    username = normalize_username(form_data.username)
    if not verify_user(db, username, form_data.password):
        raise AuthenticationError("Invalid username or password")
    _set_session_cookie(response, create_session(db, username))
    return AuthResponse(username=username)


# PUBLIC_INTERFACE
@app.post("/api/logout", response_model=MessageResponse, tags=["Auth"], summary="End the current session")
def logout(request: Request, response: Response, db: Session = Depends(get_db)):
    """Delete the session behind the cookie (if any) and clear the cookie."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        delete_session(db, token)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return MessageResponse(message="Logged out")


# PUBLIC_INTERFACE
@app.get("/api/me", response_model=MeResponse, tags=["Auth"], summary="Current user")
def me(current_user: SessionInfo = Depends(get_current_user)):
    """Return the username and session start time of the logged-in user."""
    return MeResponse(username=current_user.username, session_created_at=current_user.created_at)


# -------- Notes Routes --------

# PUBLIC_INTERFACE
@app.get("/api/notes", response_model=PaginatedNotesResponse, tags=["Notes"], summary="List notes with pagination")
def list_notes_route(
    page: int = Query(1, description="Page number starting at 1"),
    limit: int = Query(10, description="Items per page"),
    db: Session = Depends(get_db),
):
    """
    List notes, most recently updated first.

    Returns:
        {notes, pagination: {page, limit, total, pages}}
    """
    notes, total = list_notes(db, page, limit)
    return PaginatedNotesResponse(
        notes=[note_to_response(n) for n in notes],
        pagination=pagination(page, limit, total),
    )


# PUBLIC_INTERFACE
@app.post(
    "/api/notes",
    response_model=NoteEnvelope,
    status_code=status.HTTP_201_CREATED,
    tags=["Notes"],
    summary="Create a new note",
)
def create_note_route(
    title: Optional[str] = Form(None),
    content: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    """
    Create a note from form fields.

    Form fields:
        title: note title (slug is derived from it)
        content: note content
        tags: optional comma-separated tag names

    Raises:
        400 on missing title/content, 409 if the slug already exists.
    """
    note = create_note(db, title, content, parse_tags(tags))
    return NoteEnvelope(note=note_to_response(note))


# PUBLIC_INTERFACE
@app.get("/api/notes/slug/{slug}", response_model=NoteResponse, tags=["Notes"], summary="Get a note by slug")
def get_note_by_slug_route(slug: str, db: Session = Depends(get_db)):
    return note_to_response(get_note_by_slug(db, slug))


# PUBLIC_INTERFACE
@app.get("/api/notes/{note_id}", response_model=NoteResponse, tags=["Notes"], summary="Get a note by ID")
def get_note_route(note_id: int, db: Session = Depends(get_db)):
    return note_to_response(get_note(db, note_id))


# PUBLIC_INTERFACE
@app.put("/api/notes", response_model=NoteEnvelope, tags=["Notes"], summary="Update a note")
def update_note_route(payload: NoteUpdateRequest, db: Session = Depends(get_db)):
    """
    Replace a note's title and content.

    Raises:
        400 on invalid input, 404 if the note does not exist, 409 on a slug clash.
    """
    note = update_note(db, payload.id, payload.title, payload.content)
    return NoteEnvelope(note=note_to_response(note))


# PUBLIC_INTERFACE
@app.delete("/api/notes", response_model=MessageResponse, tags=["Notes"], summary="Delete a note")
def delete_note_route(payload: NoteDeleteRequest, db: Session = Depends(get_db)):
    """Delete a note by ID given in the JSON body."""
    delete_note(db, payload.id)
    return MessageResponse(message="Note deleted successfully")


# -------- Search --------

# PUBLIC_INTERFACE
@app.get("/api/search", response_model=SearchResponse, tags=["Search"], summary="Search notes")
def search_route(
    q: Optional[str] = Query(None, description="Search query"),
    search_type: str = Query("text", alias="type", description="'text' or 'semantic'"),
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    llm: OllamaClient = Depends(get_llm),
):
    """
    Search notes by substring match, or let the language model rank them.

    Semantic search silently degrades to text search when the model misbehaves.
    """
    hits, total = search_notes(db, llm, q, search_type, page, limit)
    return SearchResponse(
        query=q,
        type=search_type,
        results=[note_to_response(note, score) for note, score in hits],
        pagination=pagination(page, limit, total),
    )


# -------- Assistant --------

# PUBLIC_INTERFACE
@app.post("/api/chat", response_model=ChatResponse, tags=["Assistant"], summary="Chat with the language model")
def chat_route(payload: ChatRequest, db: Session = Depends(get_db), llm: OllamaClient = Depends(get_llm)):
    """
    Send one message in a conversation grounded in the user's recent notes.

    Raises:
        400 on an empty message; 500 with a timeout-specific or connection-specific
        message when the model is slow or unreachable.
    """
    reply = send_message(db, llm, payload.session_id, payload.message, model=payload.model)
    return ChatResponse(response=reply.response, session_id=reply.session_id, model=reply.model)


# PUBLIC_INTERFACE
@app.get("/api/chat/{session_id}", response_model=ChatHistoryResponse, tags=["Assistant"], summary="Conversation history")
def chat_history_route(session_id: str, db: Session = Depends(get_db)):
    """
    Stored messages of a conversation, oldest first.

    Raises:
        404 if the conversation does not exist.
    """
    messages = get_history(db, session_id)
    return ChatHistoryResponse(
        session_id=session_id,
        messages=[ChatMessageResponse.model_validate(m) for m in messages],
    )


# PUBLIC_INTERFACE
@app.post("/api/related-notes", response_model=RelatedNotesResponse, tags=["Assistant"], summary="Find related notes")
def related_notes_route(
    payload: RelatedNotesRequest, db: Session = Depends(get_db), llm: OllamaClient = Depends(get_llm)
):
    notes = find_related_notes(db, llm, payload.note_id, payload.title, payload.content)
    return RelatedNotesResponse(related_notes=[note_to_response(n) for n in notes])


# PUBLIC_INTERFACE
@app.post("/api/suggest-tags", response_model=SuggestTagsResponse, tags=["Assistant"], summary="Suggest tags")
def suggest_tags_route(payload: SuggestTagsRequest, llm: OllamaClient = Depends(get_llm)):
    return SuggestTagsResponse(tags=suggest_tags(llm, payload.title, payload.content))


# -------- Islands --------

# PUBLIC_INTERFACE
@app.get("/api/islands/{island_id}", response_model=IslandState, tags=["Islands"], summary="Current island state")
def island_state_route(island_id: str, cache: IslandStateCache = Depends(get_island_cache)):
    return cache.get(island_id)


# PUBLIC_INTERFACE
@app.post(
    "/api/islands/{island_id}/{action}",
    response_model=IslandState,
    tags=["Islands"],
    summary="Run a form-posted island action",
)
async def island_action_route(
    island_id: str,
    action: str,
    request: Request,
    cache: IslandStateCache = Depends(get_island_cache),
    db: Session = Depends(get_db),
    llm: OllamaClient = Depends(get_llm),
):
    """
    Dispatch one of chat, clear, changeModel or findRelated for an island.

    Stale islands are evicted before the action runs.
    """
    form = await request.form()
    cache.cleanup()
    return await run_in_threadpool(handle_island_action, cache, island_id, action, form, db=db, llm=llm)
