import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Request
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from wiki.api.config import SESSION_SWEEP_INTERVAL_SECONDS, SESSION_TTL_HOURS
from wiki.api.errors import ConflictError, ValidationError
from wiki.api.models import AuthSession, User, utcnow

logger = logging.getLogger(__name__)

# Setup password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=10)


def normalize_username(username: Optional[str]) -> str:
    return (username or "").strip()


@dataclass(frozen=True)
class SessionInfo:
    """Identity attached to an authenticated request."""
    username: str
    created_at: datetime


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plaintext password against its hash."""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a plaintext password."""
    return pwd_context.hash(password)


# PUBLIC_INTERFACE
def create_user(db: Session, username: str, password: str) -> User:
    """
    Register a new user.

    Raises:
        ValidationError if username or password is empty.
        ConflictError if the username is taken.
    """
    username = normalize_username(username)
    if not username or not password:
        raise ValidationError("Username and password are required")
    if db.query(User).filter(User.username == username).first():
        raise ConflictError("Username already taken")
    user = User(username=username, password_hash=get_password_hash(password))
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# PUBLIC_INTERFACE
def verify_user(db: Session, username: str, password: str) -> bool:
    """Check credentials; an unknown user is simply a failed check."""
    username = normalize_username(username)
    user = db.query(User).filter(User.username == username).first()
    if user is None:
        return False
    return verify_password(password, user.password_hash)


# PUBLIC_INTERFACE
def create_session(db: Session, username: str, now: Optional[datetime] = None) -> str:
    """
    Issue a random opaque session token valid for SESSION_TTL_HOURS.

    Returns:
        The token, to be set as the session cookie.
    """
    now = now or utcnow()
    token = str(uuid.uuid4())
    db.add(
        AuthSession(
            token=token,
            username=username,
            created_at=now,
            expires_at=now + timedelta(hours=SESSION_TTL_HOURS),
        )
    )
    db.commit()
    return token


# PUBLIC_INTERFACE
def get_session(db: Session, token: str, now: Optional[datetime] = None) -> Optional[SessionInfo]:
    """
    Look up a live session. Unknown and expired tokens both yield None.
    """
    if not token:
        return None
    now = now or utcnow()
    row = (
        db.query(AuthSession)
        .filter(AuthSession.token == token, AuthSession.expires_at > now)
        .first()
    )
    if row is None:
        return None
    return SessionInfo(username=row.username, created_at=row.created_at)


# PUBLIC_INTERFACE
def delete_session(db: Session, token: str) -> None:
    """Remove a session; deleting a missing token is a no-op."""
    db.query(AuthSession).filter(AuthSession.token == token).delete(synchronize_session=False)
    db.commit()


# PUBLIC_INTERFACE
def sweep_expired_sessions(db: Session, now: Optional[datetime] = None) -> int:
    """Delete every session whose expiry has passed and return how many went."""
    now = now or utcnow()
    deleted = (
        db.query(AuthSession)
        .filter(AuthSession.expires_at <= now)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


class SessionSweeper:
    """
    Periodically purges expired sessions on a background thread.

    The sweeper owns its thread: start() launches it, stop() wakes it up and
    joins it. Each run opens its own database session from session_factory.
    """

    def __init__(self, session_factory, interval: float = SESSION_SWEEP_INTERVAL_SECONDS):
        self.session_factory = session_factory
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        db = self.session_factory()
        try:
            deleted = sweep_expired_sessions(db)
        finally:
            db.close()
        if deleted > 0:
            logger.info("Cleaned up %d expired session(s)", deleted)
        return deleted

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Session sweep failed")

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="session-sweeper", daemon=True)
        self._thread.start()
        logger.debug("Session sweeper started (interval=%ss)", self.interval)

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.debug("Session sweeper stopped")


# PUBLIC_INTERFACE
def get_current_user(request: Request) -> SessionInfo:
    """
    Dependency that returns the identity the access middleware attached to the request.
    """
    return request.state.user
