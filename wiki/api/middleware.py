import logging

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from wiki.api import database
from wiki.api.auth import get_session
from wiki.api.config import LANDING_PATH, PUBLIC_ROUTES, SESSION_COOKIE_NAME

logger = logging.getLogger(__name__)


def is_public_path(path: str) -> bool:
    return any(path.startswith(route) for route in PUBLIC_ROUTES)


def _redirect_to_landing(clear_cookie: bool = False) -> RedirectResponse:
    response = RedirectResponse(url=LANDING_PATH, status_code=303)
    if clear_cookie:
        response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


def _lookup_session(token: str):
    db = database.SessionLocal()
    try:
        return get_session(db, token)
    finally:
        db.close()


# PUBLIC_INTERFACE
def install_access_middleware(app: FastAPI):
    """
    Gate every request behind a valid session cookie, except allow-listed public routes.

    Order of checks: public allow-list (no DB hit), cookie presence, session lookup.
    A failed lookup redirects to the landing page and clears the cookie.
    """

    @app.middleware("http")
    async def require_session(request: Request, call_next):
        if is_public_path(request.url.path):
            return await call_next(request)

        token = request.cookies.get(SESSION_COOKIE_NAME)
        if not token:
            return _redirect_to_landing()

        session = await run_in_threadpool(_lookup_session, token)
        if session is None:
            logger.debug("Rejected unknown or expired session token on %s", request.url.path)
            return _redirect_to_landing(clear_cookie=True)

        request.state.user = session
        return await call_next(request)
