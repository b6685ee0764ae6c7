import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    """
    Base application error carrying an HTTP status and a client-facing message.
    """
    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(AppError):
    """Missing or malformed input."""
    status_code = 400


class AuthenticationError(AppError):
    """Bad credentials at login."""
    status_code = 401


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    """Unique constraint violated, e.g. a duplicate slug or username."""
    status_code = 409


class UpstreamUnavailableError(AppError):
    """The language model could not be reached or answered with an error."""
    status_code = 500


class UpstreamTimeoutError(UpstreamUnavailableError):
    """The language model did not answer before the deadline."""


class UpstreamResponseError(UpstreamUnavailableError):
    """The language model answered with something we cannot use."""


def error_body(error: str, details: Optional[str] = None) -> dict:
    body = {"error": error}
    if details:
        body["details"] = details
    return body


async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.details))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(status_code=400, content=error_body("Invalid request", details))


async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("Internal server error"))


# PUBLIC_INTERFACE
def install_error_handlers(app: FastAPI):
    """
    Register handlers so every error leaves the API as {"error": ..., "details"?: ...}.
    """
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
