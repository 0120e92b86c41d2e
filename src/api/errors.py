"""
Error taxonomy and the JSON error shape returned to clients.

Every handled error renders as:
    {"detail": {"error": "<code>", "message": "<text>"}}
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette import status

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "internal_error"

    def __init__(self, code: str | None = None, message: str = "") -> None:
        self.code = code or self.default_code
        self.message = message or self.code
        super().__init__(self.message)


class ValidationFailure(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "validation_failed"


class Unauthenticated(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "unauthenticated"


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "not_found"


class DependencyUnavailable(ServiceError):
    """A store or provider could not be reached. Callers may retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "dependency_unavailable"


class Internal(ServiceError):
    default_code = "internal_error"


def _payload(code: str, message: str) -> dict:
    return {"detail": {"error": code, "message": message}}


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if isinstance(exc, Internal):
        logger.error("internal_error: path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=_payload(exc.code, "Internal server error."))
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    if isinstance(exc, DependencyUnavailable):
        headers = {"Retry-After": "5"}
    return JSONResponse(status_code=exc.status_code, content=_payload(exc.code, exc.message), headers=headers)


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error: path=%s exc=%s", request.url.path, exc.__class__.__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_payload("internal_error", "Internal server error."),
    )


# PUBLIC_INTERFACE
def register_error_handlers(app: FastAPI) -> None:
    """Attach the JSON error handlers to an application."""
    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
