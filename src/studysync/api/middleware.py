"""Consistent API error responses.

Registers FastAPI exception handlers that convert calendar sync exceptions
into ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``CalendarNotConnectedError`` → 409 Conflict
- ``CalendarAuthError`` (refresh / code exchange rejected) → 401 Unauthorized
- ``SemesterNotFoundError`` → 404 Not Found
- ``CalendarRequestError`` (Google refused a call) → 502 Bad Gateway
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from studysync.api.models import ErrorDetail, ErrorResponse
from studysync.calendar.errors import (
    CalendarAuthError,
    CalendarNotConnectedError,
    CalendarRequestError,
    SemesterNotFoundError,
    sanitize_message,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, user_id: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, user_id=user_id))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def _handle_not_connected(
    request: Request,
    exc: CalendarNotConnectedError,
) -> JSONResponse:
    logger.info("Calendar not connected for user %s", exc.user_id)
    return _error(409, "CALENDAR_NOT_CONNECTED", str(exc), exc.user_id)


async def _handle_auth_error(
    request: Request,
    exc: CalendarAuthError,
) -> JSONResponse:
    message = sanitize_message(str(exc))
    logger.warning("Calendar authorization failed on %s: %s", request.url.path, message)
    return _error(401, "CALENDAR_AUTH_FAILED", message)


async def _handle_semester_not_found(
    request: Request,
    exc: SemesterNotFoundError,
) -> JSONResponse:
    return _error(404, "SEMESTER_NOT_FOUND", str(exc))


async def _handle_request_error(
    request: Request,
    exc: CalendarRequestError,
) -> JSONResponse:
    logger.warning("Google Calendar request failed on %s: %s", request.url.path, exc.message)
    return _error(502, "GOOGLE_REQUEST_FAILED", sanitize_message(str(exc)))


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Turn any unhandled exception into the standard 500 envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Starlette resolves handlers by exception MRO, so the not-connected
    handler wins over the generic auth handler.
    """
    app.add_exception_handler(CalendarNotConnectedError, _handle_not_connected)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarAuthError, _handle_auth_error)  # type: ignore[arg-type]
    app.add_exception_handler(SemesterNotFoundError, _handle_semester_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarRequestError, _handle_request_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
