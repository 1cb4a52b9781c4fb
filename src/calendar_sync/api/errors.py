"""API error handling.

Registers FastAPI exception handlers that turn service exceptions into
`{"error": {"code": "...", "message": "..."}}` responses.

Status code mapping:
- `AuthenticationError` → 401 Unauthorized
- `NotFoundError` → 404 Not Found
- `ValidationError`, request validation failures → 400 Bad Request
- any other `CalendarSyncError` → 500 Internal Server Error

`HTTPException` raised directly by routes keeps FastAPI's default handling.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from calendar_sync.exceptions import (
    AuthenticationError,
    CalendarSyncError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetail


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_service_error(request: Request, exc: CalendarSyncError) -> JSONResponse:
    if isinstance(exc, AuthenticationError):
        logger.info(f"Authentication failure on {request.url.path}: {exc}")
        return _error_response(status.HTTP_401_UNAUTHORIZED, exc.code, str(exc))

    if isinstance(exc, NotFoundError):
        return _error_response(status.HTTP_404_NOT_FOUND, exc.code, str(exc))

    if isinstance(exc, ValidationError):
        return _error_response(status.HTTP_400_BAD_REQUEST, exc.code, str(exc))

    logger.error(
        f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}",
        exc_info=exc,
    )
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.code, str(exc))


async def _handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    messages = [
        f"{'.'.join(str(loc) for loc in error['loc'][1:]) or 'body'}: {error['msg']}"
        for error in exc.errors()
    ]
    logger.info(f"Validation error on {request.url.path}: {messages}")
    return _error_response(
        status.HTTP_400_BAD_REQUEST, ValidationError.code, "; ".join(messages)
    )


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the application."""
    app.add_exception_handler(CalendarSyncError, _handle_service_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_request_validation)  # type: ignore[arg-type]
