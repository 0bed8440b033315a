"""
Translation of API exceptions into HTTP responses.

This is the only place that knows which status code an error maps to.
"""
from __future__ import annotations

import logging
from typing import Dict, Optional, Type

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import (
    ApiError,
    AuthenticationError,
    DuplicateEmailError,
    InvalidCredentialsError,
    RateLimitedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: Dict[Type[ApiError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    DuplicateEmailError: status.HTTP_409_CONFLICT,
    InvalidCredentialsError: status.HTTP_401_UNAUTHORIZED,
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    RateLimitedError: status.HTTP_429_TOO_MANY_REQUESTS,
}


def status_for(error: ApiError) -> int:
    for cls in type(error).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(error: ApiError, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    headers = dict(headers or {})
    if isinstance(error, AuthenticationError):
        headers.setdefault("WWW-Authenticate", "Bearer")
    if isinstance(error, RateLimitedError):
        headers.setdefault("Retry-After", str(error.retry_after))
    return JSONResponse(status_code=status_for(error), content=error.to_dict(), headers=headers)


def _internal_error(request: Request) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    headers = {"X-Request-ID": request_id} if request_id else None
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "INTERNAL_ERROR",
            "message": "Internal server error.",
            "details": {"request_id": request_id},
        },
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
        if isinstance(exc, AuthenticationError):
            logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.code)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = []
        for err in exc.errors():
            fields.append({
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg", "Invalid value"),
            })
        return error_response(ValidationError("Request validation failed.", details={"fields": fields}))

    @app.exception_handler(SQLAlchemyError)
    async def handle_storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error(
            "Storage failure on %s %s",
            request.method, request.url.path,
            exc_info=exc,
            extra={"request_id": getattr(request.state, "request_id", None)},
        )
        return _internal_error(request)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled error on %s %s",
            request.method, request.url.path,
            exc_info=exc,
            extra={"request_id": getattr(request.state, "request_id", None)},
        )
        return _internal_error(request)
