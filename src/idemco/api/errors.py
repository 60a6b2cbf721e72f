"""idemco API error handling.

Provides IdemcoHttpError and the FastAPI exception handlers that turn errors
into the standard envelope with request_id tracing.

Global exception handlers:
- IdempotencyError: coordinator conditions (conflict, missing key, store failure)
- IdemcoHttpError: Application-specific errors with structured envelope
- HTTPException: FastAPI/Starlette HTTP exceptions
- RequestValidationError: Pydantic validation errors
- Exception: Catch-all for unhandled exceptions (fail closed, no stack traces)

Business exceptions raised by wrapped callbacks reach the catch-all or the
application's own handlers unchanged; they are never reinterpreted here.
"""

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from idemco.api.error_model import get_error_code_for_status, make_error_response
from idemco.idempotency.errors import (
    IdempotencyConflictError,
    IdempotencyError,
    IdempotencyStoreError,
)

logger = logging.getLogger(__name__)


class IdemcoHttpError(Exception):
    """Application-level HTTP error with structured error envelope.

    Attributes:
        status_code: HTTP status code (e.g., 400, 404).
        code: Machine-readable error code (e.g., "TENANT_REQUIRED").
        message: Human-readable error message.
        details: Optional dict with additional error context.
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


async def idemco_http_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """FastAPI exception handler for IdemcoHttpError."""
    assert isinstance(exc, IdemcoHttpError)

    return make_error_response(
        request,
        code=exc.code,
        message=exc.message,
        http_status=exc.status_code,
        details=exc.details,
    )


async def idempotency_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """FastAPI exception handler for coordinator errors.

    Conflicts carry a Retry-After header. Store failures fail closed with a
    generic message; the cause is logged, not returned.
    """
    assert isinstance(exc, IdempotencyError)

    if isinstance(exc, IdempotencyStoreError):
        logger.error(
            "Idempotency store failure: %s",
            exc.message,
            extra={"request_id": getattr(request.state, "request_id", None)},
        )
        return make_error_response(
            request,
            code=exc.code,
            message="Idempotency store is unavailable",
            http_status=exc.http_status,
        )

    headers: dict[str, str] | None = None
    if isinstance(exc, IdempotencyConflictError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}

    return make_error_response(
        request,
        code=exc.code,
        message=exc.message,
        http_status=exc.http_status,
        details=exc.details,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """FastAPI exception handler for HTTPException."""
    assert isinstance(exc, HTTPException)

    code = get_error_code_for_status(exc.status_code)
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code}"

    return make_error_response(request, code=code, message=message, http_status=exc.status_code)


async def request_validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """FastAPI exception handler for RequestValidationError.

    Does not expose raw validation internals.
    """
    assert isinstance(exc, RequestValidationError)

    safe_details: list[dict[str, Any]] = []
    for error in exc.errors():
        loc = error.get("loc", ())
        safe_loc = [str(part) for part in loc if part not in ("body", "query", "path")]
        safe_details.append(
            {
                "field": ".".join(safe_loc) if safe_loc else "request",
                "message": error.get("msg", "Validation error"),
            }
        )

    return make_error_response(
        request,
        code="REQUEST_VALIDATION_FAILED",
        message="Request validation failed",
        http_status=422,
        details={"errors": safe_details} if safe_details else None,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler for unhandled exceptions.

    Fails closed: returns 500 with a generic message and logs the exception.
    """
    logger.exception(
        "Unhandled exception: %s",
        type(exc).__name__,
        extra={"request_id": getattr(request.state, "request_id", None)},
    )

    return make_error_response(
        request,
        code="INTERNAL_ERROR",
        message="An internal error occurred",
        http_status=500,
    )
