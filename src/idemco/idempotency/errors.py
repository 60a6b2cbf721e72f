"""Coordinator-defined error taxonomy.

Only coordinator-internal conditions live here. Exceptions raised by wrapped
business callbacks are never translated and propagate unchanged.

Each error carries a machine-readable ``code`` and the HTTP status the API layer
maps it to.
"""

from __future__ import annotations

from typing import Any


class IdempotencyError(Exception):
    """Base class for coordinator errors."""

    code: str = "IDEMPOTENCY_ERROR"
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class IdempotencyKeyRequiredError(IdempotencyError):
    """An operation that mandates idempotency was called without a key."""

    code = "IDEMPOTENCY_KEY_REQUIRED"
    http_status = 400


class IdempotencyKeyInvalidError(IdempotencyError):
    """The supplied key is too long or contains unsupported characters."""

    code = "IDEMPOTENCY_KEY_INVALID"
    http_status = 400


class IdempotencyConflictError(IdempotencyError):
    """An execution for this key is currently in flight.

    Callers should back off and retry after ``retry_after_seconds``. The
    coordinator never retries or waits on its own.
    """

    code = "IDEMPOTENCY_CONFLICT"
    http_status = 409
    retryable = True

    def __init__(
        self,
        message: str,
        retry_after_seconds: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.retry_after_seconds = retry_after_seconds


class IdempotencyKeyMismatchError(IdempotencyError):
    """The key was already used for a different operation or request payload."""

    code = "IDEMPOTENCY_KEY_MISMATCH"
    http_status = 422


class IdempotencyStoreError(IdempotencyError):
    """Raised when idempotency store operations fail.

    This error indicates the store is unavailable or corrupted.
    The API layer fails closed (500) when this occurs before execution.
    """

    code = "IDEMPOTENCY_STORE_FAILED"
    http_status = 500


class IdempotencyClaimLostError(IdempotencyStoreError):
    """A terminal write found no record still held by our claim token."""

    code = "IDEMPOTENCY_CLAIM_LOST"


class CompletionNotRecordedError(IdempotencyError):
    """The business effect was applied but its completion was not persisted.

    Never raised to the caller of ``execute``; attached to the ExecutionResult
    and logged for operators, since retrying could duplicate the effect.
    """

    code = "IDEMPOTENCY_COMPLETION_NOT_RECORDED"
    http_status = 200
