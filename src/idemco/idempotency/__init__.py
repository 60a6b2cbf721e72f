"""Idempotent operation coordination.

Provides tenant-scoped idempotency records and the execution wrapper that
guarantees at-most-once execution of side-effecting operations under retries.
"""

from idemco.idempotency.cleanup import purge_expired_records
from idemco.idempotency.config import IdempotencyConfig, load_idempotency_config
from idemco.idempotency.coordinator import IdempotencyCoordinator, create_coordinator
from idemco.idempotency.errors import (
    CompletionNotRecordedError,
    IdempotencyClaimLostError,
    IdempotencyConflictError,
    IdempotencyError,
    IdempotencyKeyInvalidError,
    IdempotencyKeyMismatchError,
    IdempotencyKeyRequiredError,
    IdempotencyStoreError,
)
from idemco.idempotency.models import (
    EntityLink,
    ExecutionResult,
    IdempotencyOperation,
    IdempotencyRecord,
    IdempotencyStatus,
    Linkage,
    ScopeKey,
)
from idemco.idempotency.store import IdempotencyStore, SqliteIdempotencyStore

__all__ = [
    "CompletionNotRecordedError",
    "EntityLink",
    "ExecutionResult",
    "IdempotencyClaimLostError",
    "IdempotencyConfig",
    "IdempotencyConflictError",
    "IdempotencyCoordinator",
    "IdempotencyError",
    "IdempotencyKeyInvalidError",
    "IdempotencyKeyMismatchError",
    "IdempotencyKeyRequiredError",
    "IdempotencyOperation",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "IdempotencyStore",
    "IdempotencyStoreError",
    "Linkage",
    "ScopeKey",
    "SqliteIdempotencyStore",
    "create_coordinator",
    "load_idempotency_config",
    "purge_expired_records",
]
