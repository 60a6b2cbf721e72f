"""Idempotency record model and coordinator value types.

One IdempotencyRecord exists per (tenant_id, idempotency_key). Its status follows a
three-state machine:

    PROCESSING -> COMPLETED   (terminal, response immutable)
    PROCESSING -> FAILED
    FAILED     -> PROCESSING  (reclaim after a genuine failure)

Expired records are treated as absent regardless of status.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Generic, NamedTuple, TypeVar

T = TypeVar("T")


class IdempotencyStatus(str, Enum):
    """Lifecycle state of an idempotency record."""

    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class IdempotencyOperation(str, Enum):
    """Business actions protected by the coordinator.

    Adding a protected operation only requires adding a tag here.
    """

    CREATE_PAYMENT = "CREATE_PAYMENT"
    CREATE_SUPPLIER_PAYMENT = "CREATE_SUPPLIER_PAYMENT"
    EMIT_INVOICE = "EMIT_INVOICE"
    CREATE_CREDIT_NOTE = "CREATE_CREDIT_NOTE"
    IMPORT_BANK_STATEMENT = "IMPORT_BANK_STATEMENT"
    APPROVE_CASH_CLOSING = "APPROVE_CASH_CLOSING"
    CONFIRM_LOAD_ORDER = "CONFIRM_LOAD_ORDER"
    CONFIRM_DEPOSIT = "CONFIRM_DEPOSIT"
    STATE_TRANSITION = "STATE_TRANSITION"
    DISASSEMBLE_MACHINE = "DISASSEMBLE_MACHINE"


def coerce_operation(operation: IdempotencyOperation | str) -> IdempotencyOperation:
    """Normalize an operation tag to the enum.

    Raises:
        ValueError: If the tag is not a known operation.
    """
    if isinstance(operation, IdempotencyOperation):
        return operation
    try:
        return IdempotencyOperation(operation)
    except ValueError as e:
        raise ValueError(f"Unknown idempotency operation: {operation!r}") from e


class ScopeKey(NamedTuple):
    """Composite key for record lookup.

    Scoped by tenant so the same literal key used by two tenants never collides.
    """

    tenant_id: str
    idempotency_key: str


@dataclass(frozen=True)
class IdempotencyRecord:
    """Stored idempotency record.

    Attributes:
        tenant_id: Owning tenant.
        idempotency_key: Caller-supplied or generated key.
        operation: Operation tag the key was claimed for.
        status: Current lifecycle state.
        response: Serialized result bytes; meaningful only when COMPLETED.
        entity_type: Optional type of the domain object created or mutated.
        entity_id: Optional id of that domain object.
        request_fingerprint: Optional sha256 digest of the request payload.
        claim_token: Token of the call currently (or last) holding the claim.
        attempts: Number of claims made on this key.
        expires_at: Absolute expiry; afterwards the record is ignored.
        created_at: First claim time.
        updated_at: Last mutation time.
    """

    tenant_id: str
    idempotency_key: str
    operation: IdempotencyOperation
    status: IdempotencyStatus
    response: bytes | None
    entity_type: str | None
    entity_id: str | None
    request_fingerprint: str | None
    claim_token: str
    attempts: int
    expires_at: datetime
    created_at: datetime
    updated_at: datetime

    @property
    def scope_key(self) -> ScopeKey:
        return ScopeKey(self.tenant_id, self.idempotency_key)

    def is_expired(self, now: datetime) -> bool:
        """Return True once ``now`` has reached ``expires_at``."""
        return self.expires_at <= now


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of an atomic claim attempt.

    Exactly one of ``claim_token`` (we hold the claim) or ``existing`` (another
    call holds or completed it) is set.
    """

    claim_token: str | None
    existing: IdempotencyRecord | None = None

    @property
    def claimed(self) -> bool:
        return self.claim_token is not None


@dataclass(frozen=True)
class EntityLink:
    """Link from a record to the domain object an operation created or mutated."""

    entity_type: str
    entity_id: str


@dataclass(frozen=True)
class Linkage:
    """Derives an EntityLink from a successful callback result.

    Attributes:
        entity_type: Domain type name stored on the record (e.g. "ClientPayment").
        id_getter: Returns the entity id from the result, or None.
    """

    entity_type: str
    id_getter: Callable[[Any], Any]

    @classmethod
    def attribute(cls, entity_type: str, name: str = "id") -> Linkage:
        """Build a linkage reading ``name`` from a mapping key or an attribute."""

        def _get(result: Any) -> Any:
            if isinstance(result, dict):
                return result.get(name)
            return getattr(result, name, None)

        return cls(entity_type=entity_type, id_getter=_get)

    def link(self, result: Any) -> EntityLink | None:
        entity_id = self.id_getter(result)
        if entity_id is None:
            return None
        return EntityLink(entity_type=self.entity_type, entity_id=str(entity_id))


@dataclass(frozen=True)
class ExecutionResult(Generic[T]):
    """Value returned by the execution wrapper.

    Attributes:
        value: Callback result on a fresh execution; the decoded stored response on
            a replay. None when the key was absent and the callback returned None.
        response: Serialized response bytes; byte-identical across replays. None
            when no key was supplied (nothing was persisted).
        replayed: True when the stored response was returned without running the
            callback.
        idempotency_key: Key used, or None for a passthrough call.
        entity: Linkage recorded for the execution, if any.
        completion_error: Set when the callback succeeded but its completion could
            not be recorded.
    """

    value: T | Any
    response: bytes | None
    replayed: bool
    idempotency_key: str | None = None
    entity: EntityLink | None = None
    completion_error: Exception | None = None

    @property
    def recorded(self) -> bool:
        """False when the effect was applied but its confirmation was not stored."""
        return self.completion_error is None
