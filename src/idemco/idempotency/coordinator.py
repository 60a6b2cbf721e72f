"""Idempotent operation coordinator.

Collapses N attempts of the same logical operation into one effect and N
identical observable responses:

    check -> claim -> run callback -> record outcome

For a given (tenant, key) the callback runs at most once per successful
completion. Contention is resolved by raising IdempotencyConflictError
immediately; the coordinator never blocks waiting for another execution.

Correctness rests on the store's uniqueness constraint and its atomic
conditional claim, so it holds across threads, processes and service instances
sharing one store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, NoReturn, TypeVar

from idemco.idempotency.config import IdempotencyConfig, load_idempotency_config
from idemco.idempotency.errors import (
    CompletionNotRecordedError,
    IdempotencyConflictError,
    IdempotencyKeyMismatchError,
    IdempotencyStoreError,
)
from idemco.idempotency.keys import normalize_idempotency_key, require_idempotency_key
from idemco.idempotency.models import (
    EntityLink,
    ExecutionResult,
    IdempotencyOperation,
    IdempotencyRecord,
    IdempotencyStatus,
    Linkage,
    ScopeKey,
    coerce_operation,
)
from idemco.idempotency.serialization import deserialize_response, serialize_response
from idemco.idempotency.store import IdempotencyStore, SqliteIdempotencyStore, utc_now
from idemco.observability.tracing import set_span_attributes, start_span

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_context(scope_key: ScopeKey) -> dict[str, str]:
    return {"tenant_id": scope_key.tenant_id, "idempotency_key": scope_key.idempotency_key}


class ReplayOutcome(str, Enum):
    """What an existing record means for a new call."""

    ABSENT = "absent"
    REPLAY = "replay"
    IN_FLIGHT = "in_flight"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class ReplayDecision:
    outcome: ReplayOutcome
    record: IdempotencyRecord | None = None
    reason: str | None = None


def check_replay(
    record: IdempotencyRecord | None,
    operation: IdempotencyOperation,
    request_fingerprint: str | None,
    now: datetime,
) -> ReplayDecision:
    """Decide whether a call short-circuits on an existing record.

    - No record, expired record, or FAILED record: ABSENT (proceed to claim).
    - Record claimed for another operation or another payload: MISMATCH.
    - COMPLETED: REPLAY the stored response.
    - PROCESSING: IN_FLIGHT, a concurrent duplicate.
    """
    if record is None or record.is_expired(now):
        return ReplayDecision(ReplayOutcome.ABSENT)

    if record.status == IdempotencyStatus.FAILED:
        return ReplayDecision(ReplayOutcome.ABSENT, record)

    if record.operation != operation:
        return ReplayDecision(
            ReplayOutcome.MISMATCH,
            record,
            f"key was used for {record.operation.value}",
        )

    if (
        request_fingerprint is not None
        and record.request_fingerprint is not None
        and request_fingerprint != record.request_fingerprint
    ):
        return ReplayDecision(
            ReplayOutcome.MISMATCH, record, "key was used with a different payload"
        )

    if record.status == IdempotencyStatus.COMPLETED:
        return ReplayDecision(ReplayOutcome.REPLAY, record)

    return ReplayDecision(ReplayOutcome.IN_FLIGHT, record)


def raise_for_decision(
    decision: ReplayDecision,
    scope_key: ScopeKey,
    operation: IdempotencyOperation,
    retry_after_seconds: int,
) -> NoReturn:
    """Map a blocking decision to the caller-visible error.

    Raises:
        IdempotencyKeyMismatchError: On MISMATCH.
        IdempotencyConflictError: On IN_FLIGHT, or ABSENT after a lost claim.
    """
    details = {"operation": operation.value, "idempotency_key": scope_key.idempotency_key}

    if decision.outcome == ReplayOutcome.MISMATCH:
        logger.warning(
            "Idempotency key mismatch for %s: %s",
            operation.value,
            decision.reason,
            extra={"tenant_id": scope_key.tenant_id, **details},
        )
        raise IdempotencyKeyMismatchError(
            f"Idempotency key cannot be reused: {decision.reason}", details=details
        )

    logger.warning(
        "Idempotency conflict: %s already in progress",
        operation.value,
        extra={"tenant_id": scope_key.tenant_id, **details},
    )
    raise IdempotencyConflictError(
        "Operation with this idempotency key is in progress; retry shortly",
        retry_after_seconds=retry_after_seconds,
        details={**details, "retry_after_seconds": retry_after_seconds},
    )


class IdempotencyCoordinator:
    """Execution wrapper used by every idempotent business operation.

    Args:
        store: Idempotency record store.
        config: Policy; loaded from the environment when None.
        clock: Returns the current timezone-aware UTC time.
    """

    def __init__(
        self,
        store: IdempotencyStore,
        config: IdempotencyConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._config = config if config is not None else load_idempotency_config()
        self._clock = clock if clock is not None else utc_now

    @property
    def store(self) -> IdempotencyStore:
        return self._store

    @property
    def config(self) -> IdempotencyConfig:
        return self._config

    def now(self) -> datetime:
        return self._clock()

    def lookup(self, tenant_id: str, idempotency_key: str) -> IdempotencyRecord | None:
        """Return the live record for a key; expired records read as absent.

        Raises:
            IdempotencyStoreError: If the store lookup fails.
        """
        record = self._store.get(ScopeKey(tenant_id, idempotency_key))
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    def execute(
        self,
        idempotency_key: str | None,
        tenant_id: str,
        operation: IdempotencyOperation | str,
        callback: Callable[[], T],
        linkage: Linkage | None = None,
        request_fingerprint: str | None = None,
        conn: Any | None = None,
    ) -> ExecutionResult[T]:
        """Run ``callback`` at most once per (tenant_id, idempotency_key).

        Without a key the callback simply runs and nothing is persisted.

        Pass ``conn``, the store connection the callback applies its effect on,
        to record the completion inside the same transaction; the caller then
        owns commit and rollback. The check and the claim always run in their
        own transactions so concurrent duplicates see PROCESSING immediately.

        Returns:
            ExecutionResult. On a replay ``value`` is the decoded stored response
            and ``replayed`` is True.

        Raises:
            IdempotencyKeyRequiredError: Key missing for an operation that needs one.
            IdempotencyKeyInvalidError: Key malformed.
            IdempotencyConflictError: Same key currently in flight.
            IdempotencyKeyMismatchError: Key already used for another operation
                or payload.
            IdempotencyStoreError: Store failed before the callback ran.
            Exception: Whatever the callback raised, unchanged.
        """
        operation = coerce_operation(operation)
        key = normalize_idempotency_key(idempotency_key, self._config.key_max_length)
        require_idempotency_key(key, operation, self._config)

        with start_span(
            "idempotency.execute",
            {"idempotency.operation": operation.value, "idempotency.keyed": key is not None},
        ):
            if key is None:
                set_span_attributes({"idempotency.outcome": "passthrough"})
                return ExecutionResult(value=callback(), response=None, replayed=False)

            scope_key = ScopeKey(tenant_id, key)
            now = self._clock()

            decision = check_replay(self._store.get(scope_key), operation, request_fingerprint, now)
            if decision.outcome == ReplayOutcome.REPLAY:
                return self._replay(decision.record, operation)
            if decision.outcome != ReplayOutcome.ABSENT:
                set_span_attributes({"idempotency.outcome": decision.outcome.value})
                raise_for_decision(
                    decision, scope_key, operation, self._config.conflict_retry_after_seconds
                )

            claim = self._store.claim(
                scope_key,
                operation,
                request_fingerprint,
                now,
                now + self._config.ttl_for(operation),
            )
            if claim.claim_token is None:
                # Lost the race: the winner's record decides the outcome.
                decision = check_replay(claim.existing, operation, request_fingerprint, now)
                if decision.outcome == ReplayOutcome.REPLAY:
                    return self._replay(decision.record, operation)
                set_span_attributes({"idempotency.outcome": decision.outcome.value})
                raise_for_decision(
                    decision, scope_key, operation, self._config.conflict_retry_after_seconds
                )

            logger.info(
                "Claimed idempotency key for %s",
                operation.value,
                extra=_log_context(scope_key),
            )
            return self._run_claimed(
                scope_key, claim.claim_token, operation, callback, linkage, conn
            )

    def _replay(
        self, record: IdempotencyRecord | None, operation: IdempotencyOperation
    ) -> ExecutionResult[Any]:
        if record is None or record.response is None:
            raise IdempotencyStoreError(
                "Idempotency store returned a completed record without a response"
            )
        logger.info(
            "Replaying stored response for %s",
            operation.value,
            extra=_log_context(record.scope_key),
        )
        set_span_attributes({"idempotency.outcome": "replayed", "idempotency.replayed": True})
        entity = (
            EntityLink(record.entity_type, record.entity_id)
            if record.entity_type is not None and record.entity_id is not None
            else None
        )
        return ExecutionResult(
            value=deserialize_response(record.response),
            response=record.response,
            replayed=True,
            idempotency_key=record.idempotency_key,
            entity=entity,
        )

    def _run_claimed(
        self,
        scope_key: ScopeKey,
        claim_token: str,
        operation: IdempotencyOperation,
        callback: Callable[[], T],
        linkage: Linkage | None,
        conn: Any | None,
    ) -> ExecutionResult[T]:
        try:
            value = callback()
        except Exception:
            set_span_attributes({"idempotency.outcome": "failed"})
            self._record_failure(scope_key, claim_token, operation)
            raise

        # The effect already happened: from here on nothing may raise or re-run it.
        set_span_attributes({"idempotency.replayed": False})
        entity = self._resolve_linkage(scope_key, operation, linkage, value)
        response: bytes | None = None
        try:
            response = serialize_response(value)
            self._store.complete(
                scope_key, claim_token, response, entity, self._clock(), conn=conn
            )
        except Exception as e:
            completion_error = CompletionNotRecordedError(
                "Operation applied but its completion was not recorded",
                details={
                    "operation": operation.value,
                    "idempotency_key": scope_key.idempotency_key,
                    "cause": str(e),
                },
            )
            completion_error.__cause__ = e
            logger.error(
                "Effect applied, confirmation not recorded for %s: %s",
                operation.value,
                e,
                extra=_log_context(scope_key),
            )
            set_span_attributes({"idempotency.outcome": "unrecorded"})
            return ExecutionResult(
                value=value,
                response=response,
                replayed=False,
                idempotency_key=scope_key.idempotency_key,
                entity=entity,
                completion_error=completion_error,
            )

        set_span_attributes({"idempotency.outcome": "executed"})
        return ExecutionResult(
            value=value,
            response=response,
            replayed=False,
            idempotency_key=scope_key.idempotency_key,
            entity=entity,
        )

    def _resolve_linkage(
        self,
        scope_key: ScopeKey,
        operation: IdempotencyOperation,
        linkage: Linkage | None,
        value: Any,
    ) -> EntityLink | None:
        """Derive the entity link; a failing getter drops the link, not the completion."""
        if linkage is None:
            return None
        try:
            return linkage.link(value)
        except Exception as e:
            logger.error(
                "Entity linkage failed for %s, completing without it: %s",
                operation.value,
                e,
                extra=_log_context(scope_key),
            )
            return None

    def _record_failure(
        self, scope_key: ScopeKey, claim_token: str, operation: IdempotencyOperation
    ) -> None:
        """Best-effort FAILED write; never masks the callback's own error."""
        try:
            self._store.fail(scope_key, claim_token, self._clock())
        except IdempotencyStoreError as e:
            logger.error(
                "Failed to record failure for %s: %s",
                operation.value,
                e,
                extra=_log_context(scope_key),
            )


def create_default_store() -> IdempotencyStore:
    """Create the configured store: PostgreSQL when IDEMCO_DATABASE_URL is set."""
    from idemco.persistence.db import is_postgres_configured

    if is_postgres_configured():
        from idemco.idempotency.postgres_store import PostgresIdempotencyStore

        return PostgresIdempotencyStore()
    return SqliteIdempotencyStore()


def create_coordinator(
    store: IdempotencyStore | None = None,
    config: IdempotencyConfig | None = None,
) -> IdempotencyCoordinator:
    """Factory function to create a coordinator with the configured store."""
    return IdempotencyCoordinator(
        store=store if store is not None else create_default_store(),
        config=config,
    )
