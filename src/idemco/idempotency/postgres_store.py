"""PostgreSQL-backed idempotency store.

Same contract as the SQLite store, for deployments where several service
instances share one database. Each operation runs in its own transaction unless
a connection is supplied, in which case the caller owns the transaction.

Design Requirements:
    - Unique (tenant_id, idempotency_key) enforced by the primary key
    - Claim is a single INSERT ... ON CONFLICT DO UPDATE ... WHERE ... RETURNING
    - Terminal writes are conditional on claim_token and status = 'PROCESSING'
    - Fail closed when the store is unavailable
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from idemco.idempotency.errors import IdempotencyClaimLostError, IdempotencyStoreError
from idemco.idempotency.models import (
    ClaimResult,
    EntityLink,
    IdempotencyOperation,
    IdempotencyRecord,
    IdempotencyStatus,
    ScopeKey,
)
from idemco.idempotency.store import MAX_CLAIM_ATTEMPTS, new_claim_token

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)


class PostgresIdempotencyStore:
    """PostgreSQL-backed idempotency store.

    Args:
        engine: Optional engine. If None, the application engine from
            ``idemco.persistence.db`` is used (IDEMCO_DATABASE_URL).
    """

    _SELECT_SQL = text(
        """
        SELECT tenant_id, idempotency_key, operation, status, response,
               entity_type, entity_id, request_fingerprint, claim_token, attempts,
               expires_at, created_at, updated_at
        FROM idempotency_records
        WHERE tenant_id = :tenant_id AND idempotency_key = :idempotency_key
        """
    )

    _CLAIM_SQL = text(
        """
        INSERT INTO idempotency_records
        (tenant_id, idempotency_key, operation, status, response, entity_type,
         entity_id, request_fingerprint, claim_token, attempts, expires_at,
         created_at, updated_at)
        VALUES
        (:tenant_id, :idempotency_key, :operation, 'PROCESSING', NULL, NULL,
         NULL, :request_fingerprint, :claim_token, 1, :expires_at,
         :now, :now)
        ON CONFLICT (tenant_id, idempotency_key) DO UPDATE SET
            operation = EXCLUDED.operation,
            status = 'PROCESSING',
            response = NULL,
            entity_type = NULL,
            entity_id = NULL,
            request_fingerprint = EXCLUDED.request_fingerprint,
            claim_token = EXCLUDED.claim_token,
            attempts = idempotency_records.attempts + 1,
            expires_at = EXCLUDED.expires_at,
            updated_at = EXCLUDED.updated_at
        WHERE idempotency_records.status = 'FAILED'
            OR idempotency_records.expires_at <= EXCLUDED.updated_at
        RETURNING claim_token
        """
    )

    _COMPLETE_SQL = text(
        """
        UPDATE idempotency_records
        SET status = 'COMPLETED', response = :response, entity_type = :entity_type,
            entity_id = :entity_id, updated_at = :now
        WHERE tenant_id = :tenant_id AND idempotency_key = :idempotency_key
            AND claim_token = :claim_token AND status = 'PROCESSING'
        """
    )

    _FAIL_SQL = text(
        """
        UPDATE idempotency_records
        SET status = 'FAILED', updated_at = :now
        WHERE tenant_id = :tenant_id AND idempotency_key = :idempotency_key
            AND claim_token = :claim_token AND status = 'PROCESSING'
        """
    )

    _DELETE_EXPIRED_SQL = text(
        """
        DELETE FROM idempotency_records
        WHERE ctid IN (
            SELECT ctid FROM idempotency_records
            WHERE expires_at <= :now
            LIMIT :limit
            FOR UPDATE SKIP LOCKED
        )
        """
    )

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    def _get_engine(self) -> Engine:
        if self._engine is None:
            from idemco.persistence.db import get_app_engine

            self._engine = get_app_engine()
        return self._engine

    def _run(self, action: str, fn: Any, conn: Connection | None) -> Any:
        """Run ``fn(conn)`` on the given connection or in a fresh transaction.

        Raises:
            IdempotencyStoreError: On any database error.
        """
        try:
            if conn is not None:
                return fn(conn)
            with self._get_engine().begin() as new_conn:
                return fn(new_conn)
        except SQLAlchemyError as e:
            raise IdempotencyStoreError(f"Failed to {action}: {e}") from e

    @staticmethod
    def _row_to_record(row: Any) -> IdempotencyRecord:
        return IdempotencyRecord(
            tenant_id=row.tenant_id,
            idempotency_key=row.idempotency_key,
            operation=IdempotencyOperation(row.operation),
            status=IdempotencyStatus(row.status),
            response=bytes(row.response) if row.response is not None else None,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            request_fingerprint=row.request_fingerprint,
            claim_token=row.claim_token,
            attempts=row.attempts,
            expires_at=row.expires_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def get(self, scope_key: ScopeKey, conn: Connection | None = None) -> IdempotencyRecord | None:
        """Look up an idempotency record by scope key.

        Raises:
            IdempotencyStoreError: If lookup fails due to store error.
        """

        def _get(c: Connection) -> IdempotencyRecord | None:
            row = c.execute(self._SELECT_SQL, scope_key._asdict()).fetchone()
            return None if row is None else self._row_to_record(row)

        return self._run("lookup idempotency record", _get, conn)

    def claim(
        self,
        scope_key: ScopeKey,
        operation: IdempotencyOperation,
        request_fingerprint: str | None,
        now: datetime,
        expires_at: datetime,
        conn: Connection | None = None,
    ) -> ClaimResult:
        """Atomically claim the key or return the record that holds it.

        The claim must be committed before the callback runs so other instances
        observe PROCESSING; pass ``conn`` only if the caller commits right away.

        Raises:
            IdempotencyStoreError: If the claim fails due to store error.
        """
        for _ in range(MAX_CLAIM_ATTEMPTS):
            claim_token = new_claim_token()
            params = {
                **scope_key._asdict(),
                "operation": operation.value,
                "request_fingerprint": request_fingerprint,
                "claim_token": claim_token,
                "expires_at": expires_at,
                "now": now,
            }

            def _claim(c: Connection, params: dict[str, Any] = params) -> bool:
                return c.execute(self._CLAIM_SQL, params).fetchone() is not None

            if self._run("claim idempotency key", _claim, conn):
                logger.debug(
                    "Claimed idempotency key %s/%s",
                    scope_key.tenant_id,
                    scope_key.idempotency_key,
                )
                return ClaimResult(claim_token=claim_token)

            existing = self.get(scope_key, conn=conn)
            if existing is not None:
                return ClaimResult(claim_token=None, existing=existing)

        raise IdempotencyStoreError(
            f"Failed to claim idempotency key after {MAX_CLAIM_ATTEMPTS} attempts"
        )

    def _terminal_write(
        self, sql: Any, params: dict[str, Any], action: str, conn: Connection | None
    ) -> None:
        updated = self._run(
            f"{action} idempotency record", lambda c: c.execute(sql, params).rowcount, conn
        )
        if updated != 1:
            raise IdempotencyClaimLostError(
                f"Cannot {action} idempotency record: claim no longer held",
                details={"tenant_id": params["tenant_id"], "key": params["idempotency_key"]},
            )

    def complete(
        self,
        scope_key: ScopeKey,
        claim_token: str,
        response: bytes,
        entity: EntityLink | None,
        now: datetime,
        conn: Connection | None = None,
    ) -> None:
        """Record a successful execution.

        Passing the connection that applied the business effect keeps the
        completion on the same transactional boundary as the effect.

        Raises:
            IdempotencyClaimLostError: If the record is no longer held by the token.
            IdempotencyStoreError: If storage fails.
        """
        self._terminal_write(
            self._COMPLETE_SQL,
            {
                **scope_key._asdict(),
                "claim_token": claim_token,
                "response": response,
                "entity_type": entity.entity_type if entity else None,
                "entity_id": entity.entity_id if entity else None,
                "now": now,
            },
            "complete",
            conn,
        )

    def fail(
        self,
        scope_key: ScopeKey,
        claim_token: str,
        now: datetime,
        conn: Connection | None = None,
    ) -> None:
        """Record a failed execution, freeing the key for a retry.

        Raises:
            IdempotencyClaimLostError: If the record is no longer held by the token.
            IdempotencyStoreError: If storage fails.
        """
        self._terminal_write(
            self._FAIL_SQL,
            {**scope_key._asdict(), "claim_token": claim_token, "now": now},
            "fail",
            conn,
        )

    def delete_expired(self, now: datetime, limit: int, conn: Connection | None = None) -> int:
        """Delete a batch of expired records.

        Raises:
            IdempotencyStoreError: If deletion fails.
        """
        deleted: int = self._run(
            "delete expired idempotency records",
            lambda c: c.execute(self._DELETE_EXPIRED_SQL, {"now": now, "limit": limit}).rowcount,
            conn,
        )
        return max(deleted, 0)


def get_postgres_idempotency_store() -> PostgresIdempotencyStore:
    """Factory function to create a PostgreSQL idempotency store.

    Returns:
        PostgresIdempotencyStore instance.
    """
    return PostgresIdempotencyStore()
