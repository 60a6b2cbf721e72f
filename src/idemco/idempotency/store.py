"""Idempotency key store protocol and SQLite-backed implementation.

The uniqueness of (tenant_id, idempotency_key) is enforced by the table's primary
key, and the claim is a single conditional upsert against it. That constraint is
the only synchronization primitive: no process-local state decides who runs.

Design requirements:
- Claim is atomic: INSERT ... ON CONFLICT DO UPDATE ... WHERE (FAILED or expired)
- Terminal writes are conditional on the claim token and PROCESSING status, so a
  COMPLETED record is never rewritten
- Fail closed: any store failure raises IdempotencyStoreError
"""

from __future__ import annotations

import contextlib
import logging
import os
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from idemco.idempotency.errors import IdempotencyClaimLostError, IdempotencyStoreError
from idemco.idempotency.models import (
    ClaimResult,
    EntityLink,
    IdempotencyOperation,
    IdempotencyRecord,
    IdempotencyStatus,
    ScopeKey,
)

logger = logging.getLogger(__name__)

IDEMCO_IDEMPOTENCY_DB_PATH_ENV = "IDEMCO_IDEMPOTENCY_DB_PATH"
DEFAULT_IDEMPOTENCY_DB_PATH = "./var/idempotency/idempotency.sqlite3"

# Bounded re-read loop for a claim that lost to a row which vanished before we
# could read it (purged between the upsert and the select).
MAX_CLAIM_ATTEMPTS = 3

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Get the current timezone-aware UTC time."""
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """Format as fixed-width UTC ISO-8601 so lexical order equals time order."""
    if value.tzinfo is None:
        raise ValueError("Timestamps must be timezone-aware")
    return value.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def new_claim_token() -> str:
    return uuid.uuid4().hex


@runtime_checkable
class IdempotencyStore(Protocol):
    """Protocol for idempotency record stores.

    Implementations must make ``claim`` a single atomic operation backed by a
    store-enforced uniqueness constraint on (tenant_id, idempotency_key).
    """

    def get(self, scope_key: ScopeKey) -> IdempotencyRecord | None:
        """Return the record for the key, expired or not, or None."""
        ...

    def claim(
        self,
        scope_key: ScopeKey,
        operation: IdempotencyOperation,
        request_fingerprint: str | None,
        now: datetime,
        expires_at: datetime,
    ) -> ClaimResult:
        """Atomically move the record to PROCESSING if absent, FAILED or expired.

        Returns a ClaimResult carrying either our new claim token or the record
        that prevented the claim.
        """
        ...

    def complete(
        self,
        scope_key: ScopeKey,
        claim_token: str,
        response: bytes,
        entity: EntityLink | None,
        now: datetime,
        conn: Any | None = None,
    ) -> None:
        """Move our PROCESSING record to COMPLETED with its response.

        ``conn`` is an open connection of the store's own backend. When given,
        the write joins the caller's transaction and is committed or rolled back
        with the business effect applied on it.

        Raises:
            IdempotencyClaimLostError: If the record is no longer held by the token.
        """
        ...

    def fail(self, scope_key: ScopeKey, claim_token: str, now: datetime) -> None:
        """Move our PROCESSING record to FAILED so the key can be reclaimed."""
        ...

    def delete_expired(self, now: datetime, limit: int) -> int:
        """Delete up to ``limit`` records with expires_at <= now; return the count."""
        ...


class SqliteIdempotencyStore:
    """SQLite-backed idempotency store with thread-safe access.

    Creates database and parent directories on first use.
    Uses WAL mode and autocommit so every statement is its own transaction; the
    busy timeout makes concurrent writers queue rather than fail.

    Args:
        db_path: Database file path. If None, uses IDEMCO_IDEMPOTENCY_DB_PATH or
            the default path.
        in_memory: Use a private in-memory database (one shared connection).
        busy_timeout_seconds: How long a writer waits for the database lock.
    """

    _CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS idempotency_records (
            tenant_id TEXT NOT NULL,
            idempotency_key TEXT NOT NULL,
            operation TEXT NOT NULL,
            status TEXT NOT NULL
                CHECK (status IN ('PROCESSING', 'COMPLETED', 'FAILED')),
            response BLOB,
            entity_type TEXT,
            entity_id TEXT,
            request_fingerprint TEXT,
            claim_token TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 1,
            expires_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (tenant_id, idempotency_key)
        )
    """

    _CREATE_EXPIRES_INDEX_SQL = """
        CREATE INDEX IF NOT EXISTS ix_idempotency_records_expires_at
        ON idempotency_records (expires_at)
    """

    _SELECT_SQL = """
        SELECT tenant_id, idempotency_key, operation, status, response,
               entity_type, entity_id, request_fingerprint, claim_token, attempts,
               expires_at, created_at, updated_at
        FROM idempotency_records
        WHERE tenant_id = :tenant_id AND idempotency_key = :idempotency_key
    """

    _CLAIM_SQL = """
        INSERT INTO idempotency_records
        (tenant_id, idempotency_key, operation, status, response, entity_type,
         entity_id, request_fingerprint, claim_token, attempts, expires_at,
         created_at, updated_at)
        VALUES
        (:tenant_id, :idempotency_key, :operation, 'PROCESSING', NULL, NULL,
         NULL, :request_fingerprint, :claim_token, 1, :expires_at,
         :now, :now)
        ON CONFLICT (tenant_id, idempotency_key) DO UPDATE SET
            operation = excluded.operation,
            status = 'PROCESSING',
            response = NULL,
            entity_type = NULL,
            entity_id = NULL,
            request_fingerprint = excluded.request_fingerprint,
            claim_token = excluded.claim_token,
            attempts = idempotency_records.attempts + 1,
            expires_at = excluded.expires_at,
            updated_at = excluded.updated_at
        WHERE idempotency_records.status = 'FAILED'
            OR idempotency_records.expires_at <= excluded.updated_at
    """

    _COMPLETE_SQL = """
        UPDATE idempotency_records
        SET status = 'COMPLETED', response = :response, entity_type = :entity_type,
            entity_id = :entity_id, updated_at = :now
        WHERE tenant_id = :tenant_id AND idempotency_key = :idempotency_key
            AND claim_token = :claim_token AND status = 'PROCESSING'
    """

    _FAIL_SQL = """
        UPDATE idempotency_records
        SET status = 'FAILED', updated_at = :now
        WHERE tenant_id = :tenant_id AND idempotency_key = :idempotency_key
            AND claim_token = :claim_token AND status = 'PROCESSING'
    """

    _DELETE_EXPIRED_SQL = """
        DELETE FROM idempotency_records
        WHERE rowid IN (
            SELECT rowid FROM idempotency_records
            WHERE expires_at <= :now
            LIMIT :limit
        )
    """

    def __init__(
        self,
        db_path: str | None = None,
        in_memory: bool = False,
        busy_timeout_seconds: float = 30.0,
    ) -> None:
        if db_path is None and not in_memory:
            db_path = os.environ.get(IDEMCO_IDEMPOTENCY_DB_PATH_ENV, DEFAULT_IDEMPOTENCY_DB_PATH)

        self._db_path = ":memory:" if in_memory else str(db_path)
        self._in_memory = in_memory
        self._busy_timeout = busy_timeout_seconds
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()
        # in-memory databases are per-connection, so all threads share one
        self._shared_conn: sqlite3.Connection | None = None
        self._shared_lock = threading.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._db_path,
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_database(self, conn: sqlite3.Connection) -> None:
        """Create the table and index if they don't exist.

        Raises:
            IdempotencyStoreError: If database cannot be created.
        """
        try:
            if not self._in_memory:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(self._CREATE_TABLE_SQL)
            conn.execute(self._CREATE_EXPIRES_INDEX_SQL)
        except sqlite3.Error as e:
            raise IdempotencyStoreError(f"Failed to initialize idempotency store: {e}") from e

        logger.info("Initialized idempotency store at %s", self._db_path)

    def _prepare_path(self) -> None:
        db_path = Path(self._db_path)
        if db_path.is_dir():
            raise IdempotencyStoreError(f"Idempotency store path is a directory: {self._db_path}")
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IdempotencyStoreError(
                f"Failed to create idempotency store directory: {e}"
            ) from e

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the connection for the calling thread.

        Raises:
            IdempotencyStoreError: If connection cannot be established.
        """
        if self._in_memory:
            if self._shared_conn is None:
                with self._init_lock:
                    if self._shared_conn is None:
                        try:
                            conn = self._connect()
                        except sqlite3.Error as e:
                            raise IdempotencyStoreError(
                                f"Failed to connect to idempotency store: {e}"
                            ) from e
                        self._ensure_database(conn)
                        self._shared_conn = conn
            return self._shared_conn

        if not self._initialized:
            with self._init_lock:
                if not self._initialized:
                    self._prepare_path()
                    try:
                        init_conn = self._connect()
                    except sqlite3.Error as e:
                        raise IdempotencyStoreError(
                            f"Failed to connect to idempotency store: {e}"
                        ) from e
                    try:
                        self._ensure_database(init_conn)
                    finally:
                        init_conn.close()
                    self._initialized = True

        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = self._connect()
            except sqlite3.Error as e:
                raise IdempotencyStoreError(f"Failed to connect to idempotency store: {e}") from e
            self._local.conn = conn

        return conn

    @contextlib.contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        if self._in_memory:
            with self._shared_lock:
                yield conn
        else:
            yield conn

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> IdempotencyRecord:
        response = row["response"]
        return IdempotencyRecord(
            tenant_id=row["tenant_id"],
            idempotency_key=row["idempotency_key"],
            operation=IdempotencyOperation(row["operation"]),
            status=IdempotencyStatus(row["status"]),
            response=bytes(response) if response is not None else None,
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            request_fingerprint=row["request_fingerprint"],
            claim_token=row["claim_token"],
            attempts=row["attempts"],
            expires_at=parse_timestamp(row["expires_at"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    def get(self, scope_key: ScopeKey) -> IdempotencyRecord | None:
        """Look up an idempotency record by scope key.

        Raises:
            IdempotencyStoreError: If lookup fails due to store error.
        """
        try:
            with self._connection() as conn:
                row = conn.execute(self._SELECT_SQL, scope_key._asdict()).fetchone()
        except sqlite3.Error as e:
            raise IdempotencyStoreError(f"Failed to lookup idempotency record: {e}") from e

        if row is None:
            return None
        return self._row_to_record(row)

    def claim(
        self,
        scope_key: ScopeKey,
        operation: IdempotencyOperation,
        request_fingerprint: str | None,
        now: datetime,
        expires_at: datetime,
    ) -> ClaimResult:
        """Atomically claim the key or return the record that holds it.

        Raises:
            IdempotencyStoreError: If the claim fails due to store error.
        """
        for _ in range(MAX_CLAIM_ATTEMPTS):
            claim_token = new_claim_token()
            try:
                with self._connection() as conn:
                    cursor = conn.execute(
                        self._CLAIM_SQL,
                        {
                            **scope_key._asdict(),
                            "operation": operation.value,
                            "request_fingerprint": request_fingerprint,
                            "claim_token": claim_token,
                            "expires_at": format_timestamp(expires_at),
                            "now": format_timestamp(now),
                        },
                    )
                    claimed = cursor.rowcount == 1
            except sqlite3.Error as e:
                raise IdempotencyStoreError(f"Failed to claim idempotency key: {e}") from e

            if claimed:
                return ClaimResult(claim_token=claim_token)

            existing = self.get(scope_key)
            if existing is not None:
                return ClaimResult(claim_token=None, existing=existing)

        raise IdempotencyStoreError(
            f"Failed to claim idempotency key after {MAX_CLAIM_ATTEMPTS} attempts"
        )

    def _terminal_write(
        self,
        sql: str,
        params: dict[str, object],
        action: str,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        try:
            if conn is not None:
                updated = conn.execute(sql, params).rowcount
            else:
                with self._connection() as own_conn:
                    updated = own_conn.execute(sql, params).rowcount
        except sqlite3.Error as e:
            raise IdempotencyStoreError(f"Failed to {action} idempotency record: {e}") from e

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
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Record a successful execution.

        Args:
            conn: Optional caller connection to the same database file. The
                update then belongs to the caller's open transaction.

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
                "now": format_timestamp(now),
            },
            "complete",
            conn,
        )

    def fail(self, scope_key: ScopeKey, claim_token: str, now: datetime) -> None:
        """Record a failed execution, freeing the key for a retry.

        Raises:
            IdempotencyClaimLostError: If the record is no longer held by the token.
            IdempotencyStoreError: If storage fails.
        """
        self._terminal_write(
            self._FAIL_SQL,
            {**scope_key._asdict(), "claim_token": claim_token, "now": format_timestamp(now)},
            "fail",
        )

    def delete_expired(self, now: datetime, limit: int) -> int:
        """Delete a batch of expired records.

        Raises:
            IdempotencyStoreError: If deletion fails.
        """
        try:
            with self._connection() as conn:
                cursor = conn.execute(
                    self._DELETE_EXPIRED_SQL, {"now": format_timestamp(now), "limit": limit}
                )
                return max(cursor.rowcount, 0)
        except sqlite3.Error as e:
            raise IdempotencyStoreError(f"Failed to delete expired idempotency records: {e}") from e

    def close(self) -> None:
        """Close the calling thread's connection (or the shared in-memory one)."""
        if self._in_memory:
            if self._shared_conn is not None:
                with contextlib.suppress(sqlite3.Error):
                    self._shared_conn.close()
                self._shared_conn = None
            return

        conn = getattr(self._local, "conn", None)
        if conn is not None:
            with contextlib.suppress(sqlite3.Error):
                conn.close()
            self._local.conn = None


def create_idempotency_store(db_path: str | None = None) -> SqliteIdempotencyStore:
    """Factory function to create an idempotency store.

    Args:
        db_path: Optional path to SQLite database. If None, uses environment
            variable or default path.

    Returns:
        Configured SqliteIdempotencyStore instance.
    """
    return SqliteIdempotencyStore(db_path=db_path)
