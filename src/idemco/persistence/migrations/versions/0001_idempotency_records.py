"""Idempotency records table.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates idempotency_records:
- Primary key (tenant_id, idempotency_key): the uniqueness constraint the
  coordinator's atomic claim relies on
- Status constrained to PROCESSING / COMPLETED / FAILED
- Non-unique index on expires_at for cleanup scans
"""

from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Apply migration: create idempotency_records and its expiry index."""

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS idempotency_records (
            tenant_id TEXT NOT NULL,
            idempotency_key TEXT NOT NULL,
            operation TEXT NOT NULL,
            status TEXT NOT NULL,
            response BYTEA,
            entity_type TEXT,
            entity_id TEXT,
            request_fingerprint TEXT,
            claim_token TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 1,
            expires_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL,
            PRIMARY KEY (tenant_id, idempotency_key),
            CONSTRAINT ck_idempotency_records_status
                CHECK (status IN ('PROCESSING', 'COMPLETED', 'FAILED')),
            CONSTRAINT ck_idempotency_records_response
                CHECK (status <> 'COMPLETED' OR response IS NOT NULL)
        )
        """
    )

    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_idempotency_records_expires_at
        ON idempotency_records (expires_at)
        """
    )


def downgrade() -> None:
    """Revert migration: drop idempotency_records."""
    op.execute("DROP INDEX IF EXISTS ix_idempotency_records_expires_at")
    op.execute("DROP TABLE IF EXISTS idempotency_records")
