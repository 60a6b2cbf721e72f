"""Operator routes for idempotency records.

Provides:
- GET /v1/idempotency/records/{idempotency_key}: tenant-scoped record inspection
- POST /v1/idempotency/purge: delete physically expired records
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from idemco.api.errors import IdemcoHttpError
from idemco.api.idempotency import CoordinatorDep, TenantIdDep
from idemco.idempotency.cleanup import DEFAULT_PURGE_BATCH_SIZE, purge_expired_records
from idemco.idempotency.models import IdempotencyRecord, IdempotencyStatus
from idemco.idempotency.serialization import deserialize_response

router = APIRouter(prefix="/v1/idempotency", tags=["Idempotency"])


class IdempotencyRecordView(BaseModel):
    """Externally visible view of an idempotency record.

    The stored response is included only for COMPLETED records.
    """

    tenant_id: str
    idempotency_key: str
    operation: str
    status: IdempotencyStatus
    entity_type: str | None = None
    entity_id: str | None = None
    attempts: int
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    response: Any | None = None

    @classmethod
    def from_record(cls, record: IdempotencyRecord) -> IdempotencyRecordView:
        response = None
        if record.status == IdempotencyStatus.COMPLETED and record.response is not None:
            response = deserialize_response(record.response)
        return cls(
            tenant_id=record.tenant_id,
            idempotency_key=record.idempotency_key,
            operation=record.operation.value,
            status=record.status,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            attempts=record.attempts,
            expires_at=record.expires_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
            response=response,
        )


class PurgeRequest(BaseModel):
    batch_size: int = Field(default=DEFAULT_PURGE_BATCH_SIZE, gt=0, le=100_000)


class PurgeResponse(BaseModel):
    deleted: int


@router.get("/records/{idempotency_key:path}", response_model=IdempotencyRecordView)
def get_idempotency_record(
    idempotency_key: str, tenant_id: TenantIdDep, coordinator: CoordinatorDep
) -> IdempotencyRecordView:
    """Inspect the live record for a key within the caller's tenant.

    Raises:
        IdemcoHttpError: 404 if no live record exists (absent or expired).
    """
    record = coordinator.lookup(tenant_id, idempotency_key)
    if record is None:
        raise IdemcoHttpError(
            status_code=404,
            code="NOT_FOUND",
            message="Idempotency record not found",
        )
    return IdempotencyRecordView.from_record(record)


@router.post("/purge", response_model=PurgeResponse)
def purge_idempotency_records(
    coordinator: CoordinatorDep, body: PurgeRequest | None = None
) -> PurgeResponse:
    """Delete every expired record across tenants and report the count."""
    batch_size = body.batch_size if body is not None else DEFAULT_PURGE_BATCH_SIZE
    deleted = purge_expired_records(coordinator.store, coordinator.now(), batch_size)
    return PurgeResponse(deleted=deleted)
