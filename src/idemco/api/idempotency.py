"""HTTP boundary of the idempotent operation coordinator.

Route handlers declare an ``IdempotencyContextDep`` parameter and hand their
business callback to ``idempotent_response``. The stored response bytes are
sent verbatim, so a replay is byte-identical to the first response and differs
only by the Idempotency-Replayed header.

Headers:
- Idempotency-Key (request): opaque key; absence disables deduplication unless
  the operation mandates a key (400 IDEMPOTENCY_KEY_REQUIRED)
- Idempotency-Key (response): echoed when a key was used
- Idempotency-Replayed (response): "true" for a replay, "false" otherwise
- Idempotency-Recorded (response): "false" when the effect was applied but its
  completion could not be stored
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, Request, Response

from idemco.api.errors import IdemcoHttpError
from idemco.idempotency.coordinator import IdempotencyCoordinator
from idemco.idempotency.keys import IDEMPOTENCY_KEY_HEADER, extract_idempotency_key
from idemco.idempotency.models import IdempotencyOperation, Linkage
from idemco.idempotency.serialization import serialize_response

IDEMPOTENCY_REPLAYED_HEADER = "Idempotency-Replayed"
IDEMPOTENCY_RECORDED_HEADER = "Idempotency-Recorded"


@dataclass(frozen=True)
class IdempotencyContext:
    """Per-request inputs for the coordinator."""

    coordinator: IdempotencyCoordinator
    tenant_id: str
    idempotency_key: str | None


def get_coordinator(request: Request) -> IdempotencyCoordinator:
    """Return the coordinator configured on the application."""
    coordinator: IdempotencyCoordinator = request.app.state.idempotency_coordinator
    return coordinator


def require_tenant_id(request: Request) -> str:
    """Return the tenant resolved for this request.

    Raises:
        IdemcoHttpError: 400 TENANT_REQUIRED when no tenant was resolved.
    """
    tenant_id: str | None = getattr(request.state, "tenant_id", None)
    if not tenant_id:
        raise IdemcoHttpError(
            status_code=400,
            code="TENANT_REQUIRED",
            message="Tenant could not be resolved for this request",
        )
    return tenant_id


CoordinatorDep = Annotated[IdempotencyCoordinator, Depends(get_coordinator)]
TenantIdDep = Annotated[str, Depends(require_tenant_id)]


def get_idempotency_context(
    request: Request, coordinator: CoordinatorDep, tenant_id: TenantIdDep
) -> IdempotencyContext:
    """Build the idempotency context from the request.

    Raises:
        IdempotencyKeyInvalidError: If the Idempotency-Key header is malformed.
    """
    return IdempotencyContext(
        coordinator=coordinator,
        tenant_id=tenant_id,
        idempotency_key=extract_idempotency_key(request.headers, coordinator.config),
    )


IdempotencyContextDep = Annotated[IdempotencyContext, Depends(get_idempotency_context)]


def idempotent_response(
    ctx: IdempotencyContext,
    operation: IdempotencyOperation | str,
    callback: Callable[[], Any],
    linkage: Linkage | None = None,
    request_fingerprint: str | None = None,
    status_code: int = 200,
    conn: Any | None = None,
) -> Response:
    """Run ``callback`` through the coordinator and build the HTTP response.

    Coordinator errors propagate to the registered exception handlers; callback
    errors propagate unchanged. ``conn`` is forwarded to the coordinator so the
    completion joins the handler's transaction.
    """
    result = ctx.coordinator.execute(
        ctx.idempotency_key,
        ctx.tenant_id,
        operation,
        callback,
        linkage=linkage,
        request_fingerprint=request_fingerprint,
        conn=conn,
    )

    body = result.response if result.response is not None else serialize_response(result.value)
    headers = {IDEMPOTENCY_REPLAYED_HEADER: "true" if result.replayed else "false"}
    if result.idempotency_key is not None:
        headers[IDEMPOTENCY_KEY_HEADER] = result.idempotency_key
    if not result.recorded:
        headers[IDEMPOTENCY_RECORDED_HEADER] = "false"

    return Response(
        content=body,
        status_code=status_code,
        media_type="application/json",
        headers=headers,
    )
