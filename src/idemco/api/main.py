"""idemco FastAPI application factory.

This module provides the create_app() factory for bootstrapping the idemco API.
Business services mount their own routers on the returned app and wrap their
side-effecting handlers with ``idemco.api.idempotency.idempotent_response``.
"""

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from idemco import __version__
from idemco.api.errors import (
    IdemcoHttpError,
    generic_exception_handler,
    http_exception_handler,
    idemco_http_error_handler,
    idempotency_error_handler,
    request_validation_error_handler,
)
from idemco.api.middleware.request_context import (
    RequestContextMiddleware,
    tenant_header_trusted,
)
from idemco.api.routes.health import router as health_router
from idemco.api.routes.idempotency import router as idempotency_router
from idemco.idempotency.coordinator import IdempotencyCoordinator, create_coordinator
from idemco.idempotency.errors import IdempotencyError
from idemco.observability.tracing import configure_tracing, instrument_fastapi


def create_app(
    coordinator: IdempotencyCoordinator | None = None,
    routers: list[APIRouter] | None = None,
    trust_tenant_header: bool | None = None,
) -> FastAPI:
    """Create and configure the idemco FastAPI application.

    This factory:
    - Creates a FastAPI app with idemco metadata
    - Stores the coordinator on app.state for the idempotency dependencies
    - Registers RequestContextMiddleware (request_id + tenant)
    - Registers exception handlers, coordinator errors included
    - Mounts the health and idempotency operator routers, then ``routers``

    Args:
        coordinator: Optional coordinator for testing. If None, one is created
            with the configured store (PostgreSQL when IDEMCO_DATABASE_URL is
            set, SQLite otherwise).
        routers: Additional business routers to mount.
        trust_tenant_header: Resolve the tenant from the X-Tenant-Id header
            when nothing upstream set one. If None, IDEMCO_TRUST_TENANT_HEADER
            decides (off by default).

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="idemco API",
        description="Idempotent operation coordinator",
        version=__version__,
    )

    app.state.idempotency_coordinator = (
        coordinator if coordinator is not None else create_coordinator()
    )

    configure_tracing()

    if trust_tenant_header is None:
        trust_tenant_header = tenant_header_trusted()
    app.add_middleware(RequestContextMiddleware, trust_tenant_header=trust_tenant_header)

    instrument_fastapi(app)

    app.add_exception_handler(IdempotencyError, idempotency_error_handler)
    app.add_exception_handler(IdemcoHttpError, idemco_http_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health_router)
    app.include_router(idempotency_router)
    for router in routers or []:
        app.include_router(router)

    return app
