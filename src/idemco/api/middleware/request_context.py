"""Request context middleware for the idemco API.

Attaches a request ID to every request and exposes the already-resolved tenant
on ``request.state.tenant_id``. Authentication and tenant resolution happen
upstream. The X-Tenant-Id header is a client-controlled value, so it is only
read when the deployment opts in with IDEMCO_TRUST_TENANT_HEADER=1 (a gateway
that strips and re-sets the header, or local development and tests).
"""

import os
import uuid
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from idemco.api.error_model import REQUEST_ID_HEADER

TENANT_ID_HEADER = "X-Tenant-Id"
IDEMCO_TRUST_TENANT_HEADER_ENV = "IDEMCO_TRUST_TENANT_HEADER"


def tenant_header_trusted() -> bool:
    """Check whether IDEMCO_TRUST_TENANT_HEADER enables the tenant header."""
    return os.environ.get(IDEMCO_TRUST_TENANT_HEADER_ENV, "").strip().lower() in (
        "1",
        "true",
        "yes",
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware that attaches request ID and tenant to every request.

    Behavior:
    - Request ID: non-empty X-Request-Id header, else a generated uuid4; echoed
      back in the response X-Request-Id header.
    - Tenant: keep request.state.tenant_id if already set; else, only when
      ``trust_tenant_header`` is True, the stripped X-Tenant-Id header; else None.
    """

    def __init__(
        self,
        app: ASGIApp,
        trust_tenant_header: bool = False,
        tenant_header: str = TENANT_ID_HEADER,
    ) -> None:
        super().__init__(app)
        self._trust_tenant_header = trust_tenant_header
        self._tenant_header = tenant_header

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Process the request and attach request context."""
        incoming_request_id = request.headers.get(REQUEST_ID_HEADER)
        if incoming_request_id and incoming_request_id.strip():
            request_id = incoming_request_id.strip()
        else:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        if getattr(request.state, "tenant_id", None) is None:
            raw_tenant = ""
            if self._trust_tenant_header:
                raw_tenant = request.headers.get(self._tenant_header, "").strip()
            request.state.tenant_id = raw_tenant or None

        response: Response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        return response
