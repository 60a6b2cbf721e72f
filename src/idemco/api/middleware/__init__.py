"""idemco API middleware."""

from idemco.api.middleware.request_context import RequestContextMiddleware

__all__ = ["RequestContextMiddleware"]
