"""
Middleware package.

WHY: Middleware provides cross-cutting concerns (request correlation)
that apply to every request, including webhook deliveries.
"""

from billing_sync.middleware.request_context import (
    RequestContextMiddleware,
    get_request_context,
    get_client_ip,
    RequestContext,
)

__all__ = [
    "RequestContextMiddleware",
    "get_request_context",
    "get_client_ip",
    "RequestContext",
]
