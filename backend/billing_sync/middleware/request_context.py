"""
Request context middleware for log correlation.

WHAT: Middleware that extracts request context (request ID, client IP,
user agent) and makes it available throughout the request lifecycle.

WHY: A single webhook delivery produces log lines from the ingestor, the
reconciler and the notification dispatcher. Stamping all of them with the
same request ID lets an operator follow one delivery end to end, and the
client IP shows where a rejected (badly signed) request came from.

HOW: Uses Starlette's request state plus a ContextVar so services can read
the context without the request object. The logging RequestIdFilter reads
the same ContextVar.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


@dataclass(frozen=True)
class RequestContext:
    """
    Container for request-scoped context data.

    Fields:
    - request_id: Unique identifier for the request (for log correlation)
    - ip_address: Client's real IP (considering proxies)
    - user_agent: Client's identifier (Stripe sends "Stripe/1.0")
    - path: Request path
    - method: HTTP method
    """

    request_id: str
    ip_address: str
    user_agent: Optional[str]
    path: str
    method: str


_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> Optional[RequestContext]:
    """
    Get the current request context.

    Returns:
        RequestContext if within a request, None otherwise
    """
    return _request_context.get()


def get_client_ip(request: Request) -> str:
    """
    Extract the real client IP address from a request.

    HOW: Checks headers in order of trust:
    1. X-Real-IP (set by some proxies like nginx)
    2. X-Forwarded-For (comma-separated list, first is original client)
    3. request.client.host (direct connection IP)

    Args:
        request: The incoming request

    Returns:
        Client IP address as string
    """
    x_real_ip = request.headers.get("X-Real-IP")
    if x_real_ip:
        return x_real_ip.strip()

    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that captures and stores request context.

    HOW: Stores context in both request.state (for route handlers) and
    a ContextVar (for services and the logging filter), and echoes the
    request ID back in the X-Request-ID response header.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        context = RequestContext(
            request_id=request_id,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
            path=request.url.path,
            method=request.method,
        )

        request.state.context = context
        token = _request_context.set(context)

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            _request_context.reset(token)
