"""
Request Context Middleware Tests.

WHAT: Unit tests for the RequestContextMiddleware and the logging filter
that reads its ContextVar.

WHY: Every log line written while a webhook is handled carries the
request ID, and rejected deliveries are traced back by client IP.

HOW: Builds raw ASGI scopes and calls dispatch directly.
"""

import logging
from unittest.mock import MagicMock

import pytest
from starlette.requests import Request
from starlette.responses import Response

from billing_sync.core.logging_config import RequestIdFilter
from billing_sync.middleware.request_context import (
    RequestContext,
    RequestContextMiddleware,
    _request_context,
    get_client_ip,
    get_request_context,
)


def make_request(
    headers: dict = None,
    client_host: str = None,
    method: str = "POST",
    path: str = "/api/webhooks/stripe",
) -> Request:
    """Build a Request from a minimal ASGI scope."""
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (client_host, 443) if client_host else None,
    }
    return Request(scope)


class TestGetClientIp:
    """Tests for the get_client_ip function."""

    def test_x_real_ip_wins(self):
        """X-Real-IP takes priority over forwarded chains and the socket."""
        request = make_request(
            headers={"X-Real-IP": "54.187.174.169", "X-Forwarded-For": "1.2.3.4"},
            client_host="10.0.0.1",
        )
        assert get_client_ip(request) == "54.187.174.169"

    def test_first_forwarded_for_entry(self):
        request = make_request(
            headers={"X-Forwarded-For": " 54.187.205.235 , 70.41.3.18"},
            client_host="10.0.0.1",
        )
        assert get_client_ip(request) == "54.187.205.235"

    def test_direct_connection(self):
        request = make_request(client_host="10.0.0.7")
        assert get_client_ip(request) == "10.0.0.7"

    def test_unknown_fallback(self):
        """No headers and no client socket."""
        assert get_client_ip(make_request()) == "unknown"


class TestGetRequestContext:
    """Tests for reading the ContextVar outside a request."""

    def test_none_by_default(self):
        assert get_request_context() is None

    def test_returns_set_context(self):
        ctx = RequestContext(
            request_id="req-1",
            ip_address="10.0.0.1",
            user_agent="Stripe/1.0 (+https://stripe.com/docs/webhooks)",
            path="/api/webhooks/stripe",
            method="POST",
        )
        token = _request_context.set(ctx)
        try:
            assert get_request_context() is ctx
        finally:
            _request_context.reset(token)


@pytest.mark.asyncio
class TestRequestContextMiddleware:
    """Tests for the RequestContextMiddleware class."""

    async def test_generates_request_id(self):
        """
        A UUID4 request ID is generated when the caller sends none.

        WHY: Stripe does not send a request ID; the generated one is echoed
        so a failed delivery in the Stripe dashboard can be matched to logs.
        """
        async def call_next(req):
            return Response(content="OK", status_code=200)

        middleware = RequestContextMiddleware(app=MagicMock())
        response = await middleware.dispatch(make_request(), call_next)

        assert len(response.headers["X-Request-ID"]) == 36

    async def test_keeps_incoming_request_id(self):
        async def call_next(req):
            return Response(content="OK", status_code=200)

        middleware = RequestContextMiddleware(app=MagicMock())
        response = await middleware.dispatch(
            make_request(headers={"X-Request-ID": "req-from-proxy"}),
            call_next,
        )

        assert response.headers["X-Request-ID"] == "req-from-proxy"

    async def test_context_available_during_request(self):
        """Route handlers see request.state.context; services see the ContextVar."""
        seen = {}

        async def call_next(req):
            seen["state"] = req.state.context
            seen["var"] = get_request_context()
            return Response(content="OK", status_code=200)

        request = make_request(
            headers={"X-Real-IP": "54.187.174.169", "User-Agent": "Stripe/1.0"},
        )
        middleware = RequestContextMiddleware(app=MagicMock())
        await middleware.dispatch(request, call_next)

        assert seen["state"] is seen["var"]
        assert seen["var"].ip_address == "54.187.174.169"
        assert seen["var"].user_agent == "Stripe/1.0"
        assert seen["var"].path == "/api/webhooks/stripe"
        assert seen["var"].method == "POST"

    async def test_context_cleared_after_request(self):
        async def call_next(req):
            return Response(content="OK", status_code=200)

        middleware = RequestContextMiddleware(app=MagicMock())
        await middleware.dispatch(make_request(), call_next)

        assert get_request_context() is None

    async def test_context_cleared_on_error(self):
        """Errors in handlers should not leak context into the next request."""
        async def call_next(req):
            raise ValueError("handler failed")

        middleware = RequestContextMiddleware(app=MagicMock())

        with pytest.raises(ValueError):
            await middleware.dispatch(make_request(), call_next)

        assert get_request_context() is None


class TestRequestIdFilter:
    """Tests for stamping log records with the request ID."""

    def _record(self) -> logging.LogRecord:
        return logging.LogRecord("billing_sync", logging.INFO, __file__, 1, "msg", None, None)

    def test_dash_outside_request(self):
        record = self._record()
        assert RequestIdFilter().filter(record) is True
        assert record.request_id == "-"

    def test_request_id_inside_request(self):
        ctx = RequestContext(
            request_id="req-42",
            ip_address="10.0.0.1",
            user_agent=None,
            path="/api/webhooks/stripe",
            method="POST",
        )
        token = _request_context.set(ctx)
        try:
            record = self._record()
            RequestIdFilter().filter(record)
            assert record.request_id == "req-42"
        finally:
            _request_context.reset(token)
