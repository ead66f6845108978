"""
Unit tests for the email service and providers.

WHAT: Tests ResendProvider request building and error mapping, the mock
provider, and EmailService's sender defaults and failure handling.

HOW: Resend is replaced by httpx.MockTransport so no network is used.
"""

import json

import httpx
import pytest
from pydantic import SecretStr

from billing_sync.core.exceptions import EmailServiceError
from billing_sync.services.email import (
    RESEND_API_URL,
    EmailMessage,
    EmailService,
    MockEmailProvider,
    ResendProvider,
    get_email_service,
)


def make_message(**overrides) -> EmailMessage:
    values = {
        "to_email": "customer@example.com",
        "subject": "Payment received: 29.00 USD",
        "html_content": "<p>Thanks</p>",
        "text_content": "Thanks",
        "from_email": "Billing <billing@example.com>",
        "tag": "payment_succeeded",
    }
    values.update(overrides)
    return EmailMessage(**values)


@pytest.mark.asyncio
class TestResendProvider:
    """Tests for the Resend provider."""

    async def test_send_success(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "re_123"})

        provider = ResendProvider("re_key", transport=httpx.MockTransport(handler))
        result = await provider.send(make_message())

        assert result.success is True
        assert result.message_id == "re_123"
        assert captured["url"] == RESEND_API_URL
        assert captured["auth"] == "Bearer re_key"
        assert captured["body"]["to"] == ["customer@example.com"]
        assert captured["body"]["text"] == "Thanks"
        assert captured["body"]["tags"] == [{"name": "category", "value": "payment_succeeded"}]

    async def test_api_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(422, text="invalid from"))
        provider = ResendProvider("re_key", transport=transport)

        result = await provider.send(make_message())

        assert result.success is False
        assert "422" in result.error

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = ResendProvider("re_key", transport=httpx.MockTransport(handler))
        result = await provider.send(make_message())

        assert result.success is False
        assert "connection refused" in result.error

    async def test_not_configured(self):
        provider = ResendProvider(None)

        result = await provider.send(make_message())

        assert provider.is_configured() is False
        assert result.success is False


@pytest.mark.asyncio
class TestEmailService:
    """Tests for EmailService."""

    async def test_default_sender(self):
        service = EmailService(MockEmailProvider(), "billing@example.com", "Acme Billing")

        await service.send_email(make_message(from_email=None))

        assert MockEmailProvider.sent_emails[0].from_email == "Acme Billing <billing@example.com>"

    async def test_failed_send_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        service = EmailService(
            ResendProvider("re_key", transport=transport), "billing@example.com"
        )

        with pytest.raises(EmailServiceError) as exc_info:
            await service.send_email(make_message())

        assert exc_info.value.context["provider"] == "resend"
        assert exc_info.value.context["email_tag"] == "payment_succeeded"


class TestGetEmailService:
    """Tests for provider selection."""

    def test_mock_without_key(self, test_settings):
        assert isinstance(get_email_service(test_settings).provider, MockEmailProvider)

    def test_resend_with_key(self, test_settings):
        settings = test_settings.model_copy(update={"RESEND_API_KEY": SecretStr("re_key")})
        service = get_email_service(settings)

        assert isinstance(service.provider, ResendProvider)
        assert service.default_from == "Billing <billing@localhost>"

    def test_resend_uses_configured_timeout(self, test_settings):
        settings = test_settings.model_copy(
            update={"RESEND_API_KEY": SecretStr("re_key"), "EMAIL_SEND_TIMEOUT_SECONDS": 1.5}
        )

        assert get_email_service(settings).provider._timeout == 1.5
