"""
Email service for sending transactional billing emails.

WHAT: This service provides a unified interface for sending emails through
an email provider (Resend), with a mock provider for development and tests.

WHY: Billing emails tell users what happened to their money:
1. Welcome - A plan was purchased
2. Receipts - A renewal payment went through
3. Dunning - A payment failed and needs attention
4. Cancellation - Access is ending

HOW: Uses the Resend REST API over httpx. The service abstracts provider
details and provides:
- Async sending for non-blocking operation
- Error handling with custom exceptions
- Logging for every send attempt

Design decisions:
- Provider abstraction: Easy to switch providers
- Fail-safe: Callers decide whether a failed send matters; billing
  notifications never fail a webhook
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from billing_sync.core.config import Settings
from billing_sync.core.exceptions import EmailServiceError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass
class EmailMessage:
    """
    Represents an email to be sent.

    WHAT: Data container for email content and metadata.
    """

    to_email: str
    """Recipient email address."""

    subject: str
    """Email subject line."""

    html_content: str
    """HTML email body."""

    text_content: Optional[str] = None
    """Plain text fallback."""

    from_email: Optional[str] = None
    """Sender (defaults to the service's configured sender)."""

    reply_to: Optional[str] = None
    """Reply-to address."""

    tag: Optional[str] = None
    """Category used for provider-side tracking (e.g. payment_failed)."""

    metadata: Optional[Dict[str, Any]] = None
    """Additional metadata for logging."""


@dataclass
class EmailResult:
    """
    Result of an email send operation.

    WHY: Provides feedback on email send status for error handling and logs.
    """

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    provider: Optional[str] = None


# ============================================================================
# Email Provider Interface
# ============================================================================


class EmailProvider(ABC):
    """
    Abstract base class for email providers.

    WHY: Provider abstraction allows:
    - Easy switching between providers
    - Testing with mock providers
    """

    @abstractmethod
    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Send an email message.

        Args:
            message: The email message to send

        Returns:
            EmailResult with success status and provider details
        """
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """
        Check if this provider is properly configured.

        Returns:
            True if API keys/credentials are present
        """
        pass


class ResendProvider(EmailProvider):
    """
    Resend email provider implementation.

    WHY: Resend provides a simple, developer-friendly API with good
    deliverability.
    """

    def __init__(
        self,
        api_key: Optional[str],
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Resend provider.

        Args:
            api_key: Resend API key
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        """Check if Resend API key is configured."""
        return bool(self._api_key)

    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Send email via Resend API.

        HOW: Uses httpx for async HTTP requests to the Resend API.

        Args:
            message: Email message to send

        Returns:
            EmailResult with send status
        """
        if not self.is_configured():
            return EmailResult(
                success=False,
                error="Resend API key not configured",
                provider="resend",
            )

        body: Dict[str, Any] = {
            "from": message.from_email,
            "to": [message.to_email],
            "subject": message.subject,
            "html": message.html_content,
        }
        if message.text_content:
            body["text"] = message.text_content
        if message.reply_to:
            body["reply_to"] = message.reply_to
        if message.tag:
            body["tags"] = [{"name": "category", "value": message.tag}]

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    json=body,
                )

            if response.status_code in (200, 201):
                data = response.json()
                return EmailResult(
                    success=True,
                    message_id=data.get("id"),
                    provider="resend",
                )
            return EmailResult(
                success=False,
                error=f"Resend API error: {response.status_code} - {response.text}",
                provider="resend",
            )

        except httpx.HTTPError as e:
            logger.error(f"Resend send error: {e}")
            return EmailResult(
                success=False,
                error=str(e),
                provider="resend",
            )


class MockEmailProvider(EmailProvider):
    """
    Mock email provider for testing and development.

    WHY: Allows testing email flows without sending real emails.
    Logs emails instead of sending them.
    """

    sent_emails: List[EmailMessage] = []
    """Class-level list to track sent emails for testing."""

    def is_configured(self) -> bool:
        """Mock provider is always configured."""
        return True

    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Mock send - logs email instead of sending.

        Returns:
            Always returns success
        """
        logger.info(
            f"[MOCK EMAIL] To: {message.to_email}, "
            f"Subject: {message.subject}, "
            f"Tag: {message.tag}"
        )

        MockEmailProvider.sent_emails.append(message)

        return EmailResult(
            success=True,
            message_id=f"mock-{datetime.now(timezone.utc).timestamp()}",
            provider="mock",
        )

    @classmethod
    def clear_sent_emails(cls):
        """Clear sent emails list (for test cleanup)."""
        cls.sent_emails = []


# ============================================================================
# Email Service
# ============================================================================


class EmailService:
    """
    High-level email service for sending transactional emails.

    WHAT: Sends a composed message through the configured provider.

    WHY: Centralizes email logic:
    - Provider abstraction
    - Default sender
    - Error handling and logging
    """

    def __init__(
        self,
        provider: EmailProvider,
        from_email: str,
        from_name: Optional[str] = None,
    ):
        """
        Initialize email service.

        Args:
            provider: Email provider to use
            from_email: Sender address
            from_name: Sender display name
        """
        self._provider = provider
        self.default_from = f"{from_name} <{from_email}>" if from_name else from_email

    @property
    def provider(self) -> EmailProvider:
        return self._provider

    async def send_email(self, message: EmailMessage) -> EmailResult:
        """
        Send an email message.

        WHAT: Sends an email using the configured provider.

        Args:
            message: Email message to send

        Returns:
            EmailResult with send status

        Raises:
            EmailServiceError: If the provider did not accept the message
        """
        if not message.from_email:
            message.from_email = self.default_from

        logger.info(
            f"Sending {message.tag or 'transactional'} email to {message.to_email}",
            extra={
                "email_tag": message.tag,
                "to": message.to_email,
            },
        )

        result = await self._provider.send(message)

        if not result.success:
            raise EmailServiceError(
                message="Email send failed",
                provider=result.provider,
                error=result.error,
                email_tag=message.tag,
            )

        logger.info(
            f"Email sent successfully: {result.message_id}",
            extra={
                "message_id": result.message_id,
                "provider": result.provider,
            },
        )
        return result


def get_email_service(settings: Settings) -> EmailService:
    """
    Build the email service for the given settings.

    WHY: Falls back to the mock provider when no Resend key is set so
    development environments never send real mail.

    Args:
        settings: Application settings

    Returns:
        EmailService instance
    """
    if settings.RESEND_API_KEY:
        provider: EmailProvider = ResendProvider(
            settings.RESEND_API_KEY.get_secret_value(),
            timeout=settings.EMAIL_SEND_TIMEOUT_SECONDS,
        )
    else:
        logger.warning("No email provider configured, using mock provider")
        provider = MockEmailProvider()

    return EmailService(
        provider=provider,
        from_email=settings.EMAIL_FROM_ADDRESS,
        from_name=settings.EMAIL_FROM_NAME,
    )
