"""
Billing notification dispatcher.

WHAT: Turns notifications queued by the reconciler into sent emails.

WHY: Users need to hear about billing changes (welcome, receipts, failed
payments, cancellations), but email is best-effort. A provider outage must
never fail a webhook, or Stripe would redeliver an event whose state change
has already been committed.

HOW: The reconciler returns PendingNotification objects; the ingestor
hands them to the dispatcher only after the reconciler's transaction has
committed. The dispatcher renders the matching template, sends it, and
swallows delivery failures after logging them. No retries.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from billing_sync.core.exceptions import EmailServiceError
from billing_sync.services.email import EmailMessage, EmailService
from billing_sync.services.email_template_service import EmailTemplateService

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    """Billing emails the dispatcher knows how to send."""

    WELCOME_TO_PLAN = "welcome_to_plan"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


@dataclass(frozen=True)
class PendingNotification:
    """
    A notification produced by a committed state change.

    Attributes:
        kind: Which email to send
        recipient_email: Where to send it (None when unknown)
        user_id: Local user the email is about, for logs
        context: Template variables for the kind's render method
    """

    kind: NotificationKind
    recipient_email: Optional[str]
    user_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


class BillingNotificationDispatcher:
    """
    Sends billing emails for pending notifications.

    WHAT: Best-effort, fire-and-forget delivery.

    WHY: Keeps email failure out of the webhook's success path.
    """

    def __init__(
        self,
        email_service: EmailService,
        template_service: EmailTemplateService,
    ):
        """
        Initialize dispatcher.

        Args:
            email_service: Service that hands messages to the email provider
            template_service: Renders subject, HTML and text for each kind
        """
        self._email_service = email_service
        self._template_service = template_service
        self._renderers: Dict[NotificationKind, Callable[..., tuple]] = {
            NotificationKind.WELCOME_TO_PLAN: template_service.render_welcome_to_plan_email,
            NotificationKind.PAYMENT_SUCCEEDED: template_service.render_payment_succeeded_email,
            NotificationKind.PAYMENT_FAILED: template_service.render_payment_failed_email,
            NotificationKind.SUBSCRIPTION_CANCELED: template_service.render_subscription_canceled_email,
        }

    async def dispatch(self, notification: PendingNotification) -> bool:
        """
        Render and send one notification.

        Args:
            notification: Notification to deliver

        Returns:
            True if the provider accepted the email, False otherwise.
            Never raises.
        """
        log_extra = {
            "notification_kind": notification.kind.value,
            "user_id": notification.user_id,
        }

        if not notification.recipient_email:
            logger.warning(
                f"No recipient for {notification.kind.value} notification, skipping",
                extra=log_extra,
            )
            return False

        try:
            render = self._renderers[notification.kind]
            subject, html_content, text_content = render(**notification.context)

            await self._email_service.send_email(
                EmailMessage(
                    to_email=notification.recipient_email,
                    subject=subject,
                    html_content=html_content,
                    text_content=text_content,
                    tag=notification.kind.value,
                    metadata={"user_id": notification.user_id},
                )
            )
        except EmailServiceError as e:
            logger.error(
                f"Failed to send {notification.kind.value} notification: {e.message}",
                extra={**log_extra, **e.context},
            )
            return False
        except TypeError as e:
            # Context does not match the render method's signature
            logger.error(
                f"Invalid context for {notification.kind.value} notification: {e}",
                extra=log_extra,
            )
            return False

        logger.info(
            f"Sent {notification.kind.value} notification",
            extra=log_extra,
        )
        return True
