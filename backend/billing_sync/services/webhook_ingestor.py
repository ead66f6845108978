"""
Stripe webhook ingestor.

WHAT: The front door for Stripe webhooks: authenticate, parse, reconcile,
then notify.

WHY: Each step has different failure semantics that the HTTP response must
reflect. Stripe retries any non-2xx response, so:
- Forged or malformed requests fail fast (400) and touch nothing
- Permanent problems with an event are acknowledged (200) so retries stop
- Transient problems return 5xx so Stripe redelivers later
- Email problems never affect the response

HOW: Signature verification runs in a worker thread under a short timeout.
Reconciliation runs under the request's processing deadline. Notifications
are dispatched only after the reconciler has committed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from billing_sync.core.exceptions import WebhookProcessingTimeoutError, WebhookSignatureError
from billing_sync.models.webhook_event import EventOutcome
from billing_sync.services.billing_events import WebhookEvent
from billing_sync.services.notifications import BillingNotificationDispatcher, PendingNotification
from billing_sync.services.reconciler import SubscriptionReconciler
from billing_sync.services.stripe_service import StripeService

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """
    Outcome of handling one webhook delivery.

    Attributes:
        event_id: Stripe event ID
        event_type: Raw Stripe event type
        outcome: What the reconciler did
        notifications_sent: Emails the provider accepted
        notifications_failed: Emails that could not be sent
        detail: Short reason for non-applied outcomes
    """

    event_id: str
    event_type: str
    outcome: EventOutcome
    notifications_sent: int = 0
    notifications_failed: int = 0
    detail: Optional[str] = None


class WebhookIngestor:
    """
    Handles a raw Stripe webhook delivery end to end.

    WHAT: Verifies, parses and routes events to the reconciler, then
    dispatches the resulting notifications.
    """

    def __init__(
        self,
        stripe_service: StripeService,
        reconciler: SubscriptionReconciler,
        dispatcher: BillingNotificationDispatcher,
        verify_timeout: float = 2.0,
        processing_timeout: float = 10.0,
        notification_timeout: float = 5.0,
    ):
        """
        Initialize ingestor.

        Args:
            stripe_service: Verifies signatures and parses events
            reconciler: Applies events to subscription state
            dispatcher: Sends notifications after commit
            verify_timeout: Seconds allowed for verification and parsing
            processing_timeout: Seconds allowed for reconciliation
            notification_timeout: Seconds allowed per email; a slow provider
                must not hold the response past Stripe's delivery timeout
        """
        self.stripe_service = stripe_service
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.verify_timeout = verify_timeout
        self.processing_timeout = processing_timeout
        self.notification_timeout = notification_timeout

    async def handle(self, payload: bytes, signature: Optional[str]) -> IngestResult:
        """
        Handle one webhook delivery.

        Args:
            payload: Raw request body, exactly as received
            signature: Stripe-Signature header value

        Returns:
            IngestResult for the response body

        Raises:
            WebhookSignatureError: Missing or invalid signature
            InvalidWebhookPayloadError: Verified body is not a valid event
            WebhookProcessingTimeoutError: A deadline was exceeded
            ConcurrentModificationError, TransientPersistenceError,
            StripeError: Retryable failures from the reconciler
        """
        if not signature:
            logger.warning("Webhook received without Stripe-Signature header")
            raise WebhookSignatureError(message="Missing Stripe-Signature header")

        event = await self._verify(payload, signature)
        log_extra = {"event_id": event.id, "event_type": event.raw_type}

        if not event.is_known:
            logger.info(f"Acknowledging unhandled event type {event.raw_type}", extra=log_extra)
            return IngestResult(
                event_id=event.id,
                event_type=event.raw_type,
                outcome=EventOutcome.IGNORED,
                detail="Unhandled event type",
            )

        try:
            result = await asyncio.wait_for(
                self.reconciler.apply(event),
                timeout=self.processing_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Processing webhook event {event.id} exceeded {self.processing_timeout}s",
                extra=log_extra,
            )
            raise WebhookProcessingTimeoutError(event_id=event.id)

        sent = failed = 0
        for notification in result.notifications:
            if await self._dispatch(notification, log_extra):
                sent += 1
            else:
                failed += 1

        return IngestResult(
            event_id=event.id,
            event_type=event.raw_type,
            outcome=result.outcome,
            notifications_sent=sent,
            notifications_failed=failed,
            detail=result.detail,
        )

    async def _verify(self, payload: bytes, signature: str) -> WebhookEvent:
        """Verify and parse off the event loop, bounded by verify_timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.stripe_service.verify_webhook_signature, payload, signature),
                timeout=self.verify_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Webhook verification exceeded {self.verify_timeout}s")
            raise WebhookProcessingTimeoutError(message="Webhook verification timed out")

    async def _dispatch(self, notification: PendingNotification, log_extra: dict) -> bool:
        """Send one notification, treating a send past notification_timeout as failed."""
        try:
            return await asyncio.wait_for(
                self.dispatcher.dispatch(notification),
                timeout=self.notification_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Sending {notification.kind.value} email exceeded {self.notification_timeout}s",
                extra={**log_extra, "notification_kind": notification.kind.value},
            )
            return False
