"""
Stripe service for webhook verification and subscription lookups.

WHAT: The only place the application talks to the Stripe SDK.

WHY: Subscription state is driven by Stripe webhooks, so this service must:
1. Prove a webhook body came from Stripe before anything reads it
2. Fetch a subscription when a checkout event does not carry its periods

HOW: Uses the Stripe Python SDK with:
- Signature verification over the raw body (HMAC-SHA256, timestamp tolerance)
- An explicit API key per call instead of the module-level ``stripe.api_key``
- Blocking SDK calls moved off the event loop with ``asyncio.to_thread``

Design decisions:
- Keys are passed to the constructor, never read from global settings
- Events are returned as plain dicts parsed into ``WebhookEvent`` so the
  reconciler does not depend on SDK object types
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import stripe

from billing_sync.core.exceptions import (
    InvalidWebhookPayloadError,
    StripeError,
    WebhookSignatureError,
)
from billing_sync.services.billing_events import SubscriptionSnapshot, WebhookEvent

logger = logging.getLogger(__name__)


class StripeService:
    """
    Service for Stripe operations.

    WHAT: Webhook verification plus read-only subscription retrieval.

    WHY: Keeps SDK error types and configuration out of the ingestor and
    reconciler, and makes both easy to test with a mocked service.
    """

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
        api_version: Optional[str] = None,
    ):
        """
        Initialize Stripe service.

        Args:
            secret_key: Stripe API secret key (sk_xxx)
            webhook_secret: Endpoint signing secret (whsec_xxx)
            tolerance: Maximum age in seconds of a signed timestamp
            api_version: Pinned Stripe API version for API calls
        """
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.api_version = api_version

    # ========================================================================
    # Webhook Handling
    # ========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> WebhookEvent:
        """
        Verify Stripe webhook signature and parse event.

        WHAT: Validates that the webhook came from Stripe, then parses it.

        WHY: Security critical (OWASP A02):
        - Prevents webhook forgery attacks
        - Ensures the body was not altered in transit
        - Rejects replays outside the tolerance window

        HOW: ``stripe.WebhookSignature.verify_header`` checks the v1
        HMAC-SHA256 signatures in the header against the exact bytes
        received. Only then is the body decoded as JSON.

        Args:
            payload: Raw request body bytes
            signature: Stripe-Signature header value

        Returns:
            WebhookEvent with verified event data

        Raises:
            WebhookSignatureError: If the header is missing or does not match
            InvalidWebhookPayloadError: If a verified body is not a valid event
        """
        if not signature:
            raise WebhookSignatureError(message="Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookSignatureError(message="Webhook body is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self._webhook_secret,
                self.tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError()

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise InvalidWebhookPayloadError(message=f"Webhook body is not valid JSON: {e.msg}")

        event = WebhookEvent.from_payload(data)

        logger.info(
            f"Verified webhook event {event.id} type {event.raw_type}",
            extra={
                "event_id": event.id,
                "event_type": event.raw_type,
            },
        )

        return event

    # ========================================================================
    # Subscriptions
    # ========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """
        Retrieve a subscription by ID.

        WHAT: Gets the current state of a Stripe subscription.

        WHY: checkout.session.completed usually carries only the
        subscription ID; the billing period has to be fetched.

        Args:
            subscription_id: Stripe subscription ID (sub_xxx)

        Returns:
            SubscriptionSnapshot of the subscription

        Raises:
            StripeError: If the subscription cannot be retrieved
        """
        try:
            subscription = await asyncio.to_thread(
                stripe.Subscription.retrieve,
                subscription_id,
                api_key=self._secret_key,
                stripe_version=self.api_version,
            )
        except stripe.StripeError as e:
            logger.error(
                f"Stripe subscription retrieval error: {e}",
                extra={"stripe_subscription_id": subscription_id},
            )
            raise StripeError(
                message="Failed to retrieve subscription",
                stripe_error=str(e),
                stripe_subscription_id=subscription_id,
            )

        return SubscriptionSnapshot.from_object(self._to_dict(subscription))

    @staticmethod
    def _to_dict(stripe_object: Any) -> Dict[str, Any]:
        """Convert a StripeObject (or plain dict) into nested plain dicts."""
        if isinstance(stripe_object, dict) and not isinstance(stripe_object, stripe.StripeObject):
            return stripe_object
        return json.loads(str(stripe_object))
