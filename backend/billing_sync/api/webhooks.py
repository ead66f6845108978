"""
Stripe webhook endpoint.

WHAT: POST /webhooks/stripe - Receives Stripe billing events.

WHY: Webhooks are the source of truth for subscription state:
- checkout.session.completed: New subscription
- customer.subscription.*: Status changes, plan changes, cancellation
- invoice.*: Renewals and failed payments

SECURITY (OWASP):
- A02: Webhook signature verification over the raw body
- No user authentication; the signature is the authentication
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from billing_sync.core.deps import get_webhook_ingestor
from billing_sync.models.webhook_event import EventOutcome
from billing_sync.schemas.webhook import WebhookResponse
from billing_sync.services.webhook_ingestor import WebhookIngestor

logger = logging.getLogger(__name__)

OUTCOME_MESSAGES = {
    EventOutcome.APPLIED: "Webhook processed successfully",
    EventOutcome.DUPLICATE: "Event already processed",
    EventOutcome.STALE: "Event older than current state",
    EventOutcome.IGNORED: "Event acknowledged, no action taken",
    EventOutcome.REJECTED: "Event cannot be applied",
}

webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@webhooks_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe billing webhook",
    description="Verifies and applies Stripe subscription, checkout and invoice events.",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> WebhookResponse:
    """
    Handle Stripe webhooks.

    WHY: Every acknowledged outcome returns 200 so Stripe stops retrying;
    retryable failures surface as 5xx/409 through the exception handlers.

    Returns:
        Acknowledgment of webhook receipt
    """
    # Raw bytes; the signature covers the body exactly as sent
    payload = await request.body()

    result = await ingestor.handle(payload, stripe_signature)

    return WebhookResponse(
        received=True,
        event_id=result.event_id,
        event_type=result.event_type,
        outcome=result.outcome,
        message=result.detail or OUTCOME_MESSAGES[result.outcome],
    )
