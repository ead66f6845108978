"""
Webhook schemas for API response validation.

WHAT: Pydantic schema for the Stripe webhook acknowledgment.

WHY: Stripe only looks at the status code, but a structured body makes
deliveries easy to inspect in the Stripe dashboard and in logs.
"""

from typing import Optional

from pydantic import BaseModel, Field

from billing_sync.models.webhook_event import EventOutcome


class WebhookResponse(BaseModel):
    """
    Response for webhook processing.

    WHY: Confirms webhook was received and says what was done with it.
    """

    received: bool = True
    event_id: Optional[str] = Field(None, description="Stripe event ID")
    event_type: Optional[str] = Field(None, description="Stripe event type")
    outcome: Optional[EventOutcome] = Field(
        None, description="applied, duplicate, stale, ignored or rejected"
    )
    message: str = "Webhook processed successfully"
