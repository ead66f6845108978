"""Database models package"""

from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin, utcnow
from billing_sync.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatus
from billing_sync.models.webhook_event import ProcessedWebhookEvent, EventOutcome

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "utcnow",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "ProcessedWebhookEvent",
    "EventOutcome",
]
