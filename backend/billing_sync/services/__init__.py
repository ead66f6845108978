"""Service layer: webhook ingestion, reconciliation and billing notifications."""

from billing_sync.services.billing_events import (
    BillingEventType,
    CheckoutSnapshot,
    InvoiceSnapshot,
    SubscriptionSnapshot,
    WebhookEvent,
)
from billing_sync.services.notifications import (
    BillingNotificationDispatcher,
    NotificationKind,
    PendingNotification,
)
from billing_sync.services.reconciler import ReconcileResult, SubscriptionReconciler
from billing_sync.services.stripe_service import StripeService
from billing_sync.services.webhook_ingestor import IngestResult, WebhookIngestor

__all__ = [
    "BillingEventType",
    "CheckoutSnapshot",
    "InvoiceSnapshot",
    "SubscriptionSnapshot",
    "WebhookEvent",
    "BillingNotificationDispatcher",
    "NotificationKind",
    "PendingNotification",
    "ReconcileResult",
    "SubscriptionReconciler",
    "StripeService",
    "IngestResult",
    "WebhookIngestor",
]
