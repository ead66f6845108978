"""
Typed views over Stripe webhook events.

WHAT: Parses verified Stripe event JSON into small dataclasses the
reconciler works with.

WHY: Stripe payloads are deeply nested and drift between API versions
(billing periods moved from the subscription onto its items, the invoice's
subscription moved under ``parent``). Resolving that here keeps the
reconciler about state transitions instead of dictionary spelunking.

HOW: Plain dicts in, frozen dataclasses out. Timestamps are converted to
naive UTC datetimes to match the database columns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from billing_sync.core.exceptions import (
    InvalidMetadataError,
    InvalidWebhookPayloadError,
    MissingMetadataError,
    UnmappedStatusError,
)
from billing_sync.models.subscription import SubscriptionPlan, SubscriptionStatus


class BillingEventType(str, Enum):
    """
    Stripe event types the reconciler acts on.

    Anything else parses as UNKNOWN and is acknowledged untouched.
    """

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw_type: str) -> "BillingEventType":
        """Map a Stripe event type string onto the enum (UNKNOWN if unhandled)."""
        try:
            return cls(raw_type)
        except ValueError:
            return cls.UNKNOWN


# Stripe subscription status -> local status
# incomplete is deliberately absent: such a subscription never paid
STRIPE_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def from_timestamp(value: Any) -> Optional[datetime]:
    """
    Convert a Unix timestamp to a naive UTC datetime.

    Args:
        value: Seconds since epoch (int/float) or None

    Returns:
        Naive UTC datetime, or None if value is missing
    """
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        raise InvalidWebhookPayloadError(message="Invalid timestamp in payload", value=str(value))


def map_stripe_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    """
    Collapse a Stripe subscription status onto the local status set.

    Raises:
        UnmappedStatusError: For statuses with no local equivalent
            (incomplete, or anything Stripe adds later)
    """
    status = STRIPE_STATUS_MAP.get(stripe_status or "")
    if status is None:
        raise UnmappedStatusError(stripe_status=stripe_status)
    return status


def parse_plan(value: Optional[str]) -> SubscriptionPlan:
    """
    Parse a plan name from metadata.

    WHY: Checkout only sells paid plans. A "free" plan on a Stripe
    subscription is an upstream mistake, not something to persist.

    Raises:
        MissingMetadataError: If value is empty
        InvalidMetadataError: If value is not a paid plan
    """
    if not value:
        raise MissingMetadataError(missing="plan")
    try:
        plan = SubscriptionPlan(str(value).strip().lower())
    except ValueError:
        raise InvalidMetadataError(message=f"Unknown plan '{value}'", plan=value)
    if plan == SubscriptionPlan.FREE:
        raise InvalidMetadataError(message="Free plan cannot be purchased", plan=value)
    return plan


def _metadata_user_id(metadata: Dict[str, Any]) -> Optional[str]:
    user_id = metadata.get("userId") or metadata.get("user_id")
    return str(user_id) if user_id else None


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may be an ID string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


@dataclass(frozen=True)
class WebhookEvent:
    """
    A verified Stripe webhook event.

    WHAT: Envelope fields plus the event's ``data.object``.
    """

    id: str
    type: BillingEventType
    raw_type: str
    created: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    livemode: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "WebhookEvent":
        """
        Build an event from decoded JSON.

        Raises:
            InvalidWebhookPayloadError: If the envelope is incomplete
        """
        if not isinstance(payload, dict):
            raise InvalidWebhookPayloadError(message="Webhook payload is not an object")

        event_id = payload.get("id")
        raw_type = payload.get("type")
        if not isinstance(event_id, str) or not event_id:
            raise InvalidWebhookPayloadError(message="Webhook payload has no event id")
        if not isinstance(raw_type, str) or not raw_type:
            raise InvalidWebhookPayloadError(
                message="Webhook payload has no event type", event_id=event_id
            )

        data = payload.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        if obj is not None and not isinstance(obj, dict):
            raise InvalidWebhookPayloadError(
                message="Webhook data.object is not an object", event_id=event_id
            )

        created = from_timestamp(payload.get("created"))
        if created is None:
            raise InvalidWebhookPayloadError(
                message="Webhook payload has no created timestamp", event_id=event_id
            )

        return cls(
            id=event_id,
            type=BillingEventType.parse(raw_type),
            raw_type=raw_type,
            created=created,
            data=obj or {},
            livemode=bool(payload.get("livemode", False)),
        )

    @property
    def is_known(self) -> bool:
        return self.type != BillingEventType.UNKNOWN


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """
    State of a Stripe subscription as carried by an event.

    WHAT: Fields the reconciler copies onto the local row.
    """

    id: str
    status: Optional[str]
    price_id: Optional[str]
    customer_id: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    ended_at: Optional[datetime]
    metadata: Dict[str, Any]

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "SubscriptionSnapshot":
        """
        Parse a Stripe subscription object.

        HOW: Billing periods are read from the subscription itself and,
        for API versions that moved them, from the first subscription item.

        Raises:
            InvalidWebhookPayloadError: If the object has no ID
        """
        sub_id = obj.get("id")
        if not sub_id:
            raise InvalidWebhookPayloadError(message="Subscription object has no id")

        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or obj.get("plan") or {}

        period_start = obj.get("current_period_start") or first_item.get("current_period_start")
        period_end = obj.get("current_period_end") or first_item.get("current_period_end")

        return cls(
            id=sub_id,
            status=obj.get("status"),
            price_id=price.get("id") if isinstance(price, dict) else None,
            customer_id=_object_id(obj.get("customer")),
            current_period_start=from_timestamp(period_start),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
            canceled_at=from_timestamp(obj.get("canceled_at")),
            ended_at=from_timestamp(obj.get("ended_at")),
            metadata=dict(obj.get("metadata") or {}),
        )

    @property
    def user_id(self) -> Optional[str]:
        return _metadata_user_id(self.metadata)

    @property
    def plan_name(self) -> Optional[str]:
        return self.metadata.get("plan")


@dataclass(frozen=True)
class CheckoutSnapshot:
    """A completed Stripe Checkout session."""

    id: str
    mode: Optional[str]
    subscription_id: Optional[str]
    subscription: Optional[SubscriptionSnapshot]
    customer_id: Optional[str]
    customer_email: Optional[str]
    metadata: Dict[str, Any]

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "CheckoutSnapshot":
        """Parse a Stripe checkout session object."""
        raw_subscription = obj.get("subscription")
        expanded = None
        if isinstance(raw_subscription, dict):
            expanded = SubscriptionSnapshot.from_object(raw_subscription)

        customer_details = obj.get("customer_details") or {}

        return cls(
            id=obj.get("id", ""),
            mode=obj.get("mode"),
            subscription_id=_object_id(raw_subscription),
            subscription=expanded,
            customer_id=_object_id(obj.get("customer")),
            customer_email=customer_details.get("email") or obj.get("customer_email"),
            metadata=dict(obj.get("metadata") or {}),
        )

    @property
    def user_id(self) -> Optional[str]:
        return _metadata_user_id(self.metadata)

    @property
    def plan_name(self) -> Optional[str]:
        return self.metadata.get("plan")


@dataclass(frozen=True)
class InvoiceSnapshot:
    """A Stripe invoice, as carried by invoice.* events."""

    id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    customer_email: Optional[str]
    amount_due: int
    amount_paid: int
    currency: str
    billing_reason: Optional[str]
    hosted_invoice_url: Optional[str]
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    next_payment_attempt: Optional[datetime]

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "InvoiceSnapshot":
        """
        Parse a Stripe invoice object.

        HOW: The subscription ID is read from the top level or from
        ``parent.subscription_details`` (newer API versions). The billing
        period comes from the first line item, which reflects the
        subscription period being paid for.
        """
        subscription_id = _object_id(obj.get("subscription"))
        if not subscription_id:
            details = (obj.get("parent") or {}).get("subscription_details") or {}
            subscription_id = _object_id(details.get("subscription"))

        lines = (obj.get("lines") or {}).get("data") or []
        line_period = (lines[0].get("period") or {}) if lines else {}

        return cls(
            id=obj.get("id", ""),
            subscription_id=subscription_id,
            customer_id=_object_id(obj.get("customer")),
            customer_email=obj.get("customer_email"),
            amount_due=int(obj.get("amount_due") or 0),
            amount_paid=int(obj.get("amount_paid") or 0),
            currency=(obj.get("currency") or "usd").lower(),
            billing_reason=obj.get("billing_reason"),
            hosted_invoice_url=obj.get("hosted_invoice_url"),
            period_start=from_timestamp(line_period.get("start")),
            period_end=from_timestamp(line_period.get("end")),
            next_payment_attempt=from_timestamp(obj.get("next_payment_attempt")),
        )

    def formatted_amount(self, cents: int) -> str:
        """Format an amount in minor units for display (e.g. 2900 -> '29.00 USD')."""
        return f"{cents / 100:.2f} {self.currency.upper()}"
