"""
Subscription model for a user's billing relationship with Stripe.

WHY: Stripe is the source of truth for billing; this table is the local
projection of it that the rest of the application reads:
1. Users subscribe to a plan through Stripe Checkout
2. Webhook events keep status and billing period in sync
3. Canceled subscriptions are kept for audit and history

ARCHITECTURE:
- Rows are keyed by the Stripe subscription ID (unique)
- At most one active subscription per user (partial unique index)
- Rows are only mutated by the subscription reconciler
- Never hard-deleted
"""

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    text,
)

from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin


class SubscriptionPlan(str, enum.Enum):
    """
    Available subscription plans.

    Plans:
    - FREE: No payment, never created through checkout
    - PRO: Most popular, suitable for small teams
    - ENTERPRISE: Unlimited, for large organizations
    """

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, enum.Enum):
    """
    Local subscription status.

    WHY: Stripe has more statuses than the application cares about. The
    reconciler collapses them onto these four; nothing else is ever stored.

    Statuses:
    - ACTIVE: Paid (or trialing), full access
    - PAST_DUE: Payment failed, grace period
    - CANCELED: Ended; row retained for history
    - PAUSED: Collection paused in Stripe
    """

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Subscription(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Subscription model for tracking user billing.

    LIFECYCLE:
    1. checkout.session.completed -> row created as ACTIVE
    2. customer.subscription.updated -> status/period overwritten (latest wins)
    3. customer.subscription.deleted -> CANCELED, row kept
    """

    __tablename__ = "subscriptions"

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        doc="Local user ID taken from checkout session metadata",
    )

    # Stripe identifiers
    stripe_subscription_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        doc="Stripe subscription ID (sub_xxx)",
    )
    stripe_price_id = Column(
        String(255),
        nullable=True,
        doc="Stripe price ID for the current plan",
    )
    stripe_customer_id = Column(
        String(255),
        nullable=True,
        index=True,
        doc="Stripe customer ID (cus_xxx)",
    )
    customer_email = Column(
        String(320),
        nullable=True,
        doc="Where billing notifications are sent",
    )

    # Plan and status
    # WHY: values_callable stores "active" rather than the member name "ACTIVE",
    # which the partial index below relies on
    plan = Column(
        Enum(
            SubscriptionPlan,
            name="subscriptionplan",
            values_callable=_enum_values,
            create_constraint=True,
        ),
        nullable=False,
        doc="Current subscription plan",
    )
    status = Column(
        Enum(
            SubscriptionStatus,
            name="subscriptionstatus",
            values_callable=_enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        doc="Current subscription status",
    )

    # Billing period
    current_period_start = Column(DateTime, nullable=True, doc="Start of current billing period")
    current_period_end = Column(DateTime, nullable=True, doc="End of current billing period")

    # Cancellation
    cancel_at_period_end = Column(
        Boolean,
        nullable=False,
        default=False,
        doc="Whether subscription will cancel at period end",
    )
    canceled_at = Column(DateTime, nullable=True, doc="When the subscription was canceled")

    # Notifications
    welcomed_at = Column(
        DateTime,
        nullable=True,
        doc="When the welcome email was queued; set once so it is never repeated",
    )

    # Reconciliation bookkeeping
    last_event_at = Column(
        DateTime,
        nullable=True,
        doc="Stripe 'created' time of the last subscription event applied",
    )
    version = Column(
        Integer,
        nullable=False,
        default=1,
        doc="Compare-and-swap token for conditional updates",
    )

    __table_args__ = (
        CheckConstraint(
            "current_period_end >= current_period_start",
            name="ck_subscriptions_period_order",
        ),
        Index(
            "uq_subscriptions_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"stripe_subscription_id={self.stripe_subscription_id}, "
            f"plan={self.plan.value}, status={self.status.value})>"
        )
