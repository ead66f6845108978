"""Create subscriptions and processed webhook events tables.

Revision ID: 001
Revises:
Create Date: 2026-10-16

WHAT: Creates the local projection of Stripe subscriptions and the
idempotency table for handled webhook events.

WHY:
1. subscriptions - what the rest of the application reads for billing state
2. processed_webhook_events - lets redelivered events be recognised

HOW: Plan, status and outcome are stored as native enums by value. A CHECK
keeps billing periods ordered and a partial unique index allows at most
one active subscription per user.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


subscription_plan = sa.Enum(
    "free", "pro", "enterprise", name="subscriptionplan", create_constraint=True
)
subscription_status = sa.Enum(
    "active", "past_due", "canceled", "paused", name="subscriptionstatus", create_constraint=True
)
event_outcome = sa.Enum(
    "applied", "duplicate", "stale", "ignored", "rejected", name="eventoutcome", create_constraint=True
)


def upgrade() -> None:
    """Create both tables with their constraints and indexes."""
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=False),
        sa.Column("stripe_price_id", sa.String(255), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("customer_email", sa.String(320), nullable=True),
        sa.Column("plan", subscription_plan, nullable=False),
        sa.Column("status", subscription_status, nullable=False),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        sa.Column("welcomed_at", sa.DateTime(), nullable=True),
        sa.Column("last_event_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "current_period_end >= current_period_start",
            name="ck_subscriptions_period_order",
        ),
    )
    op.create_index("ix_subscriptions_id", "subscriptions", ["id"])
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_stripe_subscription_id",
        "subscriptions",
        ["stripe_subscription_id"],
        unique=True,
    )
    op.create_index("ix_subscriptions_stripe_customer_id", "subscriptions", ["stripe_customer_id"])
    op.create_index(
        "uq_subscriptions_one_active_per_user",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "processed_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(255), nullable=False),
        sa.Column("outcome", event_outcome, nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_processed_webhook_events_id", "processed_webhook_events", ["id"])
    op.create_index(
        "ix_processed_webhook_events_event_id",
        "processed_webhook_events",
        ["event_id"],
        unique=True,
    )
    op.create_index(
        "ix_processed_webhook_events_processed_at",
        "processed_webhook_events",
        ["processed_at"],
    )


def downgrade() -> None:
    """Drop both tables and their enum types."""
    op.drop_table("processed_webhook_events")
    op.drop_table("subscriptions")

    bind = op.get_bind()
    event_outcome.drop(bind, checkfirst=True)
    subscription_status.drop(bind, checkfirst=True)
    subscription_plan.drop(bind, checkfirst=True)
