"""
Processed webhook event model (idempotency table).

Every Stripe event the reconciler handles is recorded by its event ID in the
same transaction as the state change it caused. Before applying an event
the reconciler checks this table; a hit means the event was a redelivery
and is acknowledged without touching state or sending email again.

Rows are purged after the retention window by the scheduler.
"""

import enum

from sqlalchemy import Column, DateTime, Enum, String, Text

from billing_sync.models.base import Base, PrimaryKeyMixin, utcnow


class EventOutcome(str, enum.Enum):
    """
    What the reconciler did with an event.

    - APPLIED: State changed (or a notification-only event was handled)
    - DUPLICATE: Event ID seen before; never stored, only returned
    - STALE: Older than the stored state (latest wins)
    - IGNORED: Nothing to do (already linked, already canceled, no row yet)
    - REJECTED: Can never be applied (missing metadata, unmapped status)
    """

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    REJECTED = "rejected"


class ProcessedWebhookEvent(Base, PrimaryKeyMixin):
    """Record of a Stripe event that has been reconciled."""

    __tablename__ = "processed_webhook_events"

    event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        doc="Stripe event ID (evt_xxx)",
    )
    event_type = Column(String(255), nullable=False)
    outcome = Column(
        Enum(
            EventOutcome,
            name="eventoutcome",
            values_callable=lambda e: [member.value for member in e],
            create_constraint=True,
        ),
        nullable=False,
    )
    detail = Column(Text, nullable=True, doc="Reason for rejected/ignored outcomes")
    processed_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent {self.event_id} ({self.event_type}: {self.outcome.value})>"
