"""
Processed webhook event DAO.

WHAT: Reads and writes the idempotency table of handled Stripe events.

WHY: Stripe delivers at least once. Recording each event ID alongside the
state change it produced lets redeliveries be recognised and acknowledged
without re-applying them or sending duplicate email.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.webhook_event import EventOutcome, ProcessedWebhookEvent


class ProcessedWebhookEventDAO(BaseDAO[ProcessedWebhookEvent]):
    """Data Access Object for ProcessedWebhookEvent model."""

    def __init__(self, session: AsyncSession):
        super().__init__(ProcessedWebhookEvent, session)

    async def get_by_event_id(self, event_id: str) -> Optional[ProcessedWebhookEvent]:
        """
        Get the record for a Stripe event ID.

        Args:
            event_id: Stripe event ID (evt_xxx)

        Returns:
            ProcessedWebhookEvent if the event was handled before, None otherwise
        """
        return await self.get_one_by(event_id=event_id)

    async def is_processed(self, event_id: str) -> bool:
        """Check whether an event ID has already been handled."""
        return await self.get_by_event_id(event_id) is not None

    async def record(
        self,
        event_id: str,
        event_type: str,
        outcome: EventOutcome,
        detail: Optional[str] = None,
    ) -> ProcessedWebhookEvent:
        """
        Record an event as handled.

        WHY: Must be called in the same transaction as the state change so
        the two commit or roll back together.

        Raises:
            IntegrityError: If the event ID was recorded concurrently
        """
        return await self.create(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            detail=detail,
        )

    async def purge_older_than(self, cutoff: datetime) -> int:
        """
        Delete records processed before a cutoff.

        WHY: Stripe stops redelivering after a few days, so records only
        need to outlive that window.

        Args:
            cutoff: Records with processed_at before this are deleted

        Returns:
            Number of records deleted
        """
        result = await self.session.execute(
            delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.processed_at < cutoff)
        )
        return result.rowcount or 0
