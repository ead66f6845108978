"""
Subscription Data Access Object (DAO).

WHAT: DAO for managing subscription records in the database.

WHY: The reconciler needs exactly three persistence operations and this DAO
provides them: find by Stripe subscription ID, create, and conditional
update. Keeping them here keeps SQL out of the reconciliation logic.

HOW: Extends BaseDAO. Conditional updates are compare-and-swap on the
``version`` column so two concurrent deliveries for the same subscription
cannot both win a read-modify-write.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatus


class SubscriptionDAO(BaseDAO[Subscription]):
    """
    Data Access Object for Subscription model.

    WHAT: Handles all database operations for subscriptions.

    WHY: Centralizes subscription queries for webhook reconciliation and
    for readers of billing state.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize SubscriptionDAO.

        Args:
            session: Async database session
        """
        super().__init__(Subscription, session)

    async def get_by_stripe_subscription_id(
        self,
        stripe_subscription_id: str,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """
        Get subscription by Stripe subscription ID.

        WHAT: Looks up a subscription using the Stripe subscription ID.

        WHY: Every subscription-related webhook identifies its subscription
        this way.

        HOW: Direct lookup on the unique column. With for_update=True the row
        is locked until the transaction ends on databases that support
        SELECT ... FOR UPDATE (SQLite silently skips the clause).

        Args:
            stripe_subscription_id: Stripe subscription ID (sub_xxx)
            for_update: Lock the row for the rest of the transaction

        Returns:
            Subscription if found, None otherwise
        """
        query = select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
        if for_update:
            query = query.with_for_update()

        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_active_for_user(
        self,
        user_id: str,
        exclude_stripe_subscription_id: Optional[str] = None,
    ) -> Optional[Subscription]:
        """
        Get the user's active subscription, if any.

        WHY: At most one subscription per user may be active. The reconciler
        checks this before activating another one.

        Args:
            user_id: Local user ID
            exclude_stripe_subscription_id: Ignore this subscription

        Returns:
            The active Subscription or None
        """
        query = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        if exclude_stripe_subscription_id:
            query = query.where(
                Subscription.stripe_subscription_id != exclude_stripe_subscription_id
            )

        result = await self.session.execute(query)
        return result.scalars().first()

    async def create_subscription(
        self,
        user_id: str,
        stripe_subscription_id: str,
        plan: SubscriptionPlan,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        stripe_price_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
        canceled_at: Optional[datetime] = None,
        last_event_at: Optional[datetime] = None,
        welcomed_at: Optional[datetime] = None,
    ) -> Subscription:
        """
        Create a subscription linked to a Stripe subscription.

        Raises:
            IntegrityError: If the Stripe subscription ID already exists or
                the user already has an active subscription
        """
        return await self.create(
            user_id=user_id,
            stripe_subscription_id=stripe_subscription_id,
            plan=plan,
            status=status,
            stripe_price_id=stripe_price_id,
            stripe_customer_id=stripe_customer_id,
            customer_email=customer_email,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            cancel_at_period_end=cancel_at_period_end,
            canceled_at=canceled_at,
            last_event_at=last_event_at,
            welcomed_at=welcomed_at,
            version=1,
        )

    async def conditional_update(
        self,
        subscription: Subscription,
        **values: Any,
    ) -> Optional[Subscription]:
        """
        Update a subscription only if nobody else changed it since it was read.

        WHAT: Compare-and-swap on the version column.

        WHY: Two deliveries for the same subscription may be processed at
        the same time. Whichever writes second sees zero affected rows
        instead of silently overwriting the first.

        HOW: UPDATE ... WHERE id = :id AND version = :version_read, bumping
        the version. On success the instance is refreshed in place.

        Args:
            subscription: Instance as read in this transaction
            **values: Columns to overwrite

        Returns:
            Refreshed Subscription, or None if the version no longer matched
        """
        expected_version = subscription.version

        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.version == expected_version,
            )
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        await self.session.refresh(subscription)
        return subscription
