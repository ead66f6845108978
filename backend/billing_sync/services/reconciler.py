"""
Subscription state reconciler.

WHAT: Applies verified Stripe events to the local subscriptions table and
decides which billing emails they warrant.

WHY: Stripe is the source of truth for billing, but it talks to us through
an at-least-once, unordered webhook stream. The reconciler makes that
stream safe to apply:
1. Idempotent - an event ID is applied at most once
2. Latest wins - an older snapshot never overwrites a newer one
3. Race free - concurrent deliveries for one subscription cannot both win
4. Atomic - the state change and the idempotency record commit together

HOW: One handler per event type, each returning a ReconcileResult. apply()
wraps the handler in the idempotency check, records the outcome, commits,
and translates database failures into retryable application errors.
Notifications are returned, never sent, so nothing goes out for a
transaction that did not commit.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.exceptions import (
    AppException,
    BillingEventError,
    ConcurrentModificationError,
    InvalidWebhookPayloadError,
    MissingMetadataError,
    TransientPersistenceError,
)
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.dao.webhook_event import ProcessedWebhookEventDAO
from billing_sync.models.base import utcnow
from billing_sync.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatus
from billing_sync.models.webhook_event import EventOutcome
from billing_sync.services.billing_events import (
    BillingEventType,
    CheckoutSnapshot,
    InvoiceSnapshot,
    SubscriptionSnapshot,
    WebhookEvent,
    map_stripe_status,
    parse_plan,
)
from billing_sync.services.notifications import NotificationKind, PendingNotification
from billing_sync.services.stripe_service import StripeService

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """
    What applying one event did.

    Attributes:
        outcome: applied, duplicate, stale, ignored or rejected
        event_id: Stripe event ID
        event_type: Raw Stripe event type
        subscription: Subscription row touched (if any)
        notifications: Emails to send once the transaction has committed
        detail: Short reason for non-applied outcomes
    """

    outcome: EventOutcome
    event_id: str
    event_type: str
    subscription: Optional[Subscription] = None
    notifications: List[PendingNotification] = field(default_factory=list)
    detail: Optional[str] = None


def _format_date(value: Optional[datetime]) -> Optional[str]:
    return value.strftime("%B %d, %Y") if value else None


def _plan_label(plan: Optional[SubscriptionPlan]) -> str:
    return plan.value.title() if plan else "your subscription"


class SubscriptionReconciler:
    """
    Applies billing events to subscription state.

    WHAT: The only writer of the subscriptions table.

    WHY: Funnelling every mutation through one class keeps the ordering and
    idempotency rules in one place.

    HOW: Owns the transaction for each event: it commits on success and
    rolls back on failure. The session should not have pending changes
    when apply() is called.
    """

    def __init__(
        self,
        session: AsyncSession,
        stripe_service: Optional[StripeService] = None,
        price_plans: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize reconciler.

        Args:
            session: Async database session (one per request)
            stripe_service: Used to fetch subscriptions a checkout event
                does not embed; without it such rows get no billing period
            price_plans: Stripe price ID -> plan value, for plan changes
                made outside checkout (e.g. in the Customer Portal)
        """
        self.session = session
        self.subscriptions = SubscriptionDAO(session)
        self.events = ProcessedWebhookEventDAO(session)
        self.stripe_service = stripe_service
        self.price_plans: Dict[str, SubscriptionPlan] = {
            price_id: SubscriptionPlan(plan) for price_id, plan in (price_plans or {}).items()
        }
        self._handlers: Dict[BillingEventType, Callable[[WebhookEvent], Awaitable[ReconcileResult]]] = {
            BillingEventType.CHECKOUT_SESSION_COMPLETED: self._handle_checkout_completed,
            BillingEventType.SUBSCRIPTION_CREATED: self._handle_subscription_changed,
            BillingEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_changed,
            BillingEventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            BillingEventType.INVOICE_PAID: self._handle_invoice_paid,
            BillingEventType.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
        }

    # ========================================================================
    # Entry point
    # ========================================================================

    async def apply(self, event: WebhookEvent) -> ReconcileResult:
        """
        Apply one verified event exactly once.

        WHAT: Idempotency check, handler, outcome record, commit.

        HOW:
        - Event ID already recorded -> DUPLICATE, nothing else happens
        - BillingEventError or a malformed data.object from the handler ->
          partial work rolled back, event recorded as REJECTED (Stripe
          stops retrying)
        - Otherwise the handler's changes and the record commit together

        Args:
            event: Verified webhook event

        Returns:
            ReconcileResult describing the outcome

        Raises:
            ConcurrentModificationError: Lost a race with another delivery
            TransientPersistenceError: Database unavailable
            StripeError: Subscription lookup failed
        """
        log_extra = {"event_id": event.id, "event_type": event.raw_type}

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"Ignoring unhandled event type {event.raw_type}", extra=log_extra)
            return self._result(event, EventOutcome.IGNORED, detail="Unhandled event type")

        try:
            if await self.events.is_processed(event.id):
                logger.info(f"Duplicate webhook event {event.id}, skipping", extra=log_extra)
                return self._result(event, EventOutcome.DUPLICATE, detail="Event already processed")

            try:
                result = await handler(event)
            except (BillingEventError, InvalidWebhookPayloadError) as e:
                await self.session.rollback()
                logger.error(
                    f"Rejected webhook event {event.id}: {e.message}",
                    extra={**log_extra, "error": e.__class__.__name__},
                )
                result = self._result(event, EventOutcome.REJECTED, detail=e.message)

            await self.events.record(
                event_id=event.id,
                event_type=event.raw_type,
                outcome=result.outcome,
                detail=result.detail,
            )
            await self.session.commit()

        except IntegrityError as e:
            await self.session.rollback()
            if await self.events.is_processed(event.id):
                logger.info(
                    f"Webhook event {event.id} was processed concurrently",
                    extra=log_extra,
                )
                return self._result(event, EventOutcome.DUPLICATE, detail="Event already processed")
            logger.warning(f"Integrity conflict applying {event.id}: {e.orig}", extra=log_extra)
            raise ConcurrentModificationError(event_id=event.id)
        except (OperationalError, InterfaceError) as e:
            await self._rollback_quietly()
            logger.error(f"Database unavailable applying {event.id}: {e.orig}", extra=log_extra)
            raise TransientPersistenceError(event_id=event.id)
        except DBAPIError as e:
            await self._rollback_quietly()
            if e.connection_invalidated:
                logger.error(f"Database connection lost applying {event.id}", extra=log_extra)
                raise TransientPersistenceError(event_id=event.id)
            raise
        except AppException:
            await self.session.rollback()
            raise

        logger.info(
            f"Reconciled webhook event {event.id}: {result.outcome.value}",
            extra={
                **log_extra,
                "outcome": result.outcome.value,
                "stripe_subscription_id": (
                    result.subscription.stripe_subscription_id if result.subscription else None
                ),
            },
        )
        return result

    async def _rollback_quietly(self) -> None:
        """Roll back after a connection-level failure, which may also break rollback."""
        try:
            await self.session.rollback()
        except DBAPIError as e:
            logger.warning(f"Rollback failed after database error: {e.orig}")

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _handle_checkout_completed(self, event: WebhookEvent) -> ReconcileResult:
        """
        checkout.session.completed: link a new Stripe subscription to a user.

        Transition: none -> active. Sends the welcome email.
        """
        checkout = CheckoutSnapshot.from_object(event.data)

        if checkout.mode != "subscription" or not checkout.subscription_id:
            return self._result(event, EventOutcome.IGNORED, detail="Not a subscription checkout")

        user_id = checkout.user_id
        if not user_id:
            raise MissingMetadataError(missing="userId", checkout_session_id=checkout.id)
        plan = parse_plan(checkout.plan_name)

        existing = await self.subscriptions.get_by_stripe_subscription_id(
            checkout.subscription_id, for_update=True
        )
        if existing is not None:
            if existing.welcomed_at is not None or existing.status == SubscriptionStatus.CANCELED:
                return self._result(
                    event,
                    EventOutcome.IGNORED,
                    subscription=existing,
                    detail="Subscription already linked",
                )
            return await self._complete_checkout(event, checkout, existing)

        snapshot = checkout.subscription
        if snapshot is None and self.stripe_service is not None:
            snapshot = await self.stripe_service.retrieve_subscription(checkout.subscription_id)
        if snapshot is None:
            logger.warning(
                f"No billing period available for {checkout.subscription_id}",
                extra={"event_id": event.id, "stripe_subscription_id": checkout.subscription_id},
            )

        period_start = snapshot.current_period_start if snapshot else None
        period_end = snapshot.current_period_end if snapshot else None
        self._check_period(period_start, period_end)

        await self._supersede_active(user_id, checkout.subscription_id)

        subscription = await self.subscriptions.create_subscription(
            user_id=user_id,
            stripe_subscription_id=checkout.subscription_id,
            plan=plan,
            status=SubscriptionStatus.ACTIVE,
            stripe_price_id=snapshot.price_id if snapshot else None,
            stripe_customer_id=checkout.customer_id or (snapshot.customer_id if snapshot else None),
            customer_email=checkout.customer_email,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end if snapshot else False,
            last_event_at=event.created,
            welcomed_at=utcnow(),
        )

        return self._result(
            event,
            EventOutcome.APPLIED,
            subscription=subscription,
            notifications=[self._welcome_notice(subscription)],
        )

    async def _complete_checkout(
        self,
        event: WebhookEvent,
        checkout: CheckoutSnapshot,
        subscription: Subscription,
    ) -> ReconcileResult:
        """
        Finish a checkout whose subscription event arrived first.

        WHY: customer.subscription.created usually beats checkout.session
        .completed, and only the checkout carries the customer's email. The
        row gets it here along with the one welcome email.
        """
        if checkout.user_id != subscription.user_id:
            logger.warning(
                f"Checkout user {checkout.user_id} differs from subscription user "
                f"{subscription.user_id}, keeping the stored user",
                extra={"event_id": event.id, "stripe_subscription_id": checkout.subscription_id},
            )

        updated = await self._update(
            subscription,
            customer_email=checkout.customer_email or subscription.customer_email,
            stripe_customer_id=subscription.stripe_customer_id or checkout.customer_id,
            welcomed_at=utcnow(),
        )
        return self._result(
            event,
            EventOutcome.APPLIED,
            subscription=updated,
            notifications=[self._welcome_notice(updated)],
        )

    async def _handle_subscription_changed(self, event: WebhookEvent) -> ReconcileResult:
        """
        customer.subscription.created / updated: overwrite local state.

        Latest wins; canceled rows are terminal. Only a transition into
        canceled sends an email.
        """
        snapshot = SubscriptionSnapshot.from_object(event.data)
        subscription = await self.subscriptions.get_by_stripe_subscription_id(
            snapshot.id, for_update=True
        )

        if subscription is None:
            if not self._can_create_from(snapshot):
                return self._result(
                    event, EventOutcome.IGNORED, detail="No local subscription yet"
                )
            status = map_stripe_status(snapshot.status)
            subscription = await self._create_from_snapshot(event, snapshot, status)
            return self._result(event, EventOutcome.APPLIED, subscription=subscription)

        if subscription.status == SubscriptionStatus.CANCELED:
            return self._result(
                event,
                EventOutcome.IGNORED,
                subscription=subscription,
                detail="Subscription already canceled",
            )

        if self._is_stale(subscription, snapshot.current_period_end, event.created):
            logger.info(
                f"Stale {event.raw_type} for {snapshot.id}, keeping newer state",
                extra={"event_id": event.id, "stripe_subscription_id": snapshot.id},
            )
            return self._result(
                event,
                EventOutcome.STALE,
                subscription=subscription,
                detail="Older than stored state",
            )

        status = map_stripe_status(snapshot.status)
        plan = self._resolve_plan(snapshot, fallback=subscription.plan)
        period_start = snapshot.current_period_start or subscription.current_period_start
        period_end = snapshot.current_period_end or subscription.current_period_end
        self._check_period(period_start, period_end)

        canceled_at = snapshot.canceled_at
        if status == SubscriptionStatus.CANCELED and canceled_at is None:
            canceled_at = snapshot.ended_at or event.created

        if status == SubscriptionStatus.ACTIVE and subscription.status != SubscriptionStatus.ACTIVE:
            await self._supersede_active(subscription.user_id, subscription.stripe_subscription_id)

        updated = await self._update(
            subscription,
            status=status,
            plan=plan,
            stripe_price_id=snapshot.price_id or subscription.stripe_price_id,
            stripe_customer_id=snapshot.customer_id or subscription.stripe_customer_id,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            canceled_at=canceled_at,
            last_event_at=self._latest(subscription.last_event_at, event.created),
        )

        # Canceled is terminal, so the later .deleted event will be ignored
        notifications = []
        if status == SubscriptionStatus.CANCELED:
            notifications.append(self._cancellation_notice(updated, canceled_at))
        return self._result(
            event,
            EventOutcome.APPLIED,
            subscription=updated,
            notifications=notifications,
        )

    async def _handle_subscription_deleted(self, event: WebhookEvent) -> ReconcileResult:
        """
        customer.subscription.deleted: any -> canceled. Row is kept.

        Sends the cancellation email.
        """
        snapshot = SubscriptionSnapshot.from_object(event.data)
        canceled_at = snapshot.canceled_at or snapshot.ended_at or utcnow()

        subscription = await self.subscriptions.get_by_stripe_subscription_id(
            snapshot.id, for_update=True
        )

        if subscription is None:
            if not self._can_create_from(snapshot):
                return self._result(
                    event, EventOutcome.IGNORED, detail="No local subscription yet"
                )
            subscription = await self._create_from_snapshot(
                event, snapshot, SubscriptionStatus.CANCELED, canceled_at=canceled_at
            )
            return self._result(event, EventOutcome.APPLIED, subscription=subscription)

        if subscription.status == SubscriptionStatus.CANCELED:
            return self._result(
                event,
                EventOutcome.IGNORED,
                subscription=subscription,
                detail="Subscription already canceled",
            )

        updated = await self._update(
            subscription,
            status=SubscriptionStatus.CANCELED,
            canceled_at=canceled_at,
            cancel_at_period_end=False,
            last_event_at=self._latest(subscription.last_event_at, event.created),
        )

        return self._result(
            event,
            EventOutcome.APPLIED,
            subscription=updated,
            notifications=[self._cancellation_notice(updated, canceled_at)],
        )

    async def _handle_invoice_paid(self, event: WebhookEvent) -> ReconcileResult:
        """
        invoice.paid: move the billing period forward and send a receipt.

        WHY: Renewals are confirmed by the invoice. The period only ever
        moves forward, so a late delivery cannot shorten it. The first
        invoice of a subscription is covered by the welcome email.
        """
        invoice = InvoiceSnapshot.from_object(event.data)
        if not invoice.subscription_id:
            return self._result(event, EventOutcome.IGNORED, detail="Invoice is not for a subscription")

        subscription = await self.subscriptions.get_by_stripe_subscription_id(
            invoice.subscription_id, for_update=True
        )
        if subscription is None:
            return self._result(event, EventOutcome.IGNORED, detail="No local subscription yet")
        if subscription.status == SubscriptionStatus.CANCELED:
            return self._result(
                event,
                EventOutcome.IGNORED,
                subscription=subscription,
                detail="Subscription already canceled",
            )

        stored_end = subscription.current_period_end
        if invoice.period_end and (stored_end is None or invoice.period_end > stored_end):
            values = {"current_period_end": invoice.period_end}
            stored_start = subscription.current_period_start
            if invoice.period_start and invoice.period_start <= invoice.period_end and (
                stored_start is None or invoice.period_start > stored_start
            ):
                values["current_period_start"] = invoice.period_start
            subscription = await self._update(subscription, **values)

        notifications = []
        if invoice.billing_reason != "subscription_create":
            notifications.append(
                PendingNotification(
                    kind=NotificationKind.PAYMENT_SUCCEEDED,
                    recipient_email=invoice.customer_email or subscription.customer_email,
                    user_id=subscription.user_id,
                    context={
                        "plan_name": _plan_label(subscription.plan),
                        "amount": invoice.formatted_amount(invoice.amount_paid),
                        "current_period_end": _format_date(subscription.current_period_end),
                        "invoice_url": invoice.hosted_invoice_url,
                    },
                )
            )

        return self._result(
            event,
            EventOutcome.APPLIED,
            subscription=subscription,
            notifications=notifications,
        )

    async def _handle_invoice_payment_failed(self, event: WebhookEvent) -> ReconcileResult:
        """
        invoice.payment_failed: tell the user. No state change.

        WHY: The status moves to past_due through the customer.subscription
        .updated event Stripe sends alongside this one.
        """
        invoice = InvoiceSnapshot.from_object(event.data)
        if not invoice.subscription_id:
            return self._result(event, EventOutcome.IGNORED, detail="Invoice is not for a subscription")

        subscription = await self.subscriptions.get_by_stripe_subscription_id(invoice.subscription_id)

        notification = PendingNotification(
            kind=NotificationKind.PAYMENT_FAILED,
            recipient_email=invoice.customer_email
            or (subscription.customer_email if subscription else None),
            user_id=subscription.user_id if subscription else None,
            context={
                "plan_name": _plan_label(subscription.plan if subscription else None),
                "amount": invoice.formatted_amount(invoice.amount_due),
                "next_payment_attempt": _format_date(invoice.next_payment_attempt),
                "invoice_url": invoice.hosted_invoice_url,
            },
        )
        return self._result(
            event,
            EventOutcome.APPLIED,
            subscription=subscription,
            notifications=[notification],
        )

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _result(event: WebhookEvent, outcome: EventOutcome, **kwargs) -> ReconcileResult:
        return ReconcileResult(
            outcome=outcome,
            event_id=event.id,
            event_type=event.raw_type,
            **kwargs,
        )

    @staticmethod
    def _welcome_notice(subscription: Subscription) -> PendingNotification:
        return PendingNotification(
            kind=NotificationKind.WELCOME_TO_PLAN,
            recipient_email=subscription.customer_email,
            user_id=subscription.user_id,
            context={
                "plan_name": _plan_label(subscription.plan),
                "current_period_end": _format_date(subscription.current_period_end),
            },
        )

    @staticmethod
    def _cancellation_notice(
        subscription: Subscription, canceled_at: Optional[datetime]
    ) -> PendingNotification:
        return PendingNotification(
            kind=NotificationKind.SUBSCRIPTION_CANCELED,
            recipient_email=subscription.customer_email,
            user_id=subscription.user_id,
            context={
                "plan_name": _plan_label(subscription.plan),
                "canceled_at": _format_date(canceled_at),
            },
        )

    @staticmethod
    def _is_stale(
        subscription: Subscription,
        period_end: Optional[datetime],
        event_created: datetime,
    ) -> bool:
        """
        Decide whether an incoming snapshot is older than the stored state.

        HOW: Compare billing period ends first. When they are equal (or
        either is unknown) fall back to the event creation time against the
        last applied event.
        """
        stored_end = subscription.current_period_end
        if period_end is not None and stored_end is not None:
            if period_end < stored_end:
                return True
            if period_end > stored_end:
                return False
        if subscription.last_event_at is not None and event_created < subscription.last_event_at:
            return True
        return False

    @staticmethod
    def _latest(current: Optional[datetime], incoming: datetime) -> datetime:
        return max(current, incoming) if current else incoming

    @staticmethod
    def _check_period(start: Optional[datetime], end: Optional[datetime]) -> None:
        if start is not None and end is not None and end < start:
            raise BillingEventError(message="Billing period ends before it starts")

    def _can_create_from(self, snapshot: SubscriptionSnapshot) -> bool:
        """Whether a subscription event carries enough metadata to create a row."""
        has_plan = bool(snapshot.plan_name) or snapshot.price_id in self.price_plans
        return bool(snapshot.user_id) and has_plan

    def _resolve_plan(
        self,
        snapshot: SubscriptionSnapshot,
        fallback: Optional[SubscriptionPlan] = None,
    ) -> SubscriptionPlan:
        """
        Work out the plan for a subscription snapshot.

        HOW: Configured price mapping first, then metadata, then the
        stored plan.

        Raises:
            MissingMetadataError: If nothing identifies the plan
            InvalidMetadataError: If metadata names an unknown plan
        """
        if snapshot.price_id and snapshot.price_id in self.price_plans:
            return self.price_plans[snapshot.price_id]
        if snapshot.plan_name:
            return parse_plan(snapshot.plan_name)
        if fallback is not None:
            return fallback
        raise MissingMetadataError(missing="plan", stripe_subscription_id=snapshot.id)

    async def _create_from_snapshot(
        self,
        event: WebhookEvent,
        snapshot: SubscriptionSnapshot,
        status: SubscriptionStatus,
        canceled_at: Optional[datetime] = None,
    ) -> Subscription:
        """
        Create a row from a subscription event that arrived before checkout.

        WHY: Stripe does not guarantee delivery order; a subscription
        carrying user and plan metadata is enough to build the row.
        """
        plan = self._resolve_plan(snapshot)
        self._check_period(snapshot.current_period_start, snapshot.current_period_end)

        if status == SubscriptionStatus.ACTIVE:
            await self._supersede_active(snapshot.user_id, snapshot.id)

        if status == SubscriptionStatus.CANCELED and canceled_at is None:
            canceled_at = snapshot.canceled_at or snapshot.ended_at or event.created

        subscription = await self.subscriptions.create_subscription(
            user_id=snapshot.user_id,
            stripe_subscription_id=snapshot.id,
            plan=plan,
            status=status,
            stripe_price_id=snapshot.price_id,
            stripe_customer_id=snapshot.customer_id,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            canceled_at=canceled_at if status == SubscriptionStatus.CANCELED else snapshot.canceled_at,
            last_event_at=event.created,
        )
        logger.info(
            f"Created subscription {snapshot.id} from {event.raw_type}",
            extra={
                "event_id": event.id,
                "stripe_subscription_id": snapshot.id,
                "user_id": snapshot.user_id,
            },
        )
        return subscription

    async def _supersede_active(self, user_id: str, keep_stripe_subscription_id: str) -> None:
        """
        Cancel the user's other active subscription, if any.

        WHY: A user has at most one active subscription. A new checkout
        replaces the old plan locally even if Stripe's deletion event for
        it has not arrived yet.
        """
        previous = await self.subscriptions.get_active_for_user(
            user_id, exclude_stripe_subscription_id=keep_stripe_subscription_id
        )
        if previous is None:
            return

        await self._update(
            previous,
            status=SubscriptionStatus.CANCELED,
            canceled_at=previous.canceled_at or utcnow(),
        )
        logger.info(
            f"Superseded subscription {previous.stripe_subscription_id} for user {user_id}",
            extra={
                "user_id": user_id,
                "stripe_subscription_id": previous.stripe_subscription_id,
                "replaced_by": keep_stripe_subscription_id,
            },
        )

    async def _update(self, subscription: Subscription, **values) -> Subscription:
        """
        Conditionally update a subscription.

        Raises:
            ConcurrentModificationError: If the row changed since it was read
        """
        updated = await self.subscriptions.conditional_update(subscription, **values)
        if updated is None:
            logger.warning(
                f"Concurrent modification of subscription {subscription.stripe_subscription_id}",
                extra={"stripe_subscription_id": subscription.stripe_subscription_id},
            )
            raise ConcurrentModificationError(
                stripe_subscription_id=subscription.stripe_subscription_id
            )
        return updated
