"""
FastAPI dependencies for the webhook pipeline.

WHY: Dependencies build each component from the one Settings object and
the request's database session, so route handlers stay thin and tests can
swap any piece with app.dependency_overrides.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.config import Settings, settings
from billing_sync.db.session import get_db
from billing_sync.services.email import get_email_service
from billing_sync.services.email_template_service import EmailTemplateService
from billing_sync.services.notifications import BillingNotificationDispatcher
from billing_sync.services.reconciler import SubscriptionReconciler
from billing_sync.services.stripe_service import StripeService
from billing_sync.services.webhook_ingestor import WebhookIngestor


def get_settings(request: Request) -> Settings:
    """Settings the app was created with (see main.create_app)."""
    return getattr(request.app.state, "settings", settings)


def get_stripe_service(app_settings: Settings = Depends(get_settings)) -> StripeService:
    """
    Stripe service configured with the webhook signing secret.

    Args:
        app_settings: Application settings

    Returns:
        StripeService instance
    """
    return StripeService(
        secret_key=app_settings.STRIPE_SECRET_KEY.get_secret_value(),
        webhook_secret=app_settings.STRIPE_WEBHOOK_SECRET.get_secret_value(),
        tolerance=app_settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        api_version=app_settings.STRIPE_API_VERSION,
    )


def get_notification_dispatcher(
    app_settings: Settings = Depends(get_settings),
) -> BillingNotificationDispatcher:
    """
    Notification dispatcher with the configured email provider.

    Args:
        app_settings: Application settings

    Returns:
        BillingNotificationDispatcher instance
    """
    return BillingNotificationDispatcher(
        email_service=get_email_service(app_settings),
        template_service=EmailTemplateService(
            frontend_url=app_settings.FRONTEND_URL,
            platform_name=app_settings.EMAIL_FROM_NAME,
        ),
    )


async def get_webhook_ingestor(
    db: AsyncSession = Depends(get_db),
    app_settings: Settings = Depends(get_settings),
    stripe_service: StripeService = Depends(get_stripe_service),
    dispatcher: BillingNotificationDispatcher = Depends(get_notification_dispatcher),
) -> WebhookIngestor:
    """
    Webhook ingestor bound to the request's database session.

    WHY: The reconciler owns the transaction for one event, so it gets
    a fresh session per delivery.

    Returns:
        WebhookIngestor instance
    """
    reconciler = SubscriptionReconciler(
        session=db,
        stripe_service=stripe_service,
        price_plans=app_settings.price_plan_map,
    )
    return WebhookIngestor(
        stripe_service=stripe_service,
        reconciler=reconciler,
        dispatcher=dispatcher,
        verify_timeout=app_settings.WEBHOOK_VERIFY_TIMEOUT_SECONDS,
        processing_timeout=app_settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
        notification_timeout=app_settings.EMAIL_SEND_TIMEOUT_SECONDS,
    )
