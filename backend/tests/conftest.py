"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.
"""

import os

# Settings are read at import time; set test values before importing the app
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
import pytest_asyncio
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from httpx import AsyncClient, ASGITransport

from billing_sync.core.config import Settings
from billing_sync.core.deps import get_notification_dispatcher, get_stripe_service
from billing_sync.db.session import get_db
from billing_sync.main import create_app
from billing_sync.models.base import Base
from billing_sync.services.email import EmailService, MockEmailProvider
from billing_sync.services.email_template_service import EmailTemplateService
from billing_sync.services.notifications import BillingNotificationDispatcher
from billing_sync.services.stripe_service import StripeService


# Test database URL
# WHY: Using SQLite for tests eliminates external database dependencies
# and makes tests faster.
TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def test_settings() -> Settings:
    """Settings for an isolated app instance."""
    return Settings(
        DATABASE_URL=TEST_ASYNC_DATABASE_URL,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_PRICE_PRO_MONTHLY="price_pro_monthly",
        STRIPE_PRICE_ENTERPRISE_MONTHLY="price_enterprise_monthly",
        SCHEDULER_ENABLED=False,
        RESEND_API_KEY=None,
        FRONTEND_URL="https://app.example.com",
        _env_file=None,
    )


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """
    Create a test database engine.

    WHY: Function scope ensures each test gets a fresh database state,
    preventing test pollution and ensuring test isolation.
    """
    engine = create_async_engine(TEST_ASYNC_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Yields:
        AsyncSession: Database session for the test
    """
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def clear_mock_emails():
    """Reset the mock provider's outbox around every test."""
    MockEmailProvider.clear_sent_emails()
    yield
    MockEmailProvider.clear_sent_emails()


@pytest.fixture
def stripe_service() -> StripeService:
    """Stripe service that verifies with the test signing secret."""
    return StripeService(
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        tolerance=300,
    )


@pytest.fixture
def dispatcher() -> BillingNotificationDispatcher:
    """Dispatcher that records emails in MockEmailProvider.sent_emails."""
    return BillingNotificationDispatcher(
        email_service=EmailService(
            provider=MockEmailProvider(),
            from_email="billing@example.com",
            from_name="Billing",
        ),
        template_service=EmailTemplateService(frontend_url="https://app.example.com"),
    )


@pytest.fixture
def app(test_settings: Settings):
    """FastAPI app built with test settings."""
    return create_app(test_settings)


@pytest_asyncio.fixture
async def client(
    app,
    db_session: AsyncSession,
    stripe_service: StripeService,
    dispatcher: BillingNotificationDispatcher,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient allows testing FastAPI endpoints without running
    a real server, making tests faster and more reliable.

    Yields:
        AsyncClient: HTTP client for making test requests
    """

    async def override_get_db():
        """Override database dependency with test session."""
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_service] = lambda: stripe_service
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
