"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and business logic,
making the codebase more testable and maintainable.
"""

from billing_sync.dao.base import BaseDAO
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.dao.webhook_event import ProcessedWebhookEventDAO

__all__ = [
    "BaseDAO",
    "SubscriptionDAO",
    "ProcessedWebhookEventDAO",
]
