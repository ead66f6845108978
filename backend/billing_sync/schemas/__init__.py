"""Pydantic schemas for request/response validation"""

from billing_sync.schemas.webhook import WebhookResponse

__all__ = ["WebhookResponse"]
