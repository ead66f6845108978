"""API routers"""

from billing_sync.api.webhooks import webhooks_router

__all__ = ["webhooks_router"]
