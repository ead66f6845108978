"""
Main FastAPI application.

WHY: This is the entry point for the application. It configures logging,
middleware, routes, exception handlers and the background scheduler.
"""

from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_sync.api import webhooks_router
from billing_sync.core.config import Settings, settings
from billing_sync.core.exception_handlers import (
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from billing_sync.core.exceptions import AppException
from billing_sync.core.logging_config import configure_logging
from billing_sync.middleware import RequestContextMiddleware
from billing_sync.services.scheduler import get_scheduler_status, shutdown_scheduler, start_scheduler


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern allows easier testing with different configurations.

    Args:
        app_settings: Settings to run with (defaults to the environment's)

    Returns:
        Configured FastAPI application instance
    """
    app_settings = app_settings or settings
    configure_logging(app_settings)

    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        description="Stripe billing webhook reconciler",
        version=app_settings.VERSION,
        docs_url=f"{app_settings.API_V1_PREFIX}/docs",
        redoc_url=None,
        openapi_url=f"{app_settings.API_V1_PREFIX}/openapi.json",
    )
    app.state.settings = app_settings

    # Register exception handlers
    # WHY: The status code tells Stripe whether to redeliver, so every
    # failure path must map to a deliberate one
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Request ID for log correlation across ingestor, reconciler and dispatcher
    app.add_middleware(RequestContextMiddleware)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """
        Health check endpoint.

        WHY: Allows load balancers and monitoring to verify service health
        without touching the database.
        """
        return {
            "status": "healthy",
            "version": app_settings.VERSION,
            "scheduler": get_scheduler_status(),
        }

    @app.on_event("startup")
    async def startup_event():
        """Start the processed event purge job."""
        if app_settings.SCHEDULER_ENABLED:
            await start_scheduler(app_settings)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Gracefully stop background jobs."""
        await shutdown_scheduler()

    app.include_router(webhooks_router, prefix=app_settings.API_V1_PREFIX)

    return app


app = create_app()
