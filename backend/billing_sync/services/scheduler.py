"""
Background Job Scheduler.

WHAT: Configures and manages APScheduler for background tasks.

WHY: The processed webhook event table grows with every delivery. Stripe
stops redelivering an event after a few days, so records older than the
retention window can be purged without weakening idempotency.

HOW: Uses APScheduler with AsyncIOScheduler for async job support and a
memory job store (the purge job is re-registered on every startup).

Example:
    # In main.py startup:
    from billing_sync.services.scheduler import start_scheduler, shutdown_scheduler

    @app.on_event("startup")
    async def startup():
        await start_scheduler(settings)

    @app.on_event("shutdown")
    async def shutdown():
        await shutdown_scheduler()
"""

import logging
from datetime import timedelta
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.core.config import Settings
from billing_sync.dao.webhook_event import ProcessedWebhookEventDAO
from billing_sync.models.base import utcnow

logger = logging.getLogger(__name__)

PURGE_JOB_ID = "processed_event_purge"

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> Optional[AsyncIOScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


async def purge_processed_events(
    session_factory: async_sessionmaker[AsyncSession],
    retention_days: int,
) -> int:
    """
    Delete processed webhook event records past the retention window.

    Args:
        session_factory: Creates the session the job runs in
        retention_days: Records older than this many days are deleted

    Returns:
        Number of records deleted
    """
    cutoff = utcnow() - timedelta(days=retention_days)

    async with session_factory() as session:
        deleted = await ProcessedWebhookEventDAO(session).purge_older_than(cutoff)
        await session.commit()

    logger.info(
        f"Purged {deleted} processed webhook events older than {retention_days} days",
        extra={"deleted": deleted, "cutoff": cutoff.isoformat()},
    )
    return deleted


async def start_scheduler(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> None:
    """
    Start the background job scheduler.

    HOW:
    1. Creates AsyncIOScheduler with memory job store
    2. Registers the processed event purge job
    3. Starts the scheduler

    Note: Call this from FastAPI startup event.

    Args:
        settings: Application settings (retention and interval)
        session_factory: Session factory for jobs (defaults to the app's)
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    if session_factory is None:
        from billing_sync.db.session import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,  # Combine multiple missed runs into one
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
        timezone="UTC",
    )

    _scheduler.add_job(
        func=purge_processed_events,
        trigger=IntervalTrigger(seconds=settings.PROCESSED_EVENT_PURGE_INTERVAL_SECONDS),
        kwargs={
            "session_factory": session_factory,
            "retention_days": settings.PROCESSED_EVENT_RETENTION_DAYS,
        },
        id=PURGE_JOB_ID,
        name="Processed Webhook Event Purge",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info(
        f"Scheduler started with event purge every "
        f"{settings.PROCESSED_EVENT_PURGE_INTERVAL_SECONDS} seconds"
    )


async def shutdown_scheduler() -> None:
    """
    Shut down the background job scheduler.

    Note: Call this from FastAPI shutdown event.
    """
    global _scheduler

    if _scheduler is None:
        logger.info("Scheduler not running")
        return

    if _scheduler.running:
        logger.info("Shutting down scheduler...")
        _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler shut down successfully")


def get_scheduler_status() -> dict:
    """
    Get scheduler status information.

    WHY: Feeds the /health endpoint.

    Returns:
        Dict with scheduler status and job details
    """
    if _scheduler is None:
        return {
            "running": False,
            "jobs": [],
            "message": "Scheduler not initialized",
        }

    jobs = []
    for job in _scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": str(job.next_run_time) if getattr(job, "next_run_time", None) else None,
            "trigger": str(job.trigger),
        })

    return {
        "running": _scheduler.running,
        "jobs": jobs,
        "message": "Scheduler is running" if _scheduler.running else "Scheduler is paused",
    }
