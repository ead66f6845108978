"""
Database session management.

WHY: Async database sessions are required for FastAPI's async/await pattern.
Using a context manager ensures proper connection cleanup and transaction management.
"""

from typing import Any, AsyncGenerator, Dict

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from billing_sync.core.config import settings


def engine_options(database_url: str, debug: bool = False) -> Dict[str, Any]:
    """
    Engine keyword arguments for a database URL.

    WHY: SQLite (used in tests and local runs) uses a static/singleton pool
    that rejects pool sizing arguments.
    """
    options: Dict[str, Any] = {"echo": debug, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        options.update(pool_size=10, max_overflow=20)
    return options


# WHY: pool_pre_ping recycles stale connections so a dropped connection
# surfaces as a fresh connect attempt rather than a mid-request failure
engine = create_async_engine(
    settings.async_database_url,
    **engine_options(settings.async_database_url, settings.DEBUG),
)

# WHY: expire_on_commit=False keeps reconciled rows readable after the
# reconciler commits, when notifications are built from them
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get database session.

    WHY: Each request gets its own session. The webhook path commits inside
    the reconciler (before notifications go out); the commit here is a
    no-op for it and covers any other caller.

    Yields:
        AsyncSession: Database session for the request
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
