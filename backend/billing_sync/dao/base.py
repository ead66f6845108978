"""
Base Data Access Object (DAO) class.

WHY: Reconciler code talks to DAOs, never to the session directly, so the
transaction boundary stays with the caller and queries stay in one place.
"""

from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseDAO(Generic[ModelType]):
    """
    Shared insert and lookup helpers for the billing tables.

    Type Parameters:
        ModelType: The SQLAlchemy model class this DAO manages
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session

    async def create(self, **kwargs: Any) -> ModelType:
        """
        Insert a row and flush it.

        WHY: Flushing surfaces unique and CHECK violations inside the
        caller's transaction, before any notification is queued.

        Raises:
            IntegrityError: If a constraint is violated
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        await self.session.flush()
        await self.session.refresh(instance)
        return instance

    async def get_one_by(self, **filters: Any) -> Optional[ModelType]:
        """
        Fetch the single row matching equality filters.

        Args:
            **filters: Column name to value (e.g., event_id="evt_1")

        Returns:
            The row if found, None otherwise
        """
        query = select(self.model).filter_by(**filters)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()
