"""
Base model class for all SQLAlchemy models.

WHY: Centralizing common model functionality (timestamps, ID) in a base class
ensures consistency across all models and reduces code duplication.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, DateTime
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """Naive UTC now; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    WHY: DeclarativeBase provides the foundation for SQLAlchemy 2.0 models
    with improved type hints and async support.
    """

    pass


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.

    WHY: updated_at also changes on Core UPDATE statements (onupdate), which
    is how the subscription DAO writes conditional updates.
    """

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PrimaryKeyMixin:
    """Mixin to add an integer primary key to models."""

    id = Column(Integer, primary_key=True, index=True)
