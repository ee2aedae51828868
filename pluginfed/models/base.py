"""Base classes for database models."""

from sqlalchemy import Column, DateTime
from sqlalchemy.orm import DeclarativeBase

from pluginfed.utils.clock import utc_now


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class CreatedAtMixin:
    """Mixin that adds a created_at column to a model."""

    created_at = Column(DateTime, default=utc_now, nullable=False)
