"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- TrainerScopedMixin: trainer_id for per-account isolation
- generate_uuid: UUID generation for primary keys
- utcnow / as_utc: timezone-aware UTC helpers
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, DateTime, func
from sqlalchemy.orm import declared_attr

from capacity_engine.db_base import Base


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return value as an aware UTC datetime.

    SQLite hands back naive datetimes for DateTime(timezone=True) columns;
    all stored values are UTC, so naive values are tagged rather than shifted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )


class TrainerScopedMixin:
    """
    Mixin that adds trainer_id column for per-account isolation.

    Every capacity query is scoped by trainer_id.
    """

    @declared_attr
    def trainer_id(cls):
        return Column(
            String(255),
            nullable=False,
            index=True,
            comment="Trainer account that owns this record"
        )


__all__ = [
    "Base",
    "TimestampMixin",
    "TrainerScopedMixin",
    "generate_uuid",
    "utcnow",
    "as_utc",
]
