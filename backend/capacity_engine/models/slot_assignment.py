"""
SlotAssignment model - append-only audit trail of consumer bindings.

One row per binding event. Never updated.
"""

from sqlalchemy import Column, String, DateTime, Enum, Index

from capacity_engine.models.base import (
    Base, TimestampMixin, TrainerScopedMixin, generate_uuid
)


class SlotAssignment(Base, TimestampMixin, TrainerScopedMixin):
    """Record of a consumer being bound (or re-bound) to a pool."""

    __tablename__ = "slot_assignments"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    consumer_id = Column(
        String(36),
        nullable=False,
        index=True,
        comment="Consumer id; kept after the consumer row is deleted"
    )
    source = Column(
        Enum("plan", "token", name="slot_source"),
        nullable=False
    )
    plan_assignment_id = Column(
        String(36),
        nullable=True
    )
    token_id = Column(
        String(36),
        nullable=True
    )
    event = Column(
        Enum("allocated", "carried_over", name="slot_event"),
        nullable=False,
        default="allocated"
    )
    assigned_at = Column(
        DateTime(timezone=True),
        nullable=False
    )
    valid_until = Column(
        DateTime(timezone=True),
        nullable=False
    )

    __table_args__ = (
        Index("ix_slot_assignments_trainer_assigned", "trainer_id", "assigned_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SlotAssignment(consumer_id={self.consumer_id}, source={self.source}, "
            f"event={self.event})>"
        )
