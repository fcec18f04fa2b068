"""
Consumer model - an end user (student) who occupies one trainer slot.

The binding descriptor (binding_source, plan_assignment_id, token_id,
valid_until, bound_at) records which pool backs the consumer. It is kept
when the consumer is deactivated; only release, revocation and deletion
clear it.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, DateTime, Enum, ForeignKey, Index
)

from capacity_engine.capacity.models import (
    Binding, BindingSource, ConsumerStatus, PlanBinding, TokenBinding
)
from capacity_engine.models.base import (
    Base, TimestampMixin, TrainerScopedMixin, generate_uuid, as_utc
)


class Consumer(Base, TimestampMixin, TrainerScopedMixin):
    """
    Consumer account owned by a trainer.

    binding_version is bumped on every descriptor write; allocation writes
    the descriptor only if the version it read is still current.
    """

    __tablename__ = "consumers"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    display_name = Column(
        String(255),
        nullable=True
    )
    status = Column(
        Enum("active", "inactive", name="consumer_status"),
        nullable=False,
        default=ConsumerStatus.INACTIVE.value,
        index=True
    )

    # Binding descriptor
    binding_source = Column(
        Enum("plan", "token", name="binding_source"),
        nullable=True,
        comment="Pool backing the slot (NULL = unbound)"
    )
    plan_assignment_id = Column(
        String(36),
        ForeignKey("plan_assignments.id"),
        nullable=True,
        index=True
    )
    token_id = Column(
        String(36),
        ForeignKey("capacity_tokens.id"),
        nullable=True,
        index=True
    )
    valid_until = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Binding end; copied from the plan assignment or token expiration"
    )
    bound_at = Column(
        DateTime(timezone=True),
        nullable=True
    )
    binding_version = Column(
        Integer,
        nullable=False,
        default=0
    )

    deactivated_at = Column(
        DateTime(timezone=True),
        nullable=True
    )

    __table_args__ = (
        Index("ix_consumers_trainer_valid_until", "trainer_id", "valid_until"),
    )

    def __repr__(self) -> str:
        return (
            f"<Consumer(id={self.id}, trainer_id={self.trainer_id}, status={self.status}, "
            f"binding_source={self.binding_source})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == ConsumerStatus.ACTIVE.value

    @property
    def binding(self) -> Optional[Binding]:
        """Binding descriptor as a tagged union, or None when unbound."""
        if self.binding_source == BindingSource.PLAN.value and self.plan_assignment_id:
            return PlanBinding(
                plan_assignment_id=self.plan_assignment_id,
                valid_until=as_utc(self.valid_until),
                bound_at=as_utc(self.bound_at),
            )
        if self.binding_source == BindingSource.TOKEN.value and self.token_id:
            return TokenBinding(
                token_id=self.token_id,
                valid_until=as_utc(self.valid_until),
                bound_at=as_utc(self.bound_at),
            )
        return None

    def binding_lapsed(self, now: datetime) -> bool:
        """True when a descriptor exists but valid_until has passed."""
        return self.valid_until is not None and as_utc(self.valid_until) <= now

    def clear_binding(self) -> None:
        self.binding_source = None
        self.plan_assignment_id = None
        self.token_id = None
        self.valid_until = None
        self.bound_at = None
        self.binding_version = (self.binding_version or 0) + 1
