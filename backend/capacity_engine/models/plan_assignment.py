"""
PlanAssignment model - a plan granted to a trainer for a time window.

At most one assignment per trainer is active at a time; the partial unique
index enforces it. The slot limit is copied from the plan on assignment so
catalog edits only affect future assignments.
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Enum, ForeignKey, Index,
    CheckConstraint, text
)
from sqlalchemy.orm import relationship

from capacity_engine.models.base import (
    Base, TimestampMixin, TrainerScopedMixin, generate_uuid, as_utc
)


class PlanAssignment(Base, TimestampMixin, TrainerScopedMixin):
    """
    Plan granted to a trainer, valid from starts_at until expires_at.

    allocation_version is bumped by every plan-slot allocation so two
    allocators racing for the last slot serialize on a conditional update.
    """

    __tablename__ = "plan_assignments"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    plan_id = Column(
        String(36),
        ForeignKey("plans.id"),
        nullable=False,
        index=True,
        comment="Assigned catalog plan"
    )
    slot_limit = Column(
        Integer,
        nullable=False,
        comment="Plan slot limit at assignment time"
    )

    starts_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="Start of validity"
    )
    expires_at = Column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment="End of validity (exclusive)"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="False once superseded, expired or revoked"
    )
    allocation_version = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Optimistic concurrency counter for plan-slot allocation"
    )

    assigned_by_admin_id = Column(
        String(255),
        nullable=True,
        comment="Admin who granted the plan"
    )
    reason = Column(
        String(500),
        nullable=True,
        comment="Free-text reason recorded by the admin"
    )

    deactivated_at = Column(
        DateTime(timezone=True),
        nullable=True
    )
    deactivation_reason = Column(
        Enum("superseded", "expired", "revoked", name="assignment_end_reason"),
        nullable=True,
        comment="Why the assignment stopped being active"
    )
    revoked_by_admin_id = Column(
        String(255),
        nullable=True
    )

    plan = relationship("Plan", lazy="joined")

    __table_args__ = (
        Index(
            "ix_plan_assignments_one_active_per_trainer",
            "trainer_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
        Index("ix_plan_assignments_trainer_expires", "trainer_id", "expires_at"),
        CheckConstraint("slot_limit >= 0", name="ck_plan_assignments_slot_limit_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<PlanAssignment(trainer_id={self.trainer_id}, plan_id={self.plan_id}, "
            f"is_active={self.is_active}, expires_at={self.expires_at})>"
        )

    def is_current(self, now: datetime) -> bool:
        """Active and not past expires_at."""
        return bool(self.is_active) and as_utc(self.expires_at) > now
