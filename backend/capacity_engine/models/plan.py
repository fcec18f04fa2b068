"""
Plan model for the subscription catalog.

Plans are GLOBAL (not trainer-scoped) - they define the product offerings.
A plan is never deleted; deactivation hides it from new assignments while
existing assignments keep their snapshot of the slot limit.
"""

from sqlalchemy import (
    Column, String, Text, Integer, Boolean, Enum, CheckConstraint
)

from capacity_engine.models.base import Base, TimestampMixin, generate_uuid


class Plan(Base, TimestampMixin):
    """
    Subscription tier granting a fixed number of consumer slots.
    """

    __tablename__ = "plans"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    name = Column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
        comment="Display name (Free, Start, Pro, ...)"
    )
    description = Column(
        Text,
        nullable=True,
        comment="Plan description for the catalog"
    )

    slot_limit = Column(
        Integer,
        nullable=False,
        comment="Consumer slots granted while an assignment of this plan is current"
    )
    # Pricing (in cents to avoid floating point issues)
    price_cents = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Price in cents (2990 = 29.90)"
    )
    duration_days = Column(
        Integer,
        nullable=False,
        default=30,
        comment="Default validity of an assignment in days"
    )
    plan_type = Column(
        Enum("free", "paid", name="plan_type"),
        nullable=False,
        default="paid",
        comment="free or paid"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
        comment="Whether plan can be assigned"
    )
    sort_order = Column(
        Integer,
        default=0,
        comment="Display order in the catalog"
    )

    __table_args__ = (
        CheckConstraint("slot_limit >= 0", name="ck_plans_slot_limit_non_negative"),
        CheckConstraint("price_cents >= 0", name="ck_plans_price_non_negative"),
        CheckConstraint("duration_days >= 1", name="ck_plans_duration_positive"),
    )

    def __repr__(self) -> str:
        return f"<Plan(name={self.name}, slot_limit={self.slot_limit}, is_active={self.is_active})>"
