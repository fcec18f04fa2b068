"""
CapacityToken model - purchased extra slots.

A token row with quantity N grants N slots until expires_at. Binding a
consumer to a multi-quantity token splits off a quantity-1 row, so a bound
token always has quantity 1.
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Index, CheckConstraint
)

from capacity_engine.models.base import (
    Base, TimestampMixin, TrainerScopedMixin, generate_uuid, as_utc
)


class CapacityToken(Base, TimestampMixin, TrainerScopedMixin):
    """Extra slot grant, either available in the pool or bound to one consumer."""

    __tablename__ = "capacity_tokens"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    quantity = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Slots granted by this row"
    )
    issued_at = Column(
        DateTime(timezone=True),
        nullable=False
    )
    expires_at = Column(
        DateTime(timezone=True),
        nullable=False,
        index=True
    )
    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="False once expired or forcibly deactivated"
    )

    bound_consumer_id = Column(
        String(36),
        nullable=True,
        index=True,
        comment="Consumer this token backs (NULL = unbound)"
    )
    bound_at = Column(
        DateTime(timezone=True),
        nullable=True
    )

    added_by_admin_id = Column(
        String(255),
        nullable=True
    )
    reason = Column(
        String(500),
        nullable=True
    )
    split_from_token_id = Column(
        String(36),
        ForeignKey("capacity_tokens.id"),
        nullable=True,
        comment="Source row when this token was carved off a larger grant"
    )

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_capacity_tokens_quantity_positive"),
        Index("ix_capacity_tokens_pool", "trainer_id", "is_active", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CapacityToken(id={self.id}, trainer_id={self.trainer_id}, "
            f"quantity={self.quantity}, bound_consumer_id={self.bound_consumer_id})>"
        )

    @property
    def is_consumed(self) -> bool:
        return self.bound_consumer_id is not None

    def is_expired_at(self, now: datetime) -> bool:
        return as_utc(self.expires_at) <= now

    def is_available_at(self, now: datetime) -> bool:
        """Unbound, active and not yet expired."""
        return (
            not self.is_consumed
            and bool(self.is_active)
            and not self.is_expired_at(now)
        )
