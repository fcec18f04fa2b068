"""
Value types returned by the capacity components.

The binding descriptor stored on a consumer is exposed as a tagged union
of PlanBinding and TokenBinding. Both carry a `source` tag so callers can
branch on it without isinstance checks.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union


class BindingSource(str, Enum):
    """Pool that backs a consumer's slot."""
    PLAN = "plan"
    TOKEN = "token"


class ConsumerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class AssignmentEndReason(str, Enum):
    """Why a plan assignment stopped being active."""
    SUPERSEDED = "superseded"
    EXPIRED = "expired"
    REVOKED = "revoked"


class TransitionType(str, Enum):
    """Kind of plan change detected when an admin assigns a plan."""
    FIRST_TIME = "first_time"
    RENEWAL = "renewal"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class PlanBinding:
    """Consumer slot backed by a plan assignment."""
    plan_assignment_id: str
    valid_until: datetime
    bound_at: Optional[datetime] = None
    source: BindingSource = field(default=BindingSource.PLAN, init=False)

    def to_dict(self) -> dict:
        return {
            "source": self.source.value,
            "plan_assignment_id": self.plan_assignment_id,
            "valid_until": _iso(self.valid_until),
            "bound_at": _iso(self.bound_at),
        }


@dataclass(frozen=True)
class TokenBinding:
    """Consumer slot backed by a single-quantity token."""
    token_id: str
    valid_until: datetime
    bound_at: Optional[datetime] = None
    source: BindingSource = field(default=BindingSource.TOKEN, init=False)

    def to_dict(self) -> dict:
        return {
            "source": self.source.value,
            "token_id": self.token_id,
            "valid_until": _iso(self.valid_until),
            "bound_at": _iso(self.bound_at),
        }


Binding = Union[PlanBinding, TokenBinding]


@dataclass(frozen=True)
class PlanSnapshot:
    """Plan assignment as seen by the resolver."""
    assignment_id: str
    plan_id: str
    plan_name: str
    slot_limit: int
    starts_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "assignment_id": self.assignment_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan_name,
            "slot_limit": self.slot_limit,
            "starts_at": _iso(self.starts_at),
            "expires_at": _iso(self.expires_at),
        }


@dataclass
class ResolvedCapacity:
    """
    Effective capacity of a trainer at a point in time.

    capacity == consumed + available always holds.
    """
    trainer_id: str
    capacity: int
    consumed: int
    available: int
    active_plan: Optional[PlanSnapshot]
    is_expired: bool
    plan_slot_limit: int = 0
    available_token_quantity: int = 0
    consumed_token_quantity: int = 0
    plan_consumed: int = 0
    token_consumed: int = 0
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "trainer_id": self.trainer_id,
            "capacity": self.capacity,
            "consumed": self.consumed,
            "available": self.available,
            "active_plan": self.active_plan.to_dict() if self.active_plan else None,
            "is_expired": self.is_expired,
            "breakdown": {
                "plan_slot_limit": self.plan_slot_limit,
                "available_token_quantity": self.available_token_quantity,
                "consumed_token_quantity": self.consumed_token_quantity,
                "plan_consumed": self.plan_consumed,
                "token_consumed": self.token_consumed,
            },
            "resolved_at": _iso(self.resolved_at),
        }


@dataclass
class AllocationResult:
    """Outcome of a successful allocate call."""
    trainer_id: str
    consumer_id: str
    binding: Binding
    newly_bound: bool
    attempts: int = 1

    def to_dict(self) -> dict:
        return {
            "trainer_id": self.trainer_id,
            "consumer_id": self.consumer_id,
            "binding": self.binding.to_dict(),
            "newly_bound": self.newly_bound,
            "attempts": self.attempts,
        }


@dataclass
class ReactivationCheck:
    """Whether an inactive consumer can come back on its existing binding."""
    consumer_id: str
    requires_new_allocation: bool
    reason: str
    capacity_available: bool
    binding: Optional[Binding] = None

    def to_dict(self) -> dict:
        return {
            "consumer_id": self.consumer_id,
            "requires_new_allocation": self.requires_new_allocation,
            "reason": self.reason,
            "capacity_available": self.capacity_available,
            "binding": self.binding.to_dict() if self.binding else None,
        }


@dataclass
class TokenStatusSummary:
    """Token quantities of a trainer grouped by state."""
    trainer_id: str
    available_quantity: int = 0
    consumed_quantity: int = 0
    expired_quantity: int = 0
    tokens: List[dict] = field(default_factory=list)

    @property
    def total_quantity(self) -> int:
        return self.available_quantity + self.consumed_quantity + self.expired_quantity

    def to_dict(self) -> dict:
        return {
            "trainer_id": self.trainer_id,
            "total_quantity": self.total_quantity,
            "available_quantity": self.available_quantity,
            "consumed_quantity": self.consumed_quantity,
            "expired_quantity": self.expired_quantity,
            "tokens": self.tokens,
        }
