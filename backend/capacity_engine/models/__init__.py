"""
Database models for plans, plan assignments, tokens and consumers.

Plans are global. Everything else is scoped by trainer_id through
TrainerScopedMixin.
"""

from capacity_engine.models.base import TimestampMixin, TrainerScopedMixin
from capacity_engine.models.plan import Plan
from capacity_engine.models.plan_assignment import PlanAssignment
from capacity_engine.models.token import CapacityToken
from capacity_engine.models.consumer import Consumer
from capacity_engine.models.slot_assignment import SlotAssignment

__all__ = [
    "TimestampMixin",
    "TrainerScopedMixin",
    "Plan",
    "PlanAssignment",
    "CapacityToken",
    "Consumer",
    "SlotAssignment",
]
