"""
Entitlement resolver - computes a trainer's effective capacity.

capacity = current plan slot limit
         + quantity of available tokens
         + quantity of consumed (bound, live) tokens

consumed = live plan bindings against the current assignment
         + live token bindings

The resolver never writes.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from capacity_engine.capacity.errors import ResolutionFailedError
from capacity_engine.capacity.models import PlanSnapshot, ResolvedCapacity
from capacity_engine.models.base import as_utc, utcnow
from capacity_engine.models.plan_assignment import PlanAssignment
from capacity_engine.repositories.consumers_repo import ConsumersRepository
from capacity_engine.repositories.plan_assignments_repo import PlanAssignmentsRepository
from capacity_engine.repositories.tokens_repo import TokensRepository

logger = logging.getLogger(__name__)


def _snapshot(assignment: PlanAssignment) -> PlanSnapshot:
    return PlanSnapshot(
        assignment_id=assignment.id,
        plan_id=assignment.plan_id,
        plan_name=assignment.plan.name if assignment.plan else "",
        slot_limit=assignment.slot_limit,
        starts_at=as_utc(assignment.starts_at),
        expires_at=as_utc(assignment.expires_at),
    )


class EntitlementResolver:
    """Read-only capacity calculator."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def resolve(self, trainer_id: str, now: Optional[datetime] = None) -> ResolvedCapacity:
        """
        Resolve the effective capacity of a trainer.

        When no assignment is current but an active one exists past its
        expiration (the sweeper has not run yet), it is reported with
        is_expired=True and contributes no slots.

        Raises:
            ResolutionFailedError: If the data layer fails
        """
        now = now or utcnow()
        try:
            return self._resolve(trainer_id, now)
        except SQLAlchemyError as e:
            logger.error(
                "Capacity resolution failed",
                extra={"trainer_id": trainer_id, "error": str(e)},
                exc_info=True,
            )
            raise ResolutionFailedError(
                f"Could not resolve capacity for trainer {trainer_id}",
                trainer_id=trainer_id,
            ) from e

    def _resolve(self, trainer_id: str, now: datetime) -> ResolvedCapacity:
        assignments = PlanAssignmentsRepository(self.db, trainer_id)
        tokens = TokensRepository(self.db, trainer_id)
        consumers = ConsumersRepository(self.db, trainer_id)

        current = assignments.get_current(now)
        is_expired = False
        active_plan = None
        plan_slot_limit = 0
        plan_consumed = 0

        if current is not None:
            active_plan = _snapshot(current)
            plan_slot_limit = current.slot_limit
            plan_consumed = consumers.count_plan_bound(current.id, now)
        else:
            lapsed = assignments.get_latest_active()
            if lapsed is not None:
                active_plan = _snapshot(lapsed)
                is_expired = True

        available_tokens = tokens.sum_available_quantity(now)
        consumed_tokens = tokens.sum_consumed_quantity(now)
        token_consumed = consumers.count_token_bound(now)

        capacity = plan_slot_limit + available_tokens + consumed_tokens
        consumed = plan_consumed + token_consumed

        return ResolvedCapacity(
            trainer_id=trainer_id,
            capacity=capacity,
            consumed=consumed,
            available=capacity - consumed,
            active_plan=active_plan,
            is_expired=is_expired,
            plan_slot_limit=plan_slot_limit,
            available_token_quantity=available_tokens,
            consumed_token_quantity=consumed_tokens,
            plan_consumed=plan_consumed,
            token_consumed=token_consumed,
            resolved_at=now,
        )

    def can_allocate(self, trainer_id: str, desired: int = 1, now: Optional[datetime] = None) -> bool:
        """Whether `desired` more consumers could be bound right now."""
        return self.resolve(trainer_id, now).available >= desired
