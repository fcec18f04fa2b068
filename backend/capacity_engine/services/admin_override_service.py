"""
Admin Override Service - manual plan and token grants.

Handles:
- Assigning a plan to a trainer (supersedes the previous assignment)
- Adding tokens on behalf of a trainer
- Revoking the active plan, cascading to the consumers it backed

On supersession, live plan bindings move to the new assignment oldest
first, up to its slot limit. Consumers that do not fit are deactivated and
their plan binding is cleared.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from capacity_engine.capacity.errors import (
    ConcurrentModificationError,
    PlanAssignmentNotFoundError,
    PlanNotFoundError,
    PlanValidationError,
)
from capacity_engine.capacity.models import (
    AssignmentEndReason,
    BindingSource,
    ConsumerStatus,
    TransitionType,
)
from capacity_engine.capacity.tokens import TokenLifecycleManager
from capacity_engine.config.capacity_settings import (
    CapacitySettingsLoader,
    get_capacity_settings,
)
from capacity_engine.models.base import as_utc, utcnow
from capacity_engine.models.plan import Plan
from capacity_engine.models.plan_assignment import PlanAssignment
from capacity_engine.models.slot_assignment import SlotAssignment
from capacity_engine.models.token import CapacityToken
from capacity_engine.repositories.consumers_repo import ConsumersRepository
from capacity_engine.repositories.plan_assignments_repo import PlanAssignmentsRepository
from capacity_engine.repositories.plans_repo import PlansRepository

logger = logging.getLogger(__name__)


@dataclass
class PlanAssignmentResult:
    """Outcome of assigning a plan to a trainer."""
    assignment: PlanAssignment
    transition_type: TransitionType
    limit_difference: int
    previous_assignment_id: Optional[str] = None
    carried_over_consumer_ids: List[str] = field(default_factory=list)
    deactivated_consumer_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "assignment_id": self.assignment.id,
            "trainer_id": self.assignment.trainer_id,
            "plan_id": self.assignment.plan_id,
            "slot_limit": self.assignment.slot_limit,
            "starts_at": as_utc(self.assignment.starts_at).isoformat(),
            "expires_at": as_utc(self.assignment.expires_at).isoformat(),
            "transition_type": self.transition_type.value,
            "limit_difference": self.limit_difference,
            "previous_assignment_id": self.previous_assignment_id,
            "carried_over_consumer_ids": self.carried_over_consumer_ids,
            "deactivated_consumer_ids": self.deactivated_consumer_ids,
        }


@dataclass
class RevocationResult:
    """Outcome of revoking a trainer's plan."""
    assignment_id: str
    trainer_id: str
    deactivated_consumer_ids: List[str] = field(default_factory=list)

    @property
    def consumers_deactivated(self) -> int:
        return len(self.deactivated_consumer_ids)

    def to_dict(self) -> dict:
        return {
            "assignment_id": self.assignment_id,
            "trainer_id": self.trainer_id,
            "consumers_deactivated": self.consumers_deactivated,
            "deactivated_consumer_ids": self.deactivated_consumer_ids,
        }


def detect_transition(
    previous: Optional[PlanAssignment],
    plan: Plan,
) -> tuple[TransitionType, int]:
    """
    Classify a plan change.

    Returns:
        (transition type, new limit minus previous limit)
    """
    if previous is None:
        return TransitionType.FIRST_TIME, plan.slot_limit
    if previous.plan_id == plan.id:
        return TransitionType.RENEWAL, 0

    difference = plan.slot_limit - previous.slot_limit
    if difference > 0:
        return TransitionType.UPGRADE, difference
    if difference < 0:
        return TransitionType.DOWNGRADE, difference
    return TransitionType.RENEWAL, 0


class AdminOverrideService:
    """Administrative plan and token overrides for one trainer at a time."""

    def __init__(self, db_session: Session, settings: Optional[CapacitySettingsLoader] = None):
        self.db = db_session
        self.settings = settings or get_capacity_settings()
        self.tokens = TokenLifecycleManager(db_session, settings=self.settings)

    def assign_plan(
        self,
        trainer_id: str,
        plan_id: str,
        admin_id: str,
        duration_override_days: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PlanAssignmentResult:
        """
        Grant a plan to a trainer starting now.

        Raises:
            PlanNotFoundError: If the plan doesn't exist
            PlanValidationError: If the plan is inactive or the duration invalid
            ConcurrentModificationError: If another assignment raced this one
        """
        now = now or utcnow()
        plan = PlansRepository(self.db).get_by_id(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        if not plan.is_active:
            raise PlanValidationError(
                f"Plan '{plan.name}' is inactive and cannot be assigned",
                plan_id=plan_id,
            )

        duration_days = duration_override_days if duration_override_days is not None else plan.duration_days
        if duration_days < 1:
            raise PlanValidationError(
                "duration_override_days must be >= 1",
                duration_override_days=duration_override_days,
            )

        repo = PlanAssignmentsRepository(self.db, trainer_id)
        try:
            with self.db.begin_nested():
                previous = repo.get_latest_active()
                transition, difference = detect_transition(previous, plan)

                if previous is not None:
                    previous.is_active = False
                    previous.deactivated_at = now
                    previous.deactivation_reason = AssignmentEndReason.SUPERSEDED.value
                    self.db.flush()

                assignment = PlanAssignment(
                    trainer_id=trainer_id,
                    plan_id=plan.id,
                    slot_limit=plan.slot_limit,
                    starts_at=now,
                    expires_at=now + timedelta(days=duration_days),
                    is_active=True,
                    allocation_version=0,
                    assigned_by_admin_id=admin_id,
                    reason=reason,
                )
                self.db.add(assignment)
                self.db.flush()

                carried, dropped = [], []
                if previous is not None:
                    carried, dropped = self._carry_over(previous, assignment, now)
        except IntegrityError as e:
            logger.warning("Concurrent plan assignment detected", extra={
                "trainer_id": trainer_id,
                "plan_id": plan_id,
                "error": str(e.orig),
            })
            raise ConcurrentModificationError(
                f"Another plan assignment for trainer {trainer_id} is in progress",
                trainer_id=trainer_id,
            ) from e

        logger.info("Plan assigned", extra={
            "trainer_id": trainer_id,
            "plan_id": plan.id,
            "assignment_id": assignment.id,
            "admin_id": admin_id,
            "transition_type": transition.value,
            "carried_over": len(carried),
            "deactivated": len(dropped),
        })

        return PlanAssignmentResult(
            assignment=assignment,
            transition_type=transition,
            limit_difference=difference,
            previous_assignment_id=previous.id if previous else None,
            carried_over_consumer_ids=carried,
            deactivated_consumer_ids=dropped,
        )

    def _carry_over(
        self,
        previous: PlanAssignment,
        assignment: PlanAssignment,
        now: datetime,
    ) -> tuple[List[str], List[str]]:
        consumers = ConsumersRepository(self.db, assignment.trainer_id).list_plan_bound(
            previous.id, live_at=now
        )
        carried, dropped = [], []

        for consumer in consumers:
            if len(carried) < assignment.slot_limit:
                consumer.plan_assignment_id = assignment.id
                consumer.valid_until = assignment.expires_at
                consumer.binding_version = (consumer.binding_version or 0) + 1
                self.db.add(SlotAssignment(
                    trainer_id=assignment.trainer_id,
                    consumer_id=consumer.id,
                    source=BindingSource.PLAN.value,
                    plan_assignment_id=assignment.id,
                    event="carried_over",
                    assigned_at=now,
                    valid_until=assignment.expires_at,
                ))
                carried.append(consumer.id)
            else:
                consumer.clear_binding()
                consumer.status = ConsumerStatus.INACTIVE.value
                consumer.deactivated_at = now
                dropped.append(consumer.id)

        self.db.flush()
        return carried, dropped

    def add_tokens(
        self,
        trainer_id: str,
        quantity: int,
        admin_id: str,
        expiration_days_override: Optional[int] = None,
        reason: Optional[str] = None,
        count: int = 1,
        now: Optional[datetime] = None,
    ) -> List[CapacityToken]:
        """
        Add `count` token rows of `quantity` slots each.

        Validity defaults to tokens.default_expiration_days.
        """
        return self.tokens.create_tokens(
            trainer_id=trainer_id,
            quantity_each=quantity,
            count=count,
            expiration_days=expiration_days_override,
            admin_id=admin_id,
            reason=reason,
            now=now,
        )

    def revoke_plan(
        self,
        trainer_id: str,
        admin_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RevocationResult:
        """
        Revoke the trainer's active plan.

        Every consumer bound through it is deactivated and its binding
        cleared. Token-bound consumers are untouched.

        Raises:
            PlanAssignmentNotFoundError: If the trainer has no active plan
        """
        now = now or utcnow()
        assignment = PlanAssignmentsRepository(self.db, trainer_id).get_latest_active()
        if assignment is None:
            raise PlanAssignmentNotFoundError(trainer_id)

        with self.db.begin_nested():
            assignment.is_active = False
            assignment.deactivated_at = now
            assignment.deactivation_reason = AssignmentEndReason.REVOKED.value
            assignment.revoked_by_admin_id = admin_id
            if reason:
                assignment.reason = reason

            deactivated = []
            for consumer in ConsumersRepository(self.db, trainer_id).list_plan_bound(assignment.id):
                consumer.clear_binding()
                consumer.status = ConsumerStatus.INACTIVE.value
                consumer.deactivated_at = now
                deactivated.append(consumer.id)

        logger.info("Plan revoked", extra={
            "trainer_id": trainer_id,
            "assignment_id": assignment.id,
            "admin_id": admin_id,
            "consumers_deactivated": len(deactivated),
        })

        return RevocationResult(
            assignment_id=assignment.id,
            trainer_id=trainer_id,
            deactivated_consumer_ids=deactivated,
        )
