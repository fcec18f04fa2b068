"""
Slot allocator - binds consumers to plan slots or tokens.

Allocation is:
- idempotent: a consumer with a live binding is returned unchanged
- plan-first: plan slots are used before tokens
- atomic: each attempt runs in its own SAVEPOINT; every write is a
  conditional UPDATE, and a write that affects no rows rolls the attempt
  back and retries it, up to allocation.max_retries attempts

Deactivating a consumer does not release its slot. Only deletion (or an
explicit token release) returns capacity to the trainer.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from capacity_engine.capacity.errors import (
    ConcurrentModificationError,
    ConsumerNotFoundError,
    InsufficientCapacityError,
    PersistenceError,
    TokenExpiredError,
)
from capacity_engine.capacity.models import (
    AllocationResult,
    BindingSource,
    ConsumerStatus,
    ReactivationCheck,
)
from capacity_engine.capacity.resolver import EntitlementResolver
from capacity_engine.capacity.tokens import TokenLifecycleManager
from capacity_engine.config.capacity_settings import (
    CapacitySettingsLoader,
    get_capacity_settings,
)
from capacity_engine.models.base import as_utc, utcnow
from capacity_engine.models.consumer import Consumer
from capacity_engine.models.plan_assignment import PlanAssignment
from capacity_engine.models.slot_assignment import SlotAssignment
from capacity_engine.models.token import CapacityToken
from capacity_engine.repositories.consumers_repo import ConsumersRepository
from capacity_engine.repositories.plan_assignments_repo import PlanAssignmentsRepository
from capacity_engine.repositories.tokens_repo import TokensRepository

logger = logging.getLogger(__name__)


class SlotAllocator:
    """Allocates, activates, deactivates and deletes consumers."""

    def __init__(
        self,
        db_session: Session,
        resolver: Optional[EntitlementResolver] = None,
        tokens: Optional[TokenLifecycleManager] = None,
        settings: Optional[CapacitySettingsLoader] = None,
    ):
        self.db = db_session
        self.settings = settings or get_capacity_settings()
        self.resolver = resolver or EntitlementResolver(db_session)
        self.tokens = tokens or TokenLifecycleManager(db_session, settings=self.settings)

    def allocate(
        self,
        trainer_id: str,
        consumer_id: str,
        now: Optional[datetime] = None,
    ) -> AllocationResult:
        """
        Ensure the consumer holds a live slot.

        Raises:
            ConsumerNotFoundError: If the consumer doesn't belong to the trainer
            InsufficientCapacityError: If no plan slot or token is available
            ConcurrentModificationError: If every attempt lost a race
            PersistenceError: If the data layer fails
        """
        now = now or utcnow()
        max_attempts = self.settings.get_max_retries()

        for attempt in range(1, max_attempts + 1):
            try:
                with self.db.begin_nested():
                    result = self._attempt(trainer_id, consumer_id, now)
                result.attempts = attempt
                return result
            except ConcurrentModificationError as e:
                logger.warning("Allocation conflict", extra={
                    "trainer_id": trainer_id,
                    "consumer_id": consumer_id,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error": e.message,
                })
            except SQLAlchemyError as e:
                logger.error("Allocation failed", extra={
                    "trainer_id": trainer_id,
                    "consumer_id": consumer_id,
                    "error": str(e),
                }, exc_info=True)
                raise PersistenceError(
                    f"Allocation for consumer {consumer_id} failed",
                    trainer_id=trainer_id,
                    consumer_id=consumer_id,
                ) from e

        raise ConcurrentModificationError(
            f"Allocation for consumer {consumer_id} did not settle after {max_attempts} attempts",
            trainer_id=trainer_id,
            consumer_id=consumer_id,
            attempts=max_attempts,
        )

    def _attempt(self, trainer_id: str, consumer_id: str, now: datetime) -> AllocationResult:
        consumer = ConsumersRepository(self.db, trainer_id).get_fresh(consumer_id)
        if consumer is None:
            raise ConsumerNotFoundError(consumer_id, trainer_id)

        if self._has_live_binding(consumer, now):
            return AllocationResult(
                trainer_id=trainer_id,
                consumer_id=consumer_id,
                binding=consumer.binding,
                newly_bound=False,
            )

        assignment = PlanAssignmentsRepository(self.db, trainer_id).get_current(now)
        if assignment is not None:
            in_use = ConsumersRepository(self.db, trainer_id).count_plan_bound(assignment.id, now)
            if in_use < assignment.slot_limit:
                self._claim_plan_slot(assignment)
                self._write_binding(
                    consumer,
                    now,
                    source=BindingSource.PLAN,
                    plan_assignment_id=assignment.id,
                    valid_until=assignment.expires_at,
                )
                return self._bound(consumer, now)

        token = TokensRepository(self.db, trainer_id).first_available(now)
        if token is not None:
            piece = self.tokens.assign(token, consumer.id, now)
            self._write_binding(
                consumer,
                now,
                source=BindingSource.TOKEN,
                token_id=piece.id,
                valid_until=piece.expires_at,
            )
            return self._bound(consumer, now)

        snapshot = self.resolver.resolve(trainer_id, now)
        logger.warning("Allocation refused: no capacity", extra={
            "trainer_id": trainer_id,
            "consumer_id": consumer_id,
            "capacity": snapshot.capacity,
            "consumed": snapshot.consumed,
        })
        raise InsufficientCapacityError(
            trainer_id=trainer_id,
            capacity=snapshot.capacity,
            consumed=snapshot.consumed,
            available=snapshot.available,
            is_expired=snapshot.is_expired,
        )

    def _has_live_binding(self, consumer: Consumer, now: datetime) -> bool:
        if consumer.binding is None or consumer.binding_lapsed(now):
            return False
        if consumer.binding_source == BindingSource.PLAN.value:
            assignment = self.db.get(PlanAssignment, consumer.plan_assignment_id)
            return assignment is not None and assignment.is_current(now)
        token = self.db.get(CapacityToken, consumer.token_id)
        return (
            token is not None
            and token.bound_consumer_id == consumer.id
            and bool(token.is_active)
            and not token.is_expired_at(now)
        )

    def _claim_plan_slot(self, assignment: PlanAssignment) -> None:
        seen = assignment.allocation_version
        stmt = (
            update(PlanAssignment)
            .where(
                PlanAssignment.id == assignment.id,
                PlanAssignment.is_active == True,  # noqa: E712
                PlanAssignment.allocation_version == seen,
            )
            .values(allocation_version=seen + 1)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount != 1:
            raise ConcurrentModificationError(
                f"Plan assignment {assignment.id} changed during allocation",
                plan_assignment_id=assignment.id,
            )
        self.db.refresh(assignment)

    def _write_binding(
        self,
        consumer: Consumer,
        now: datetime,
        source: BindingSource,
        valid_until: datetime,
        plan_assignment_id: Optional[str] = None,
        token_id: Optional[str] = None,
    ) -> None:
        seen = consumer.binding_version
        stmt = (
            update(Consumer)
            .where(
                Consumer.id == consumer.id,
                Consumer.trainer_id == consumer.trainer_id,
                Consumer.binding_version == seen,
            )
            .values(
                binding_source=source.value,
                plan_assignment_id=plan_assignment_id,
                token_id=token_id,
                valid_until=valid_until,
                bound_at=now,
                binding_version=seen + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount != 1:
            raise ConcurrentModificationError(
                f"Consumer {consumer.id} binding changed during allocation",
                consumer_id=consumer.id,
            )
        self.db.refresh(consumer)

        self.db.add(SlotAssignment(
            trainer_id=consumer.trainer_id,
            consumer_id=consumer.id,
            source=source.value,
            plan_assignment_id=plan_assignment_id,
            token_id=token_id,
            event="allocated",
            assigned_at=now,
            valid_until=valid_until,
        ))
        self.db.flush()

    def _bound(self, consumer: Consumer, now: datetime) -> AllocationResult:
        logger.info("Consumer slot allocated", extra={
            "trainer_id": consumer.trainer_id,
            "consumer_id": consumer.id,
            "source": consumer.binding_source,
            "valid_until": as_utc(consumer.valid_until).isoformat(),
        })
        return AllocationResult(
            trainer_id=consumer.trainer_id,
            consumer_id=consumer.id,
            binding=consumer.binding,
            newly_bound=True,
        )

    def activate(
        self,
        trainer_id: str,
        consumer_id: str,
        now: Optional[datetime] = None,
    ) -> AllocationResult:
        """Allocate a slot (if needed) and mark the consumer active."""
        now = now or utcnow()
        result = self.allocate(trainer_id, consumer_id, now)

        consumer = ConsumersRepository(self.db, trainer_id).get_fresh(consumer_id)
        if consumer.status != ConsumerStatus.ACTIVE.value:
            consumer.status = ConsumerStatus.ACTIVE.value
            consumer.deactivated_at = None
            self.db.flush()
            logger.info("Consumer activated", extra={
                "trainer_id": trainer_id,
                "consumer_id": consumer_id,
            })
        return result

    def deactivate(
        self,
        trainer_id: str,
        consumer_id: str,
        now: Optional[datetime] = None,
    ) -> Consumer:
        """
        Mark the consumer inactive.

        The binding is kept, so the slot stays consumed until the binding
        lapses or the consumer is deleted.
        """
        now = now or utcnow()
        consumer = ConsumersRepository(self.db, trainer_id).get_fresh(consumer_id)
        if consumer is None:
            raise ConsumerNotFoundError(consumer_id, trainer_id)

        if consumer.status != ConsumerStatus.INACTIVE.value:
            consumer.status = ConsumerStatus.INACTIVE.value
            consumer.deactivated_at = now
            self.db.flush()
            logger.info("Consumer deactivated", extra={
                "trainer_id": trainer_id,
                "consumer_id": consumer_id,
                "binding_source": consumer.binding_source,
            })
        return consumer

    def can_reactivate(
        self,
        trainer_id: str,
        consumer_id: str,
        now: Optional[datetime] = None,
    ) -> ReactivationCheck:
        """
        Check whether a consumer can come back on its existing binding.

        Reasons: live_binding, no_binding, binding_expired, token_mismatch,
        plan_inactive.
        """
        now = now or utcnow()
        consumer = ConsumersRepository(self.db, trainer_id).get_fresh(consumer_id)
        if consumer is None:
            raise ConsumerNotFoundError(consumer_id, trainer_id)

        binding = consumer.binding
        if binding is None:
            reason = "no_binding"
        elif consumer.binding_lapsed(now):
            reason = "binding_expired"
        elif self._has_live_binding(consumer, now):
            reason = "live_binding"
        elif binding.source == BindingSource.TOKEN:
            reason = "token_mismatch"
        else:
            reason = "plan_inactive"

        requires_new = reason != "live_binding"
        return ReactivationCheck(
            consumer_id=consumer_id,
            requires_new_allocation=requires_new,
            reason=reason,
            capacity_available=(not requires_new) or self.resolver.can_allocate(trainer_id, 1, now),
            binding=binding,
        )

    def delete_consumer(
        self,
        trainer_id: str,
        consumer_id: str,
        now: Optional[datetime] = None,
    ) -> dict:
        """
        Delete a consumer and free its slot.

        A bound token goes back to the pool (or is deactivated if it has
        expired). Plan slots free implicitly because consumption is derived
        from consumer rows.
        """
        now = now or utcnow()
        repo = ConsumersRepository(self.db, trainer_id)
        consumer = repo.get_fresh(consumer_id)
        if consumer is None:
            raise ConsumerNotFoundError(consumer_id, trainer_id)

        freed_source = consumer.binding_source
        released_token_id = None
        if freed_source == BindingSource.TOKEN.value and consumer.token_id:
            released_token_id = consumer.token_id
            try:
                self.tokens.release(released_token_id, trainer_id=trainer_id, now=now)
            except TokenExpiredError:
                logger.info("Deleted consumer held an expired token", extra={
                    "trainer_id": trainer_id,
                    "consumer_id": consumer_id,
                    "token_id": released_token_id,
                })

        repo.delete(consumer_id)

        return {
            "consumer_id": consumer_id,
            "freed_source": freed_source,
            "released_token_id": released_token_id,
        }
