"""
Maintenance sweeper - periodic expiration of plans, tokens and bindings.

For each trainer with due work:
1. Active plan assignments past expires_at become inactive ('expired').
2. Active tokens past expires_at become inactive and unbound.
3. Active consumers whose binding passed valid_until become inactive.
   A token-backed consumer also forces its token inactive. The binding
   descriptor is kept.

Each trainer runs in its own SAVEPOINT and each consumer in a nested one,
so one failure never blocks the rest of the sweep. Re-running the sweep
with the same `now` changes nothing.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from capacity_engine.capacity.models import (
    AssignmentEndReason,
    BindingSource,
    ConsumerStatus,
)
from capacity_engine.capacity.tokens import TokenLifecycleManager
from capacity_engine.config.capacity_settings import (
    CapacitySettingsLoader,
    get_capacity_settings,
)
from capacity_engine.models.base import as_utc, utcnow
from capacity_engine.models.consumer import Consumer
from capacity_engine.models.plan import Plan
from capacity_engine.models.plan_assignment import PlanAssignment
from capacity_engine.models.token import CapacityToken
from capacity_engine.repositories.consumers_repo import ConsumersRepository
from capacity_engine.repositories.plan_assignments_repo import PlanAssignmentsRepository

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    """Counters and failures of one sweep."""
    plans_expired: int = 0
    tokens_expired: int = 0
    consumers_deactivated: int = 0
    trainers_processed: int = 0
    failures: List[dict] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def errors(self) -> int:
        return len(self.failures)

    def to_dict(self) -> dict:
        return {
            "plans_expired": self.plans_expired,
            "tokens_expired": self.tokens_expired,
            "consumers_deactivated": self.consumers_deactivated,
            "trainers_processed": self.trainers_processed,
            "errors": self.errors,
            "failures": self.failures,
            "duration_seconds": self.duration_seconds,
        }


class MaintenanceSweeper:
    """Expires plans, tokens and lapsed consumer bindings."""

    def __init__(self, db_session: Session, settings: Optional[CapacitySettingsLoader] = None):
        self.db = db_session
        self.settings = settings or get_capacity_settings()
        self.tokens = TokenLifecycleManager(db_session, settings=self.settings)

    def run_reconciliation(
        self,
        now: Optional[datetime] = None,
        trainer_ids: Optional[Iterable[str]] = None,
    ) -> ReconciliationResult:
        """
        Run one sweep.

        Args:
            now: Sweep time (defaults to the current UTC time)
            trainer_ids: Restrict the sweep to these trainers

        Returns:
            ReconciliationResult with per-step counts and isolated failures
        """
        now = now or utcnow()
        started = time.monotonic()
        result = ReconciliationResult()

        trainers = sorted(set(trainer_ids)) if trainer_ids is not None else self.find_trainers_with_due_work(now)

        for trainer_id in trainers:
            self._sweep_trainer(trainer_id, now, result)
            result.trainers_processed += 1

        result.duration_seconds = time.monotonic() - started
        logger.info("Capacity reconciliation finished", extra=result.to_dict())
        return result

    def find_trainers_with_due_work(self, now: datetime) -> List[str]:
        """Trainers with an expired plan, expired token or lapsed active consumer."""
        limit = self.settings.get_batch_size()

        plan_trainers = self.db.query(PlanAssignment.trainer_id).filter(
            PlanAssignment.is_active == True,  # noqa: E712
            PlanAssignment.expires_at <= now,
        )
        token_trainers = self.db.query(CapacityToken.trainer_id).filter(
            CapacityToken.is_active == True,  # noqa: E712
            CapacityToken.expires_at <= now,
        )
        consumer_trainers = self.db.query(Consumer.trainer_id).filter(
            Consumer.status == ConsumerStatus.ACTIVE.value,
            Consumer.valid_until.isnot(None),
            Consumer.valid_until <= now,
        )

        trainers = set()
        for query in (plan_trainers, token_trainers, consumer_trainers):
            trainers.update(row[0] for row in query.distinct().all())

        ordered = sorted(trainers)
        if len(ordered) > limit:
            logger.warning("Reconciliation batch truncated", extra={
                "trainers_due": len(ordered),
                "batch_size": limit,
            })
        return ordered[:limit]

    def _sweep_trainer(self, trainer_id: str, now: datetime, result: ReconciliationResult) -> None:
        try:
            with self.db.begin_nested():
                plans_expired = self._expire_plans(trainer_id, now)
                tokens_expired = self.tokens.expire_due(now, trainer_id=trainer_id)
        except Exception as e:
            logger.error("Failed to expire plans/tokens for trainer", extra={
                "trainer_id": trainer_id,
                "error": str(e),
            }, exc_info=True)
            result.failures.append({
                "trainer_id": trainer_id,
                "step": "expire",
                "error": str(e),
            })
            return

        result.plans_expired += plans_expired
        result.tokens_expired += tokens_expired

        lapsed = ConsumersRepository(self.db, trainer_id).list_lapsed_active(now)
        for consumer in lapsed:
            consumer_id = consumer.id
            try:
                with self.db.begin_nested():
                    self._deactivate_consumer(consumer, now)
                result.consumers_deactivated += 1
            except Exception as e:
                logger.error("Failed to deactivate lapsed consumer", extra={
                    "trainer_id": trainer_id,
                    "consumer_id": consumer_id,
                    "error": str(e),
                }, exc_info=True)
                result.failures.append({
                    "trainer_id": trainer_id,
                    "consumer_id": consumer_id,
                    "step": "deactivate_consumer",
                    "error": str(e),
                })

    def _expire_plans(self, trainer_id: str, now: datetime) -> int:
        due = PlanAssignmentsRepository(self.db, trainer_id).list_due_for_expiry(now)
        for assignment in due:
            assignment.is_active = False
            assignment.deactivated_at = now
            assignment.deactivation_reason = AssignmentEndReason.EXPIRED.value
            logger.info("Plan assignment expired", extra={
                "trainer_id": trainer_id,
                "assignment_id": assignment.id,
                "expires_at": as_utc(assignment.expires_at).isoformat(),
            })
        self.db.flush()
        return len(due)

    def _deactivate_consumer(self, consumer: Consumer, now: datetime) -> None:
        consumer.status = ConsumerStatus.INACTIVE.value
        consumer.deactivated_at = now

        if consumer.binding_source == BindingSource.TOKEN.value and consumer.token_id:
            self.db.execute(
                update(CapacityToken)
                .where(
                    CapacityToken.id == consumer.token_id,
                    CapacityToken.trainer_id == consumer.trainer_id,
                    CapacityToken.is_active == True,  # noqa: E712
                )
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
        self.db.flush()

        logger.info("Consumer deactivated after binding lapsed", extra={
            "trainer_id": consumer.trainer_id,
            "consumer_id": consumer.id,
            "binding_source": consumer.binding_source,
        })

    def find_expiring_soon(
        self,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """
        Plans and tokens expiring within the window.

        Feeds an external notifier; nothing is sent from here.
        """
        now = now or utcnow()
        if days is None:
            days = self.settings.get_expiring_soon_days()
        until = now + timedelta(days=days)

        assignments = (
            self.db.query(PlanAssignment)
            .filter(
                PlanAssignment.is_active == True,  # noqa: E712
                PlanAssignment.expires_at > now,
                PlanAssignment.expires_at <= until,
            )
            .order_by(PlanAssignment.expires_at.asc())
            .all()
        )
        token_rows = (
            self.db.query(
                CapacityToken.trainer_id,
                func.sum(CapacityToken.quantity),
                func.min(CapacityToken.expires_at),
            )
            .filter(
                CapacityToken.is_active == True,  # noqa: E712
                CapacityToken.expires_at > now,
                CapacityToken.expires_at <= until,
            )
            .group_by(CapacityToken.trainer_id)
            .order_by(CapacityToken.trainer_id.asc())
            .all()
        )

        return {
            "window_days": days,
            "plans": [
                {
                    "trainer_id": a.trainer_id,
                    "assignment_id": a.id,
                    "plan_name": a.plan.name if a.plan else None,
                    "expires_at": as_utc(a.expires_at).isoformat(),
                    "days_remaining": (as_utc(a.expires_at) - now).days,
                }
                for a in assignments
            ],
            "tokens": [
                {
                    "trainer_id": trainer_id,
                    "quantity": int(quantity),
                    "first_expires_at": as_utc(first_expiry).isoformat(),
                }
                for trainer_id, quantity, first_expiry in token_rows
            ],
        }

    def usage_report(self, now: Optional[datetime] = None) -> dict:
        """Engine-wide usage counts for admins."""
        now = now or utcnow()

        active_assignments = self.db.query(PlanAssignment).filter(
            PlanAssignment.is_active == True  # noqa: E712
        )
        current = active_assignments.filter(PlanAssignment.expires_at > now).count()
        expired_pending = active_assignments.filter(PlanAssignment.expires_at <= now).count()

        plan_distribution: Dict[str, int] = {
            name: count
            for name, count in (
                self.db.query(Plan.name, func.count(PlanAssignment.id))
                .join(PlanAssignment, PlanAssignment.plan_id == Plan.id)
                .filter(
                    PlanAssignment.is_active == True,  # noqa: E712
                    PlanAssignment.expires_at > now,
                )
                .group_by(Plan.name)
                .all()
            )
        }

        def _token_quantity(*criteria) -> int:
            value = self.db.query(
                func.coalesce(func.sum(CapacityToken.quantity), 0)
            ).filter(*criteria).scalar()
            return int(value)

        live = (CapacityToken.is_active == True, CapacityToken.expires_at > now)  # noqa: E712

        return {
            "generated_at": now.isoformat(),
            "trainers_with_current_plan": current,
            "trainers_with_expired_plan": expired_pending,
            "plan_distribution": plan_distribution,
            "consumers": {
                "active": self.db.query(Consumer).filter(
                    Consumer.status == ConsumerStatus.ACTIVE.value
                ).count(),
                "inactive": self.db.query(Consumer).filter(
                    Consumer.status == ConsumerStatus.INACTIVE.value
                ).count(),
            },
            "tokens": {
                "available_quantity": _token_quantity(*live, CapacityToken.bound_consumer_id.is_(None)),
                "consumed_quantity": _token_quantity(*live, CapacityToken.bound_consumer_id.isnot(None)),
                "expired_quantity": _token_quantity(
                    (CapacityToken.is_active == False) | (CapacityToken.expires_at <= now)  # noqa: E712
                ),
            },
        }
