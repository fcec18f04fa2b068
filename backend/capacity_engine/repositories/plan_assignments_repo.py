"""
Repository for trainer plan assignments.
"""

from datetime import datetime
from typing import List, Optional

from capacity_engine.models.plan_assignment import PlanAssignment
from capacity_engine.repositories.base_repo import BaseRepository


class PlanAssignmentsRepository(BaseRepository[PlanAssignment]):
    """Plan assignments of one trainer."""

    def _get_model_class(self):
        return PlanAssignment

    def get_current(self, now: datetime) -> Optional[PlanAssignment]:
        """Latest active assignment that has not yet expired."""
        return (
            self._scoped_query()
            .filter(
                PlanAssignment.is_active == True,  # noqa: E712
                PlanAssignment.expires_at > now,
            )
            .order_by(PlanAssignment.starts_at.desc())
            .populate_existing()
            .first()
        )

    def get_latest_active(self) -> Optional[PlanAssignment]:
        """Latest active assignment regardless of expiration."""
        return (
            self._scoped_query()
            .filter(PlanAssignment.is_active == True)  # noqa: E712
            .order_by(PlanAssignment.starts_at.desc())
            .first()
        )

    def list_due_for_expiry(self, now: datetime) -> List[PlanAssignment]:
        return (
            self._scoped_query()
            .filter(
                PlanAssignment.is_active == True,  # noqa: E712
                PlanAssignment.expires_at <= now,
            )
            .all()
        )
