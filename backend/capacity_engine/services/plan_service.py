"""
Plan Service for catalog management.

Handles:
- Creating and updating plans
- Soft deactivation (plans are never deleted)
- Listing the catalog in display order
"""

import logging
from typing import Optional, List
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from capacity_engine.capacity.errors import PlanNotFoundError, PlanValidationError
from capacity_engine.models.plan import Plan
from capacity_engine.repositories.plans_repo import PlansRepository

logger = logging.getLogger(__name__)

PLAN_TYPES = ("free", "paid")


@dataclass
class PlanInfo:
    """Plan information as exposed by the catalog."""
    id: str
    name: str
    description: Optional[str]
    slot_limit: int
    price_cents: int
    duration_days: int
    plan_type: str
    is_active: bool
    sort_order: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, plan: Plan) -> "PlanInfo":
        return cls(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            slot_limit=plan.slot_limit,
            price_cents=plan.price_cents,
            duration_days=plan.duration_days,
            plan_type=plan.plan_type,
            is_active=plan.is_active,
            sort_order=plan.sort_order or 0,
            created_at=plan.created_at,
            updated_at=plan.updated_at,
        )


class PlanService:
    """
    Service for plan catalog operations.

    Plans are global entities - not trainer-scoped.
    """

    def __init__(self, db_session: Session):
        """
        Initialize plan service.

        Args:
            db_session: Database session
        """
        self.db = db_session
        self.repo = PlansRepository(db_session)

    def get_plan(self, plan_id: str) -> PlanInfo:
        """
        Get a plan.

        Raises:
            PlanNotFoundError: If plan doesn't exist
        """
        plan = self.repo.get_by_id(plan_id)
        if not plan:
            raise PlanNotFoundError(plan_id)
        return PlanInfo.from_model(plan)

    def list_plans(
        self,
        include_inactive: bool = False,
        limit: int = 100,
        offset: int = 0
    ) -> tuple[List[PlanInfo], int]:
        """
        List plans with pagination.

        Returns:
            Tuple of (list of PlanInfo, total count)
        """
        plans = self.repo.get_all(
            include_inactive=include_inactive,
            limit=limit,
            offset=offset,
        )
        total = self.repo.count(include_inactive=include_inactive)
        return [PlanInfo.from_model(p) for p in plans], total

    def create_plan(
        self,
        name: str,
        slot_limit: int,
        duration_days: int = 30,
        price_cents: int = 0,
        plan_type: Optional[str] = None,
        description: Optional[str] = None,
        is_active: bool = True,
        sort_order: int = 0,
    ) -> PlanInfo:
        """
        Create a new plan.

        plan_type defaults to 'free' for zero-priced plans and 'paid' otherwise.

        Raises:
            PlanValidationError: If limits, price or duration are invalid
            PlanAlreadyExistsError: If the name is taken
        """
        plan_type = plan_type or ("free" if price_cents == 0 else "paid")
        self._validate(
            name=name,
            slot_limit=slot_limit,
            duration_days=duration_days,
            price_cents=price_cents,
            plan_type=plan_type,
        )

        plan = self.repo.create(
            name=name,
            slot_limit=slot_limit,
            duration_days=duration_days,
            price_cents=price_cents,
            plan_type=plan_type,
            description=description,
            is_active=is_active,
            sort_order=sort_order,
        )
        return PlanInfo.from_model(plan)

    def update_plan(
        self,
        plan_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        slot_limit: Optional[int] = None,
        duration_days: Optional[int] = None,
        price_cents: Optional[int] = None,
        plan_type: Optional[str] = None,
        is_active: Optional[bool] = None,
        sort_order: Optional[int] = None,
    ) -> PlanInfo:
        """
        Update a plan.

        Slot limit changes only affect future assignments; current
        assignments keep the limit they were granted with.
        """
        self._validate(
            name=name,
            slot_limit=slot_limit,
            duration_days=duration_days,
            price_cents=price_cents,
            plan_type=plan_type,
        )
        plan = self.repo.update(
            plan_id,
            name=name,
            description=description,
            slot_limit=slot_limit,
            duration_days=duration_days,
            price_cents=price_cents,
            plan_type=plan_type,
            is_active=is_active,
            sort_order=sort_order,
        )
        return PlanInfo.from_model(plan)

    def deactivate_plan(self, plan_id: str) -> PlanInfo:
        """Hide a plan from new assignments."""
        plan = self.repo.update(plan_id, is_active=False)
        logger.info("Plan deactivated", extra={"plan_id": plan_id, "name": plan.name})
        return PlanInfo.from_model(plan)

    def _validate(
        self,
        name: Optional[str] = None,
        slot_limit: Optional[int] = None,
        duration_days: Optional[int] = None,
        price_cents: Optional[int] = None,
        plan_type: Optional[str] = None,
    ) -> None:
        if name is not None and not name.strip():
            raise PlanValidationError("Plan name cannot be empty")
        if slot_limit is not None and slot_limit < 0:
            raise PlanValidationError("slot_limit must be >= 0", slot_limit=slot_limit)
        if duration_days is not None and duration_days < 1:
            raise PlanValidationError("duration_days must be >= 1", duration_days=duration_days)
        if price_cents is not None and price_cents < 0:
            raise PlanValidationError("price_cents must be >= 0", price_cents=price_cents)
        if plan_type is not None and plan_type not in PLAN_TYPES:
            raise PlanValidationError(
                f"plan_type must be one of {PLAN_TYPES}", plan_type=plan_type
            )
