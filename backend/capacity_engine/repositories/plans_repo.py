"""
Plans Repository for the plan catalog.

Plans are global (not trainer-scoped) - they define available tiers.
Plans are never hard-deleted; existing assignments reference them.
"""

import logging
from typing import Optional, List

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from capacity_engine.capacity.errors import PlanAlreadyExistsError, PlanNotFoundError
from capacity_engine.models.plan import Plan

logger = logging.getLogger(__name__)


class PlansRepository:
    """
    Repository for Plan operations.

    Used by the plan service and by admin plan assignment.
    """

    def __init__(self, db_session: Session):
        """
        Initialize plans repository.

        Args:
            db_session: Database session
        """
        self.db = db_session

    def get_by_id(self, plan_id: str) -> Optional[Plan]:
        return self.db.query(Plan).filter(Plan.id == plan_id).first()

    def get_by_name(self, name: str) -> Optional[Plan]:
        """
        Get a plan by name.

        Args:
            name: Plan name (unique)

        Returns:
            Plan if found, None otherwise
        """
        return self.db.query(Plan).filter(Plan.name == name).first()

    def get_all(
        self,
        include_inactive: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Plan]:
        """
        Get all plans with pagination, in catalog order.

        Args:
            include_inactive: Whether to include inactive plans
            limit: Maximum number of plans to return
            offset: Number of plans to skip
        """
        query = self.db.query(Plan)

        if not include_inactive:
            query = query.filter(Plan.is_active == True)  # noqa: E712

        return (
            query.order_by(Plan.sort_order.asc(), Plan.slot_limit.asc(), Plan.name.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count(self, include_inactive: bool = False) -> int:
        query = self.db.query(Plan)

        if not include_inactive:
            query = query.filter(Plan.is_active == True)  # noqa: E712

        return query.count()

    def create(
        self,
        name: str,
        slot_limit: int,
        duration_days: int = 30,
        price_cents: int = 0,
        plan_type: str = "paid",
        description: Optional[str] = None,
        is_active: bool = True,
        sort_order: int = 0,
        plan_id: Optional[str] = None
    ) -> Plan:
        """
        Create a new plan.

        Returns:
            Created Plan object

        Raises:
            PlanAlreadyExistsError: If plan with same name or id exists
        """
        if self.get_by_name(name):
            raise PlanAlreadyExistsError(f"Plan with name '{name}' already exists", name=name)
        if plan_id and self.get_by_id(plan_id):
            raise PlanAlreadyExistsError(f"Plan with ID '{plan_id}' already exists", plan_id=plan_id)

        plan = Plan(
            name=name,
            description=description,
            slot_limit=slot_limit,
            duration_days=duration_days,
            price_cents=price_cents,
            plan_type=plan_type,
            is_active=is_active,
            sort_order=sort_order,
        )
        if plan_id:
            plan.id = plan_id

        try:
            with self.db.begin_nested():
                self.db.add(plan)
        except IntegrityError as e:
            logger.error("Failed to create plan - integrity error", extra={
                "name": name,
                "error": str(e)
            })
            raise PlanAlreadyExistsError(f"Plan creation failed: {e.orig}", name=name)

        logger.info("Plan created", extra={
            "plan_id": plan.id,
            "name": name,
            "slot_limit": slot_limit,
            "price_cents": price_cents
        })

        return plan

    def update(self, plan_id: str, **fields) -> Plan:
        """
        Update an existing plan. Fields passed as None are left unchanged.

        Raises:
            PlanNotFoundError: If plan doesn't exist
            PlanAlreadyExistsError: If new name conflicts with existing plan
        """
        plan = self.get_by_id(plan_id)
        if not plan:
            raise PlanNotFoundError(plan_id)

        name = fields.pop("name", None)
        if name and name != plan.name:
            if self.get_by_name(name):
                raise PlanAlreadyExistsError(f"Plan with name '{name}' already exists", name=name)
            plan.name = name

        updated = {}
        for key, value in fields.items():
            if value is not None and hasattr(plan, key):
                setattr(plan, key, value)
                updated[key] = value

        self.db.flush()

        logger.info("Plan updated", extra={
            "plan_id": plan_id,
            "updated_fields": {**updated, **({"name": name} if name else {})}
        })

        return plan
