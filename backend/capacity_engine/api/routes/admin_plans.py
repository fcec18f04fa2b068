"""
Admin Plans API routes for catalog management.

Plans are never deleted: DELETE deactivates a plan so it can no longer be
assigned, while existing assignments keep working.
"""

import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from capacity_engine.database.session import get_db_session
from capacity_engine.services.plan_service import PlanInfo, PlanService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/plans", tags=["admin-plans"])


# Request/Response models

class CreatePlanRequest(BaseModel):
    """Request to create a new plan."""
    name: str = Field(..., description="Unique plan name (e.g., 'Pro')", min_length=1, max_length=100)
    description: Optional[str] = Field(None, description="Plan description", max_length=2000)
    slot_limit: int = Field(..., description="Consumer slots granted", ge=0)
    duration_days: int = Field(30, description="Default validity in days", ge=1)
    price_cents: int = Field(0, description="Price in cents", ge=0)
    plan_type: Optional[str] = Field(None, description="'free' or 'paid' (derived from price if omitted)")
    is_active: bool = Field(True, description="Whether plan can be assigned")
    sort_order: int = Field(0, description="Display order")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Name cannot be blank")
        return v.strip()


class UpdatePlanRequest(BaseModel):
    """Request to update a plan."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    slot_limit: Optional[int] = Field(None, ge=0)
    duration_days: Optional[int] = Field(None, ge=1)
    price_cents: Optional[int] = Field(None, ge=0)
    plan_type: Optional[str] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class PlanResponse(BaseModel):
    """Full plan information."""
    id: str
    name: str
    description: Optional[str]
    slot_limit: int
    price_cents: int
    duration_days: int
    plan_type: str
    is_active: bool
    sort_order: int
    created_at: Optional[str]
    updated_at: Optional[str]


class PlansListResponse(BaseModel):
    """List of plans with pagination."""
    plans: List[PlanResponse]
    total: int
    limit: int
    offset: int


def get_plan_service(db_session: Session = Depends(get_db_session)) -> PlanService:
    """Get plan service instance."""
    return PlanService(db_session)


def _to_response(plan: PlanInfo) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        description=plan.description,
        slot_limit=plan.slot_limit,
        price_cents=plan.price_cents,
        duration_days=plan.duration_days,
        plan_type=plan.plan_type,
        is_active=plan.is_active,
        sort_order=plan.sort_order,
        created_at=plan.created_at.isoformat() if plan.created_at else None,
        updated_at=plan.updated_at.isoformat() if plan.updated_at else None,
    )


# Routes

@router.get("", response_model=PlansListResponse)
async def list_plans(
    include_inactive: bool = Query(False, description="Include inactive plans"),
    limit: int = Query(100, ge=1, le=500, description="Maximum plans to return"),
    offset: int = Query(0, ge=0, description="Number of plans to skip"),
    plan_service: PlanService = Depends(get_plan_service)
):
    """List the catalog."""
    plans, total = plan_service.list_plans(
        include_inactive=include_inactive,
        limit=limit,
        offset=offset
    )
    return PlansListResponse(
        plans=[_to_response(p) for p in plans],
        total=total,
        limit=limit,
        offset=offset
    )


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(
    plan_id: str,
    plan_service: PlanService = Depends(get_plan_service)
):
    return _to_response(plan_service.get_plan(plan_id))


@router.post("", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    body: CreatePlanRequest,
    plan_service: PlanService = Depends(get_plan_service)
):
    """Create a catalog plan."""
    plan = plan_service.create_plan(**body.model_dump())
    plan_service.db.commit()
    logger.info("Admin created plan", extra={"plan_id": plan.id, "name": plan.name})
    return _to_response(plan)


@router.patch("/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: str,
    body: UpdatePlanRequest,
    plan_service: PlanService = Depends(get_plan_service)
):
    """Update a plan. Existing assignments keep their slot limit."""
    plan = plan_service.update_plan(plan_id, **body.model_dump())
    plan_service.db.commit()
    return _to_response(plan)


@router.delete("/{plan_id}", response_model=PlanResponse)
async def deactivate_plan(
    plan_id: str,
    plan_service: PlanService = Depends(get_plan_service)
):
    """Deactivate a plan."""
    plan = plan_service.deactivate_plan(plan_id)
    plan_service.db.commit()
    return _to_response(plan)
