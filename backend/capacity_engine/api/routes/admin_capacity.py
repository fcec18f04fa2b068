"""
Admin capacity override routes.

Assign or revoke a trainer's plan, add tokens, release a token, and read
the expiring-soon and usage reports.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from capacity_engine.capacity.errors import TokenExpiredError
from capacity_engine.capacity.tokens import TokenLifecycleManager, token_to_dict
from capacity_engine.database.session import get_db_session
from capacity_engine.models.base import utcnow
from capacity_engine.services.admin_override_service import AdminOverrideService
from capacity_engine.services.maintenance_service import MaintenanceSweeper

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin-capacity"])


# Request/Response models

class AssignPlanRequest(BaseModel):
    """Request to assign a plan to a trainer."""
    plan_id: str = Field(..., description="Catalog plan to assign", min_length=1)
    admin_id: str = Field(..., description="Admin performing the override", min_length=1)
    duration_override_days: Optional[int] = Field(None, description="Validity in days (defaults to the plan's)", ge=1)
    reason: Optional[str] = Field(None, description="Why the plan was assigned", max_length=500)


class PlanAssignmentResponse(BaseModel):
    assignment_id: str
    trainer_id: str
    plan_id: str
    slot_limit: int
    starts_at: str
    expires_at: str
    transition_type: str
    limit_difference: int
    previous_assignment_id: Optional[str]
    carried_over_consumer_ids: List[str]
    deactivated_consumer_ids: List[str]


class RevocationResponse(BaseModel):
    assignment_id: str
    trainer_id: str
    consumers_deactivated: int
    deactivated_consumer_ids: List[str]


class AddTokensRequest(BaseModel):
    """Request to add tokens to a trainer."""
    quantity: int = Field(..., description="Slots per token", ge=1)
    count: int = Field(1, description="Number of token rows to create", ge=1)
    admin_id: str = Field(..., description="Admin performing the override", min_length=1)
    expiration_days_override: Optional[int] = Field(None, description="Validity in days", ge=1)
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() or None if v is not None else None


class TokenResponse(BaseModel):
    id: str
    quantity: int
    state: str
    issued_at: str
    expires_at: str
    is_active: bool
    bound_consumer_id: Optional[str]
    split_from_token_id: Optional[str]


class TokensCreatedResponse(BaseModel):
    trainer_id: str
    tokens: List[TokenResponse]


class TokenSummaryResponse(BaseModel):
    trainer_id: str
    total_quantity: int
    available_quantity: int
    consumed_quantity: int
    expired_quantity: int
    tokens: List[TokenResponse]


def get_admin_service(db_session: Session = Depends(get_db_session)) -> AdminOverrideService:
    """Get admin override service instance."""
    return AdminOverrideService(db_session)


def get_token_manager(db_session: Session = Depends(get_db_session)) -> TokenLifecycleManager:
    return TokenLifecycleManager(db_session)


def get_sweeper(db_session: Session = Depends(get_db_session)) -> MaintenanceSweeper:
    return MaintenanceSweeper(db_session)


# Routes

@router.post("/trainers/{trainer_id}/plan", response_model=PlanAssignmentResponse)
async def assign_plan(
    trainer_id: str,
    body: AssignPlanRequest,
    service: AdminOverrideService = Depends(get_admin_service),
):
    """Assign a plan, superseding the trainer's current one."""
    logger.info("Admin assigning plan", extra={
        "trainer_id": trainer_id,
        "plan_id": body.plan_id,
        "admin_id": body.admin_id,
    })
    result = service.assign_plan(
        trainer_id=trainer_id,
        plan_id=body.plan_id,
        admin_id=body.admin_id,
        duration_override_days=body.duration_override_days,
        reason=body.reason,
    )
    service.db.commit()
    return PlanAssignmentResponse(**result.to_dict())


@router.delete("/trainers/{trainer_id}/plan", response_model=RevocationResponse)
async def revoke_plan(
    trainer_id: str,
    admin_id: str = Query(..., min_length=1, description="Admin performing the revocation"),
    reason: Optional[str] = Query(None, max_length=500),
    service: AdminOverrideService = Depends(get_admin_service),
):
    """Revoke the active plan and deactivate the consumers it backed."""
    result = service.revoke_plan(trainer_id=trainer_id, admin_id=admin_id, reason=reason)
    service.db.commit()
    return RevocationResponse(**result.to_dict())


@router.post("/trainers/{trainer_id}/tokens", response_model=TokensCreatedResponse, status_code=201)
async def add_tokens(
    trainer_id: str,
    body: AddTokensRequest,
    service: AdminOverrideService = Depends(get_admin_service),
):
    """Add tokens to a trainer."""
    tokens = service.add_tokens(
        trainer_id=trainer_id,
        quantity=body.quantity,
        admin_id=body.admin_id,
        expiration_days_override=body.expiration_days_override,
        reason=body.reason,
        count=body.count,
    )
    service.db.commit()
    now = utcnow()
    return TokensCreatedResponse(
        trainer_id=trainer_id,
        tokens=[TokenResponse(**token_to_dict(t, now)) for t in tokens],
    )


@router.get("/trainers/{trainer_id}/tokens", response_model=TokenSummaryResponse)
async def list_tokens(
    trainer_id: str,
    include_expired: bool = Query(True, description="Include expired tokens in the listing"),
    manager: TokenLifecycleManager = Depends(get_token_manager),
):
    """List a trainer's tokens with quantities by state."""
    return TokenSummaryResponse(**manager.list_tokens(trainer_id, include_expired=include_expired).to_dict())


@router.post("/trainers/{trainer_id}/tokens/{token_id}/release", response_model=TokenResponse)
async def release_token(
    trainer_id: str,
    token_id: str,
    manager: TokenLifecycleManager = Depends(get_token_manager),
):
    """
    Return a bound token to the pool.

    An expired token is deactivated and the call fails with token_expired;
    the deactivation is still committed.
    """
    try:
        token = manager.release(token_id, trainer_id=trainer_id)
    except TokenExpiredError:
        manager.db.commit()
        raise
    manager.db.commit()
    return TokenResponse(**token_to_dict(token, utcnow()))


@router.get("/capacity/expiring")
async def expiring_soon(
    days: Optional[int] = Query(None, ge=1, le=365, description="Window in days"),
    sweeper: MaintenanceSweeper = Depends(get_sweeper),
):
    """Plans and tokens expiring within the window."""
    return sweeper.find_expiring_soon(days=days)


@router.get("/capacity/usage")
async def usage_report(
    sweeper: MaintenanceSweeper = Depends(get_sweeper),
):
    """Engine-wide usage counts."""
    return sweeper.usage_report()
