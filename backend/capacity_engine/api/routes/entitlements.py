"""
Trainer-facing capacity routes.

Resolve capacity, and allocate, activate, deactivate or delete consumers.
CapacityError subclasses are rendered by the application exception handler.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from capacity_engine.capacity.allocator import SlotAllocator
from capacity_engine.capacity.resolver import EntitlementResolver
from capacity_engine.database.session import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/trainers", tags=["entitlements"])


# Response models

class PlanSnapshotResponse(BaseModel):
    assignment_id: str
    plan_id: str
    plan_name: str
    slot_limit: int
    starts_at: Optional[str]
    expires_at: Optional[str]


class CapacityBreakdownResponse(BaseModel):
    plan_slot_limit: int
    available_token_quantity: int
    consumed_token_quantity: int
    plan_consumed: int
    token_consumed: int


class EntitlementResponse(BaseModel):
    """Resolved capacity of a trainer."""
    trainer_id: str
    capacity: int
    consumed: int
    available: int
    active_plan: Optional[PlanSnapshotResponse]
    is_expired: bool
    breakdown: CapacityBreakdownResponse
    resolved_at: Optional[str]


class BindingResponse(BaseModel):
    source: str
    plan_assignment_id: Optional[str] = None
    token_id: Optional[str] = None
    valid_until: Optional[str]
    bound_at: Optional[str]


class AllocationResponse(BaseModel):
    """Result of an allocation."""
    trainer_id: str
    consumer_id: str
    binding: BindingResponse
    newly_bound: bool
    attempts: int


class ConsumerStatusResponse(BaseModel):
    consumer_id: str
    status: str
    binding: Optional[BindingResponse]


class ReactivationResponse(BaseModel):
    consumer_id: str
    requires_new_allocation: bool
    reason: str
    capacity_available: bool
    binding: Optional[BindingResponse]


class ConsumerDeletedResponse(BaseModel):
    consumer_id: str
    freed_source: Optional[str]
    released_token_id: Optional[str]


def get_resolver(db_session: Session = Depends(get_db_session)) -> EntitlementResolver:
    """Get entitlement resolver instance."""
    return EntitlementResolver(db_session)


def get_allocator(db_session: Session = Depends(get_db_session)) -> SlotAllocator:
    """Get slot allocator instance."""
    return SlotAllocator(db_session)


# Routes

@router.get("/{trainer_id}/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    trainer_id: str,
    resolver: EntitlementResolver = Depends(get_resolver),
):
    """Resolve the trainer's current capacity."""
    return EntitlementResponse(**resolver.resolve(trainer_id).to_dict())


@router.post(
    "/{trainer_id}/consumers/{consumer_id}/allocate",
    response_model=AllocationResponse,
)
async def allocate_slot(
    trainer_id: str,
    consumer_id: str,
    allocator: SlotAllocator = Depends(get_allocator),
):
    """
    Bind the consumer to a plan slot or token.

    Idempotent: a consumer that already holds a live slot keeps it.
    """
    result = allocator.allocate(trainer_id, consumer_id)
    allocator.db.commit()
    return AllocationResponse(**result.to_dict())


@router.post(
    "/{trainer_id}/consumers/{consumer_id}/activate",
    response_model=AllocationResponse,
)
async def activate_consumer(
    trainer_id: str,
    consumer_id: str,
    allocator: SlotAllocator = Depends(get_allocator),
):
    """Allocate a slot if needed and mark the consumer active."""
    result = allocator.activate(trainer_id, consumer_id)
    allocator.db.commit()
    return AllocationResponse(**result.to_dict())


@router.post(
    "/{trainer_id}/consumers/{consumer_id}/deactivate",
    response_model=ConsumerStatusResponse,
)
async def deactivate_consumer(
    trainer_id: str,
    consumer_id: str,
    allocator: SlotAllocator = Depends(get_allocator),
):
    """
    Mark the consumer inactive.

    The slot stays consumed until the binding lapses or the consumer is deleted.
    """
    consumer = allocator.deactivate(trainer_id, consumer_id)
    allocator.db.commit()
    binding = consumer.binding
    return ConsumerStatusResponse(
        consumer_id=consumer.id,
        status=consumer.status,
        binding=BindingResponse(**binding.to_dict()) if binding else None,
    )


@router.get(
    "/{trainer_id}/consumers/{consumer_id}/reactivation",
    response_model=ReactivationResponse,
)
async def check_reactivation(
    trainer_id: str,
    consumer_id: str,
    allocator: SlotAllocator = Depends(get_allocator),
):
    """Report whether the consumer can be reactivated on its current binding."""
    return ReactivationResponse(**allocator.can_reactivate(trainer_id, consumer_id).to_dict())


@router.delete(
    "/{trainer_id}/consumers/{consumer_id}",
    response_model=ConsumerDeletedResponse,
    status_code=status.HTTP_200_OK,
)
async def delete_consumer(
    trainer_id: str,
    consumer_id: str,
    allocator: SlotAllocator = Depends(get_allocator),
):
    """Delete the consumer and return its token (if any) to the pool."""
    outcome = allocator.delete_consumer(trainer_id, consumer_id)
    allocator.db.commit()
    logger.info("Consumer deleted", extra={"trainer_id": trainer_id, **outcome})
    return ConsumerDeletedResponse(**outcome)
