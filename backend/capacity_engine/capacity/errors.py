"""
Structured error classes for capacity allocation.

Every error carries an HTTP status and a machine-readable code so the API
layer can render it without per-route mapping.
"""

from typing import Optional
from fastapi import status


class CapacityError(Exception):
    """Base exception for capacity engine errors."""

    error_code = "capacity_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str, **details):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class InsufficientCapacityError(CapacityError):
    """
    Raised when neither plan slots nor tokens can back a new binding.

    Carries the resolved capacity so the caller can tell the trainer what
    to do next.
    """

    error_code = "insufficient_capacity"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        trainer_id: str,
        capacity: int,
        consumed: int,
        available: int,
        is_expired: bool = False,
    ):
        self.trainer_id = trainer_id
        self.capacity = capacity
        self.consumed = consumed
        self.available = available
        self.is_expired = is_expired
        if is_expired:
            hint = "The current plan has expired. Renew the plan or add tokens to activate more consumers."
        else:
            hint = "All slots are in use. Upgrade the plan, add tokens, or deactivate a consumer."
        super().__init__(
            f"No capacity available ({consumed}/{capacity} slots in use). {hint}",
            trainer_id=trainer_id,
            capacity=capacity,
            consumed=consumed,
            available=available,
            is_expired=is_expired,
        )


class ConsumerNotFoundError(CapacityError):
    error_code = "consumer_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, consumer_id: str, trainer_id: Optional[str] = None):
        super().__init__(
            f"Consumer not found: {consumer_id}",
            consumer_id=consumer_id,
            trainer_id=trainer_id,
        )


class TokenNotFoundError(CapacityError):
    error_code = "token_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, token_id: str):
        super().__init__(f"Token not found: {token_id}", token_id=token_id)


class PlanNotFoundError(CapacityError):
    error_code = "plan_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, plan_id: str):
        super().__init__(f"Plan not found: {plan_id}", plan_id=plan_id)


class PlanAssignmentNotFoundError(CapacityError):
    error_code = "plan_assignment_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, trainer_id: str):
        super().__init__(
            f"No active plan assignment for trainer: {trainer_id}",
            trainer_id=trainer_id,
        )


class TokenExpiredError(CapacityError):
    """Raised by release when the token had already passed its expiration."""

    error_code = "token_expired"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, token_id: str):
        self.token_id = token_id
        super().__init__(
            f"Token {token_id} has expired and was deactivated",
            token_id=token_id,
        )


class ConcurrentModificationError(CapacityError):
    """A conditional write lost a race. Safe to retry."""

    error_code = "concurrent_modification"
    http_status = status.HTTP_409_CONFLICT
    retryable = True


class PlanValidationError(CapacityError):
    error_code = "plan_validation_failed"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class TokenValidationError(CapacityError):
    error_code = "token_validation_failed"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class PlanAlreadyExistsError(CapacityError):
    error_code = "plan_already_exists"
    http_status = status.HTTP_409_CONFLICT


class ResolutionFailedError(CapacityError):
    """Capacity could not be computed because the data layer failed."""

    error_code = "resolution_failed"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class PersistenceError(CapacityError):
    """A write failed for a reason other than a lost race."""

    error_code = "persistence_failed"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True
