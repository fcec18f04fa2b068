"""
Repository for consumers and their binding descriptors.

Capacity consumption is always derived from these rows, never from a
stored counter.
"""

from datetime import datetime
from typing import List, Optional

from capacity_engine.capacity.models import BindingSource, ConsumerStatus
from capacity_engine.models.consumer import Consumer
from capacity_engine.models.token import CapacityToken
from capacity_engine.repositories.base_repo import BaseRepository


class ConsumersRepository(BaseRepository[Consumer]):
    """Consumers of one trainer."""

    def _get_model_class(self):
        return Consumer

    def get_fresh(self, consumer_id: str) -> Optional[Consumer]:
        """Load the consumer, overwriting any stale state in the identity map."""
        return (
            self._scoped_query()
            .filter(Consumer.id == consumer_id)
            .populate_existing()
            .first()
        )

    def _plan_bound(self, plan_assignment_id: str):
        return self._scoped_query().filter(
            Consumer.binding_source == BindingSource.PLAN.value,
            Consumer.plan_assignment_id == plan_assignment_id,
        )

    def count_plan_bound(self, plan_assignment_id: str, now: datetime) -> int:
        """Live plan bindings against one assignment."""
        return (
            self._plan_bound(plan_assignment_id)
            .filter(Consumer.valid_until > now)
            .count()
        )

    def list_plan_bound(self, plan_assignment_id: str, live_at: Optional[datetime] = None) -> List[Consumer]:
        """Consumers bound to an assignment, oldest binding first."""
        query = self._plan_bound(plan_assignment_id)
        if live_at is not None:
            query = query.filter(Consumer.valid_until > live_at)
        return (
            query.order_by(Consumer.bound_at.asc(), Consumer.id.asc())
            .populate_existing()
            .all()
        )

    def count_token_bound(self, now: datetime) -> int:
        """Live token bindings: descriptor and token agree, both unexpired."""
        return (
            self._scoped_query()
            .join(CapacityToken, CapacityToken.id == Consumer.token_id)
            .filter(
                Consumer.binding_source == BindingSource.TOKEN.value,
                Consumer.valid_until > now,
                CapacityToken.bound_consumer_id == Consumer.id,
                CapacityToken.is_active == True,  # noqa: E712
                CapacityToken.expires_at > now,
            )
            .count()
        )

    def list_lapsed_active(self, now: datetime) -> List[Consumer]:
        """Active consumers whose binding has passed valid_until."""
        return (
            self._scoped_query()
            .filter(
                Consumer.status == ConsumerStatus.ACTIVE.value,
                Consumer.valid_until.isnot(None),
                Consumer.valid_until <= now,
            )
            .order_by(Consumer.id.asc())
            .all()
        )
