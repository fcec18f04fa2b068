"""
Repository for capacity tokens.

Pool ordering is soonest expiration first so tokens closest to lapsing are
consumed before fresher ones.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func

from capacity_engine.models.token import CapacityToken
from capacity_engine.repositories.base_repo import BaseRepository


class TokensRepository(BaseRepository[CapacityToken]):
    """Tokens of one trainer."""

    def _get_model_class(self):
        return CapacityToken

    def _live(self, query, now: datetime):
        return query.filter(
            CapacityToken.is_active == True,  # noqa: E712
            CapacityToken.expires_at > now,
        )

    def list_available(self, now: datetime, limit: Optional[int] = None) -> List[CapacityToken]:
        query = (
            self._live(self._scoped_query(), now)
            .filter(CapacityToken.bound_consumer_id.is_(None))
            .order_by(CapacityToken.expires_at.asc(), CapacityToken.issued_at.asc(), CapacityToken.id.asc())
            .populate_existing()
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def first_available(self, now: datetime) -> Optional[CapacityToken]:
        tokens = self.list_available(now, limit=1)
        return tokens[0] if tokens else None

    def sum_available_quantity(self, now: datetime) -> int:
        query = self.db_session.query(func.coalesce(func.sum(CapacityToken.quantity), 0))
        query = self._live(self._enforce_trainer_scope(query), now)
        return int(query.filter(CapacityToken.bound_consumer_id.is_(None)).scalar())

    def sum_consumed_quantity(self, now: datetime) -> int:
        query = self.db_session.query(func.coalesce(func.sum(CapacityToken.quantity), 0))
        query = self._live(self._enforce_trainer_scope(query), now)
        return int(query.filter(CapacityToken.bound_consumer_id.isnot(None)).scalar())

    def list_all(self, include_inactive: bool = True) -> List[CapacityToken]:
        query = self._scoped_query()
        if not include_inactive:
            query = query.filter(CapacityToken.is_active == True)  # noqa: E712
        return query.order_by(CapacityToken.expires_at.asc(), CapacityToken.id.asc()).all()

    def list_expiring(self, now: datetime, until: datetime) -> List[CapacityToken]:
        """Live tokens whose expiration falls within (now, until]."""
        return (
            self._live(self._scoped_query(), now)
            .filter(CapacityToken.expires_at <= until)
            .order_by(CapacityToken.expires_at.asc())
            .all()
        )
