"""
Token lifecycle: creation, binding (with split), release and expiration.

Binding and splitting use conditional UPDATEs that only apply if the token
row still looks the way it was read. A write that affects no rows means a
concurrent allocator got there first and raises ConcurrentModificationError
so the caller can retry.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from capacity_engine.capacity.errors import (
    ConcurrentModificationError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenValidationError,
)
from capacity_engine.capacity.models import BindingSource, TokenStatusSummary
from capacity_engine.config.capacity_settings import (
    CapacitySettingsLoader,
    get_capacity_settings,
)
from capacity_engine.models.base import as_utc, utcnow
from capacity_engine.models.consumer import Consumer
from capacity_engine.models.token import CapacityToken
from capacity_engine.repositories.tokens_repo import TokensRepository

logger = logging.getLogger(__name__)


def token_to_dict(token: CapacityToken, now: datetime) -> dict:
    if token.is_consumed and token.is_active and not token.is_expired_at(now):
        state = "consumed"
    elif token.is_available_at(now):
        state = "available"
    else:
        state = "expired"
    return {
        "id": token.id,
        "quantity": token.quantity,
        "state": state,
        "issued_at": as_utc(token.issued_at).isoformat(),
        "expires_at": as_utc(token.expires_at).isoformat(),
        "is_active": bool(token.is_active),
        "bound_consumer_id": token.bound_consumer_id,
        "split_from_token_id": token.split_from_token_id,
    }


class TokenLifecycleManager:
    """Creates, binds, releases and expires capacity tokens."""

    def __init__(self, db_session: Session, settings: Optional[CapacitySettingsLoader] = None):
        self.db = db_session
        self.settings = settings or get_capacity_settings()

    def create_tokens(
        self,
        trainer_id: str,
        quantity_each: int,
        count: int = 1,
        expiration_days: Optional[int] = None,
        admin_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[CapacityToken]:
        """
        Create `count` token rows of `quantity_each` slots sharing one expiration.

        Raises:
            TokenValidationError: If count, quantity or validity is out of range
        """
        now = now or utcnow()
        max_batch = self.settings.get_max_token_batch()
        if expiration_days is None:
            expiration_days = self.settings.get_default_token_expiration_days()

        if not trainer_id:
            raise TokenValidationError("trainer_id is required")
        if count < 1 or count > max_batch:
            raise TokenValidationError(
                f"count must be between 1 and {max_batch}", count=count
            )
        if quantity_each < 1:
            raise TokenValidationError(
                "quantity must be at least 1", quantity=quantity_each
            )
        if expiration_days < 1:
            raise TokenValidationError(
                "expiration_days must be at least 1", expiration_days=expiration_days
            )

        expires_at = now + timedelta(days=expiration_days)
        tokens = [
            CapacityToken(
                trainer_id=trainer_id,
                quantity=quantity_each,
                issued_at=now,
                expires_at=expires_at,
                is_active=True,
                added_by_admin_id=admin_id,
                reason=reason,
            )
            for _ in range(count)
        ]
        self.db.add_all(tokens)
        self.db.flush()

        logger.info("Tokens created", extra={
            "trainer_id": trainer_id,
            "count": count,
            "quantity_each": quantity_each,
            "expires_at": expires_at.isoformat(),
            "admin_id": admin_id,
        })
        return tokens

    def assign(self, token: CapacityToken, consumer_id: str, now: datetime) -> CapacityToken:
        """
        Bind one slot of `token` to a consumer and return the bound row.

        A quantity-1 token is bound in place. A larger token is decremented
        and a quantity-1 row with the same expiration is carved off and bound.

        Raises:
            ConcurrentModificationError: If the token changed since it was read
        """
        seen_quantity = token.quantity
        guard = (
            CapacityToken.id == token.id,
            CapacityToken.trainer_id == token.trainer_id,
            CapacityToken.bound_consumer_id.is_(None),
            CapacityToken.is_active == True,  # noqa: E712
            CapacityToken.expires_at > now,
            CapacityToken.quantity == seen_quantity,
        )

        if seen_quantity == 1:
            stmt = (
                update(CapacityToken)
                .where(*guard)
                .values(bound_consumer_id=consumer_id, bound_at=now)
                .execution_options(synchronize_session=False)
            )
            result = self.db.execute(stmt)
            if result.rowcount != 1:
                raise ConcurrentModificationError(
                    f"Token {token.id} was taken by another allocation",
                    token_id=token.id,
                )
            self.db.refresh(token)
            return token

        stmt = (
            update(CapacityToken)
            .where(*guard)
            .values(quantity=seen_quantity - 1)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"Token {token.id} was modified by another allocation",
                token_id=token.id,
            )

        piece = CapacityToken(
            trainer_id=token.trainer_id,
            quantity=1,
            issued_at=token.issued_at,
            expires_at=token.expires_at,
            is_active=True,
            bound_consumer_id=consumer_id,
            bound_at=now,
            added_by_admin_id=token.added_by_admin_id,
            reason=token.reason,
            split_from_token_id=token.id,
        )
        self.db.add(piece)
        self.db.flush()
        self.db.refresh(token)

        logger.info("Token split", extra={
            "trainer_id": token.trainer_id,
            "source_token_id": token.id,
            "bound_token_id": piece.id,
            "remaining_quantity": seen_quantity - 1,
        })
        return piece

    def release(
        self,
        token_id: str,
        trainer_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CapacityToken:
        """
        Return a bound token to the pool.

        The consumer descriptor pointing at the token is cleared too. A token
        past its expiration is deactivated instead, and TokenExpiredError is
        raised after the change is flushed. Releasing an unbound live token
        is a no-op.

        Raises:
            TokenNotFoundError: If the token doesn't exist for the trainer
            TokenExpiredError: If the token had already expired
        """
        now = now or utcnow()
        query = self.db.query(CapacityToken).filter(CapacityToken.id == token_id)
        if trainer_id:
            query = query.filter(CapacityToken.trainer_id == trainer_id)
        token = query.populate_existing().first()
        if token is None:
            raise TokenNotFoundError(token_id)

        expired = not token.is_active or token.is_expired_at(now)
        consumer_id = token.bound_consumer_id

        if consumer_id is None and not expired:
            return token

        token.bound_consumer_id = None
        token.bound_at = None
        if expired:
            token.is_active = False
        if consumer_id:
            self._clear_consumer_descriptor(token, consumer_id)
        self.db.flush()

        if expired:
            logger.warning("Released token had expired; deactivated", extra={
                "trainer_id": token.trainer_id,
                "token_id": token.id,
                "consumer_id": consumer_id,
            })
            raise TokenExpiredError(token.id)

        logger.info("Token released", extra={
            "trainer_id": token.trainer_id,
            "token_id": token.id,
            "consumer_id": consumer_id,
        })
        return token

    def _clear_consumer_descriptor(self, token: CapacityToken, consumer_id: str) -> None:
        consumer = (
            self.db.query(Consumer)
            .filter(
                Consumer.id == consumer_id,
                Consumer.trainer_id == token.trainer_id,
            )
            .populate_existing()
            .first()
        )
        if (
            consumer is not None
            and consumer.binding_source == BindingSource.TOKEN.value
            and consumer.token_id == token.id
        ):
            consumer.clear_binding()

    def expire_due(self, now: Optional[datetime] = None, trainer_id: Optional[str] = None) -> int:
        """
        Deactivate and unbind every active token with expires_at <= now.

        Consumer descriptors are left for the sweeper, which deactivates the
        consumers but keeps their binding history.

        Returns:
            Number of token rows expired
        """
        now = now or utcnow()
        self.db.flush()

        stmt = update(CapacityToken).where(
            CapacityToken.is_active == True,  # noqa: E712
            CapacityToken.expires_at <= now,
        )
        if trainer_id:
            stmt = stmt.where(CapacityToken.trainer_id == trainer_id)
        stmt = stmt.values(
            is_active=False,
            bound_consumer_id=None,
            bound_at=None,
        ).execution_options(synchronize_session=False)

        result = self.db.execute(stmt)
        expired = result.rowcount or 0
        self.db.expire_all()

        if expired:
            logger.info("Tokens expired", extra={
                "trainer_id": trainer_id,
                "tokens_expired": expired,
            })
        return expired

    def list_tokens(
        self,
        trainer_id: str,
        include_expired: bool = True,
        now: Optional[datetime] = None,
    ) -> TokenStatusSummary:
        """Summarize a trainer's tokens by state (available, consumed, expired)."""
        now = now or utcnow()
        summary = TokenStatusSummary(trainer_id=trainer_id)

        for token in TokensRepository(self.db, trainer_id).list_all():
            entry = token_to_dict(token, now)
            if entry["state"] == "available":
                summary.available_quantity += token.quantity
            elif entry["state"] == "consumed":
                summary.consumed_quantity += token.quantity
            else:
                summary.expired_quantity += token.quantity
                if not include_expired:
                    continue
            summary.tokens.append(entry)

        return summary

    def find_expiring(
        self,
        trainer_id: str,
        within_days: int,
        now: Optional[datetime] = None,
    ) -> List[CapacityToken]:
        """Live tokens expiring within the next `within_days` days."""
        now = now or utcnow()
        return TokensRepository(self.db, trainer_id).list_expiring(
            now, now + timedelta(days=within_days)
        )
