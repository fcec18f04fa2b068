"""
Tests for TokenLifecycleManager.

Tests cover:
- Token creation and batch validation
- Binding in place and splitting multi-quantity tokens
- Conditional writes losing a race
- Release of live, expired and unbound tokens
- Bulk expiration
- Summaries and expiring-soon lookups
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from capacity_engine.capacity.errors import (
    ConcurrentModificationError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenValidationError,
)
from capacity_engine.capacity.tokens import TokenLifecycleManager
from capacity_engine.models.base import as_utc
from capacity_engine.models.token import CapacityToken


@pytest.fixture
def manager(db_session):
    return TokenLifecycleManager(db_session)


class TestCreateTokens:

    def test_creates_rows_with_default_expiration(self, manager, trainer_id, now):
        tokens = manager.create_tokens(trainer_id, quantity_each=2, count=3, admin_id="admin-1", now=now)

        assert len(tokens) == 3
        for token in tokens:
            assert token.quantity == 2
            assert token.is_active is True
            assert token.bound_consumer_id is None
            assert token.added_by_admin_id == "admin-1"
            assert as_utc(token.expires_at) == now + timedelta(days=30)

    def test_expiration_override(self, manager, trainer_id, now):
        [token] = manager.create_tokens(trainer_id, quantity_each=1, expiration_days=5, now=now)

        assert as_utc(token.expires_at) == now + timedelta(days=5)

    @pytest.mark.parametrize("kwargs", [
        {"quantity_each": 1, "count": 0},
        {"quantity_each": 1, "count": 101},
        {"quantity_each": 0},
        {"quantity_each": 1, "expiration_days": 0},
    ])
    def test_out_of_range_values_rejected(self, manager, trainer_id, now, kwargs):
        with pytest.raises(TokenValidationError):
            manager.create_tokens(trainer_id, now=now, **kwargs)

    def test_batch_of_max_size_allowed(self, manager, trainer_id, now):
        tokens = manager.create_tokens(trainer_id, quantity_each=1, count=100, now=now)

        assert len(tokens) == 100


class TestAssign:

    def test_single_quantity_token_bound_in_place(self, manager, make_tokens, make_consumer, trainer_id, now):
        [token] = make_tokens(trainer_id, quantity=1)
        consumer = make_consumer(trainer_id)

        bound = manager.assign(token, consumer.id, now)

        assert bound.id == token.id
        assert bound.bound_consumer_id == consumer.id
        assert bound.quantity == 1

    def test_multi_quantity_token_is_split(self, manager, make_tokens, make_consumer, trainer_id, now):
        [token] = make_tokens(trainer_id, quantity=3)
        consumer = make_consumer(trainer_id)

        piece = manager.assign(token, consumer.id, now)

        assert piece.id != token.id
        assert piece.quantity == 1
        assert piece.bound_consumer_id == consumer.id
        assert piece.split_from_token_id == token.id
        assert as_utc(piece.expires_at) == as_utc(token.expires_at)
        assert token.quantity == 2
        assert token.bound_consumer_id is None

    def test_stale_quantity_raises(self, db_session, manager, make_tokens, make_consumer, trainer_id, now):
        [token] = make_tokens(trainer_id, quantity=3)
        consumer = make_consumer(trainer_id)
        db_session.execute(
            update(CapacityToken)
            .where(CapacityToken.id == token.id)
            .values(quantity=2)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConcurrentModificationError):
            manager.assign(token, consumer.id, now)

    def test_token_taken_concurrently_raises(self, db_session, manager, make_tokens, make_consumer, trainer_id, now):
        [token] = make_tokens(trainer_id, quantity=1)
        consumer = make_consumer(trainer_id)
        db_session.execute(
            update(CapacityToken)
            .where(CapacityToken.id == token.id)
            .values(bound_consumer_id="someone-else")
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConcurrentModificationError):
            manager.assign(token, consumer.id, now)


class TestRelease:

    @pytest.fixture
    def bound_token(self, db_session, make_tokens, make_consumer, trainer_id, now):
        from capacity_engine.capacity.allocator import SlotAllocator

        [token] = make_tokens(trainer_id, quantity=1)
        consumer = make_consumer(trainer_id)
        SlotAllocator(db_session).allocate(trainer_id, consumer.id, now)
        db_session.refresh(token)
        return token, consumer

    def test_release_returns_token_to_pool(self, db_session, manager, bound_token, trainer_id, now):
        token, consumer = bound_token

        released = manager.release(token.id, trainer_id=trainer_id, now=now)

        assert released.bound_consumer_id is None
        assert released.is_active is True
        db_session.refresh(consumer)
        assert consumer.binding is None
        assert consumer.token_id is None

    def test_release_of_expired_token_deactivates_it(self, db_session, manager, bound_token, trainer_id):
        token, consumer = bound_token
        later = as_utc(token.expires_at) + timedelta(days=1)

        with pytest.raises(TokenExpiredError):
            manager.release(token.id, trainer_id=trainer_id, now=later)

        db_session.refresh(token)
        assert token.is_active is False
        assert token.bound_consumer_id is None
        db_session.refresh(consumer)
        assert consumer.binding is None

    def test_release_of_unbound_live_token_is_noop(self, manager, make_tokens, trainer_id, now):
        [token] = make_tokens(trainer_id, quantity=2)

        released = manager.release(token.id, trainer_id=trainer_id, now=now)

        assert released.is_active is True
        assert released.quantity == 2

    def test_release_of_unbound_expired_token_raises(self, db_session, manager, make_tokens, trainer_id, now):
        [token] = make_tokens(trainer_id, expires_at=now - timedelta(hours=1), issued_at=now - timedelta(days=10))

        with pytest.raises(TokenExpiredError):
            manager.release(token.id, trainer_id=trainer_id, now=now)

        db_session.refresh(token)
        assert token.is_active is False

    def test_release_unknown_token(self, manager, trainer_id, now):
        with pytest.raises(TokenNotFoundError):
            manager.release("missing", trainer_id=trainer_id, now=now)

    def test_release_scoped_to_trainer(self, manager, bound_token, now):
        token, _ = bound_token

        with pytest.raises(TokenNotFoundError):
            manager.release(token.id, trainer_id="other-trainer", now=now)


class TestExpireDue:

    def test_expires_only_due_tokens(self, db_session, manager, make_tokens, trainer_id, now):
        [due] = make_tokens(trainer_id, expires_at=now - timedelta(minutes=1), issued_at=now - timedelta(days=30))
        [fresh] = make_tokens(trainer_id, expires_at=now + timedelta(days=3))

        assert manager.expire_due(now) == 1

        db_session.refresh(due)
        db_session.refresh(fresh)
        assert due.is_active is False
        assert fresh.is_active is True

    def test_second_run_expires_nothing(self, manager, make_tokens, trainer_id, now):
        make_tokens(trainer_id, count=2, expires_at=now - timedelta(minutes=1), issued_at=now - timedelta(days=30))

        assert manager.expire_due(now) == 2
        assert manager.expire_due(now) == 0

    def test_expiry_unbinds_bound_token(self, db_session, manager, make_tokens, make_consumer, trainer_id, now):
        [token] = make_tokens(trainer_id, expires_at=now + timedelta(days=1))
        consumer = make_consumer(trainer_id)
        manager.assign(token, consumer.id, now)

        assert manager.expire_due(now + timedelta(days=2)) == 1

        db_session.refresh(token)
        assert token.bound_consumer_id is None
        assert token.is_active is False

    def test_restricted_to_trainer(self, manager, make_tokens, trainer_id, now):
        make_tokens(trainer_id, expires_at=now - timedelta(minutes=1), issued_at=now - timedelta(days=30))
        make_tokens("other-trainer", expires_at=now - timedelta(minutes=1), issued_at=now - timedelta(days=30))

        assert manager.expire_due(now, trainer_id=trainer_id) == 1


class TestTokenQueries:

    def test_list_tokens_groups_by_state(self, db_session, manager, make_tokens, make_consumer, trainer_id, now):
        [pool] = make_tokens(trainer_id, quantity=3)
        make_tokens(trainer_id, quantity=1, expires_at=now - timedelta(days=1), issued_at=now - timedelta(days=10))
        manager.assign(pool, make_consumer(trainer_id).id, now)

        summary = manager.list_tokens(trainer_id, now=now)

        assert summary.available_quantity == 2
        assert summary.consumed_quantity == 1
        assert summary.expired_quantity == 1
        assert summary.total_quantity == 4
        assert sorted(t["state"] for t in summary.tokens) == ["available", "consumed", "expired"]

    def test_list_tokens_can_hide_expired(self, manager, make_tokens, trainer_id, now):
        make_tokens(trainer_id, quantity=1)
        make_tokens(trainer_id, quantity=1, expires_at=now - timedelta(days=1), issued_at=now - timedelta(days=10))

        summary = manager.list_tokens(trainer_id, include_expired=False, now=now)

        assert [t["state"] for t in summary.tokens] == ["available"]
        assert summary.expired_quantity == 1

    def test_find_expiring(self, manager, make_tokens, trainer_id, now):
        [soon] = make_tokens(trainer_id, expires_at=now + timedelta(days=3))
        make_tokens(trainer_id, expires_at=now + timedelta(days=10))

        expiring = manager.find_expiring(trainer_id, within_days=7, now=now)

        assert [t.id for t in expiring] == [soon.id]
