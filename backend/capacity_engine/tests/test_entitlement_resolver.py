"""
Tests for EntitlementResolver.

Tests cover:
- Trainers with no plan, a current plan, an expired plan
- Token pools (available and consumed)
- capacity == consumed + available
- Inactive consumers still holding their slots
- Data-layer failures
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from capacity_engine.capacity.allocator import SlotAllocator
from capacity_engine.capacity.errors import ResolutionFailedError
from capacity_engine.capacity.resolver import EntitlementResolver


@pytest.fixture
def resolver(db_session):
    return EntitlementResolver(db_session)


@pytest.fixture
def allocator(db_session):
    return SlotAllocator(db_session)


def assert_conserved(snapshot):
    assert snapshot.capacity == snapshot.consumed + snapshot.available


class TestResolveWithoutGrants:

    def test_no_plan_no_tokens(self, resolver, trainer_id, now):
        snapshot = resolver.resolve(trainer_id, now)

        assert snapshot.capacity == 0
        assert snapshot.consumed == 0
        assert snapshot.available == 0
        assert snapshot.active_plan is None
        assert snapshot.is_expired is False

    def test_cannot_allocate_without_grants(self, resolver, trainer_id, now):
        assert resolver.can_allocate(trainer_id, now=now) is False


class TestResolveWithPlan:

    def test_free_plan_grants_one_slot(self, resolver, make_plan, make_assignment, trainer_id, now):
        plan = make_plan(name="Free", slot_limit=1, duration_days=7)
        assignment = make_assignment(trainer_id, plan=plan)

        snapshot = resolver.resolve(trainer_id, now)

        assert snapshot.capacity == 1
        assert snapshot.available == 1
        assert snapshot.active_plan.assignment_id == assignment.id
        assert snapshot.active_plan.plan_name == "Free"
        assert snapshot.plan_slot_limit == 1

    def test_slot_limit_comes_from_assignment(self, resolver, make_plan, make_assignment, trainer_id, now):
        plan = make_plan(slot_limit=5)
        make_assignment(trainer_id, plan=plan, slot_limit=10)

        assert resolver.resolve(trainer_id, now).capacity == 10

    def test_expired_plan_reported_without_slots(self, resolver, make_assignment, trainer_id, now):
        make_assignment(
            trainer_id,
            slot_limit=5,
            starts_at=now - timedelta(days=31),
            expires_at=now - timedelta(hours=1),
        )

        snapshot = resolver.resolve(trainer_id, now)

        assert snapshot.is_expired is True
        assert snapshot.active_plan is not None
        assert snapshot.capacity == 0
        assert snapshot.available == 0

    def test_plan_consumption_counts_bindings(self, resolver, allocator, make_assignment, make_consumer, trainer_id, now):
        make_assignment(trainer_id, slot_limit=3)
        for _ in range(2):
            allocator.allocate(trainer_id, make_consumer(trainer_id).id, now)

        snapshot = resolver.resolve(trainer_id, now)

        assert snapshot.consumed == 2
        assert snapshot.available == 1
        assert snapshot.plan_consumed == 2
        assert_conserved(snapshot)

    def test_other_trainers_do_not_leak(self, resolver, make_assignment, trainer_id, now):
        make_assignment("other-trainer", slot_limit=50)

        assert resolver.resolve(trainer_id, now).capacity == 0


class TestResolveWithTokens:

    def test_available_tokens_add_capacity(self, resolver, make_tokens, trainer_id, now):
        make_tokens(trainer_id, quantity=3)
        make_tokens(trainer_id, quantity=1, count=2)

        snapshot = resolver.resolve(trainer_id, now)

        assert snapshot.capacity == 5
        assert snapshot.available_token_quantity == 5
        assert snapshot.consumed == 0

    def test_expired_tokens_ignored(self, resolver, make_tokens, trainer_id, now):
        make_tokens(trainer_id, expires_at=now - timedelta(minutes=1), issued_at=now - timedelta(days=30))

        assert resolver.resolve(trainer_id, now).capacity == 0

    def test_token_binding_keeps_capacity_constant(self, resolver, allocator, make_tokens, make_consumer, trainer_id, now):
        make_tokens(trainer_id, quantity=3)
        before = resolver.resolve(trainer_id, now)

        allocator.allocate(trainer_id, make_consumer(trainer_id).id, now)
        after = resolver.resolve(trainer_id, now)

        assert after.capacity == before.capacity == 3
        assert after.consumed == 1
        assert after.consumed_token_quantity == 1
        assert after.available_token_quantity == 2
        assert_conserved(after)

    def test_plan_and_tokens_combine(self, resolver, allocator, make_assignment, make_tokens, make_consumer, trainer_id, now):
        make_assignment(trainer_id, slot_limit=1)
        make_tokens(trainer_id, quantity=2)
        for _ in range(2):
            allocator.allocate(trainer_id, make_consumer(trainer_id).id, now)

        snapshot = resolver.resolve(trainer_id, now)

        assert snapshot.capacity == 3
        assert snapshot.plan_consumed == 1
        assert snapshot.token_consumed == 1
        assert snapshot.available == 1
        assert_conserved(snapshot)


class TestResolveConsumerStatus:

    def test_inactive_consumer_still_consumes(self, resolver, allocator, make_assignment, make_consumer, trainer_id, now):
        make_assignment(trainer_id, slot_limit=2)
        consumer = make_consumer(trainer_id)
        allocator.activate(trainer_id, consumer.id, now)
        allocator.deactivate(trainer_id, consumer.id, now)

        snapshot = resolver.resolve(trainer_id, now)

        assert snapshot.consumed == 1
        assert snapshot.available == 1

    def test_deleted_consumer_frees_slot(self, resolver, allocator, make_assignment, make_consumer, trainer_id, now):
        make_assignment(trainer_id, slot_limit=1)
        consumer = make_consumer(trainer_id)
        allocator.allocate(trainer_id, consumer.id, now)

        allocator.delete_consumer(trainer_id, consumer.id, now)

        assert resolver.resolve(trainer_id, now).available == 1


class TestResolveFailures:

    def test_database_error_raises_resolution_failed(self, trainer_id, now):
        session = MagicMock()
        session.query.side_effect = OperationalError("SELECT", {}, Exception("connection lost"))

        with pytest.raises(ResolutionFailedError) as exc_info:
            EntitlementResolver(session).resolve(trainer_id, now)

        assert exc_info.value.retryable is True
        assert exc_info.value.details["trainer_id"] == trainer_id

    def test_snapshot_serializes(self, resolver, make_assignment, trainer_id, now):
        make_assignment(trainer_id, slot_limit=2)

        payload = resolver.resolve(trainer_id, now).to_dict()

        assert payload["capacity"] == 2
        assert payload["breakdown"]["plan_slot_limit"] == 2
        assert payload["active_plan"]["slot_limit"] == 2
