"""
Tests for the plan catalog (PlanService, PlansRepository, seed script).

Tests cover:
- Plan creation, validation and duplicate names
- Listing in catalog order with inactive filtering
- Updates that leave existing assignments untouched
- Soft deactivation
- Initial catalog seeding
"""

import pytest

from capacity_engine.capacity.errors import (
    PlanAlreadyExistsError,
    PlanNotFoundError,
    PlanValidationError,
)
from capacity_engine.services.plan_service import PlanService
from scripts.seed_plans import INITIAL_PLANS, seed_plans


@pytest.fixture
def plan_service(db_session):
    return PlanService(db_session)


class TestPlanCreation:

    def test_create_plan(self, plan_service):
        plan = plan_service.create_plan(name="Pro", slot_limit=10, price_cents=4990)

        assert plan.id
        assert plan.name == "Pro"
        assert plan.slot_limit == 10
        assert plan.duration_days == 30
        assert plan.plan_type == "paid"
        assert plan.is_active is True

    def test_zero_price_defaults_to_free_type(self, plan_service):
        plan = plan_service.create_plan(name="Free", slot_limit=1, duration_days=7)

        assert plan.plan_type == "free"

    def test_duplicate_name_rejected(self, plan_service):
        plan_service.create_plan(name="Pro", slot_limit=10)

        with pytest.raises(PlanAlreadyExistsError):
            plan_service.create_plan(name="Pro", slot_limit=20)

    @pytest.mark.parametrize("kwargs", [
        {"slot_limit": -1},
        {"slot_limit": 1, "duration_days": 0},
        {"slot_limit": 1, "price_cents": -100},
        {"slot_limit": 1, "plan_type": "premium"},
    ])
    def test_invalid_values_rejected(self, plan_service, kwargs):
        with pytest.raises(PlanValidationError):
            plan_service.create_plan(name="Broken", **kwargs)

    def test_blank_name_rejected(self, plan_service):
        with pytest.raises(PlanValidationError):
            plan_service.create_plan(name="   ", slot_limit=1)


class TestPlanListing:

    def test_list_orders_by_sort_order_and_hides_inactive(self, plan_service):
        plan_service.create_plan(name="Elite", slot_limit=20, sort_order=3)
        plan_service.create_plan(name="Start", slot_limit=5, sort_order=1)
        hidden = plan_service.create_plan(name="Legacy", slot_limit=3, sort_order=2)
        plan_service.deactivate_plan(hidden.id)

        plans, total = plan_service.list_plans()

        assert [p.name for p in plans] == ["Start", "Elite"]
        assert total == 2

    def test_list_includes_inactive_on_request(self, plan_service):
        plan_service.create_plan(name="Start", slot_limit=5)
        hidden = plan_service.create_plan(name="Legacy", slot_limit=3)
        plan_service.deactivate_plan(hidden.id)

        plans, total = plan_service.list_plans(include_inactive=True)

        assert total == 2
        assert {p.name for p in plans} == {"Start", "Legacy"}

    def test_get_unknown_plan(self, plan_service):
        with pytest.raises(PlanNotFoundError):
            plan_service.get_plan("missing")


class TestPlanUpdates:

    def test_update_changes_only_given_fields(self, plan_service):
        plan = plan_service.create_plan(name="Pro", slot_limit=10, price_cents=4990)

        updated = plan_service.update_plan(plan.id, slot_limit=12)

        assert updated.slot_limit == 12
        assert updated.price_cents == 4990
        assert updated.name == "Pro"

    def test_update_does_not_touch_existing_assignment(self, plan_service, make_plan, make_assignment, trainer_id):
        plan = make_plan(name="Pro", slot_limit=10)
        assignment = make_assignment(trainer_id, plan=plan)

        plan_service.update_plan(plan.id, slot_limit=2)

        assert assignment.slot_limit == 10

    def test_rename_to_taken_name_rejected(self, plan_service):
        plan_service.create_plan(name="Pro", slot_limit=10)
        other = plan_service.create_plan(name="Elite", slot_limit=20)

        with pytest.raises(PlanAlreadyExistsError):
            plan_service.update_plan(other.id, name="Pro")

    def test_update_unknown_plan(self, plan_service):
        with pytest.raises(PlanNotFoundError):
            plan_service.update_plan("missing", slot_limit=3)

    def test_deactivate_keeps_row(self, plan_service):
        plan = plan_service.create_plan(name="Start", slot_limit=5)

        plan_service.deactivate_plan(plan.id)

        assert plan_service.get_plan(plan.id).is_active is False


class TestSeedPlans:

    def test_seed_creates_initial_catalog(self, db_session, plan_service):
        created = seed_plans(db_session)

        assert created == [p["name"] for p in INITIAL_PLANS]
        plans, _ = plan_service.list_plans()
        limits = {p.name: p.slot_limit for p in plans}
        assert limits == {"Free": 1, "Start": 5, "Pro": 10, "Elite": 20, "Master": 50}

    def test_free_plan_lasts_seven_days(self, db_session, plan_service):
        seed_plans(db_session)

        free = next(p for p in plan_service.list_plans()[0] if p.name == "Free")
        assert free.duration_days == 7
        assert free.plan_type == "free"

    def test_seed_is_idempotent(self, db_session):
        seed_plans(db_session)

        assert seed_plans(db_session) == []

    def test_dry_run_writes_nothing(self, db_session, plan_service):
        would_create = seed_plans(db_session, dry_run=True)

        assert len(would_create) == len(INITIAL_PLANS)
        assert plan_service.list_plans()[1] == 0
