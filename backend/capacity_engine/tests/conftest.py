"""
Root test configuration and fixtures.

Provides database fixtures shared by all tests:
- db_engine / db_session: SQLite in-memory (or PostgreSQL when DATABASE_URL
  is set) with per-test rollback
- now: fixed reference time for deterministic expiration math
- make_plan / make_assignment / make_tokens / make_consumer: row factories
- temp_config_dir / make_yaml_config: YAML config files in a temp dir
"""

import os
import tempfile
import uuid
import pytest
import yaml
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from capacity_engine.config.capacity_settings import reset_capacity_settings

# Set test environment
os.environ.setdefault("ENV", "test")

FIXED_NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    return _get_test_database_url().startswith("postgresql")


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        # SQLite in-memory for fast unit tests
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    from capacity_engine.db_base import Base
    import capacity_engine.models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Code under test may commit; commits only release a SAVEPOINT inside the
    outer transaction, which is rolled back after the test.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def _reset_capacity_settings():
    """Each test starts from a freshly loaded settings singleton."""
    reset_capacity_settings()
    yield
    reset_capacity_settings()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "scenario: end-to-end capacity scenario")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def trainer_id() -> str:
    return f"trainer-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def make_plan(db_session):
    """Factory creating a catalog plan."""
    from capacity_engine.models.plan import Plan

    def _make(name=None, slot_limit=1, duration_days=30, price_cents=0, is_active=True, **kwargs) -> Plan:
        plan = Plan(
            name=name or f"plan-{uuid.uuid4().hex[:8]}",
            slot_limit=slot_limit,
            duration_days=duration_days,
            price_cents=price_cents,
            plan_type="free" if price_cents == 0 else "paid",
            is_active=is_active,
            **kwargs,
        )
        db_session.add(plan)
        db_session.flush()
        return plan
    return _make


@pytest.fixture
def make_assignment(db_session, make_plan, now):
    """Factory creating an active plan assignment for a trainer."""
    from capacity_engine.models.plan_assignment import PlanAssignment

    def _make(trainer_id, plan=None, slot_limit=None, starts_at=None, expires_at=None, is_active=True) -> PlanAssignment:
        plan = plan or make_plan(slot_limit=slot_limit if slot_limit is not None else 1)
        starts_at = starts_at or now - timedelta(days=1)
        assignment = PlanAssignment(
            trainer_id=trainer_id,
            plan_id=plan.id,
            slot_limit=slot_limit if slot_limit is not None else plan.slot_limit,
            starts_at=starts_at,
            expires_at=expires_at or starts_at + timedelta(days=plan.duration_days),
            is_active=is_active,
            allocation_version=0,
        )
        db_session.add(assignment)
        db_session.flush()
        return assignment
    return _make


@pytest.fixture
def make_tokens(db_session, now):
    """Factory creating unbound tokens for a trainer."""
    from capacity_engine.models.token import CapacityToken

    def _make(trainer_id, quantity=1, count=1, expires_at=None, issued_at=None):
        tokens = [
            CapacityToken(
                trainer_id=trainer_id,
                quantity=quantity,
                issued_at=issued_at or now - timedelta(days=1),
                expires_at=expires_at or now + timedelta(days=10),
                is_active=True,
            )
            for _ in range(count)
        ]
        db_session.add_all(tokens)
        db_session.flush()
        return tokens
    return _make


@pytest.fixture
def make_consumer(db_session):
    """Factory creating an unbound consumer."""
    from capacity_engine.models.consumer import Consumer

    def _make(trainer_id, status="inactive", display_name=None) -> Consumer:
        consumer = Consumer(
            trainer_id=trainer_id,
            display_name=display_name or f"student-{uuid.uuid4().hex[:6]}",
            status=status,
            binding_version=0,
        )
        db_session.add(consumer)
        db_session.flush()
        return consumer
    return _make


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("capacity.yml", {"allocation": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
