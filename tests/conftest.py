"""
Pytest fixtures for the aid engine test suite.

Provides:
- A file-backed database engine shared by the whole run
- Per-test sessions with automatic rollback
- A tracked session factory for concurrency tests (real commits)
- Participant, request and warehouse builders

Environment Variables:
- DATABASE_URL: Database URL.  If not set, a SQLite file in a temporary
  directory is used.  In-memory SQLite is not supported: concurrency
  tests open one connection per thread.
"""

import json
import logging
import os
import threading
from io import StringIO
from typing import Generator
from uuid import UUID

import pytest
from sqlalchemy.orm import Session

from aid_kernel.db.base import Base
from aid_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from aid_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from aid_kernel.domain.clock import DeterministicClock
from aid_kernel.domain.values import ParticipantRole
from aid_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from aid_kernel.models.logistics import Warehouse
from aid_services.coordinator import MarketplaceCoordinator


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture aid_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, coordinator):
            coordinator.contribute(...)
            logs = captured_logs()
            assert any(r["message"] == "contribution_committed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("aid_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


# =============================================================================
# Session-scoped DB infrastructure (engine + tables ONCE per suite)
# =============================================================================


@pytest.fixture(scope="session")
def database_url(tmp_path_factory) -> str:
    url = os.environ.get("DATABASE_URL")
    if url:
        return url
    db_file = tmp_path_factory.mktemp("db") / "aid_engine_test.db"
    return f"sqlite:///{db_file}"


@pytest.fixture(scope="session")
def db_engine(database_url):
    """Single engine for the entire test session.

    Pool is large enough for concurrency tests.
    """
    eng = init_engine_from_url(
        database_url, echo=False,
        pool_size=20, max_overflow=20, pool_timeout=10,
        lock_timeout_ms=15000,
    )
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session, drop once at end.

    Immutability listeners are registered once and remain active.
    """
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()
    drop_tables()


def _delete_all_rows(engine):
    """DELETE every row (Core statements bypass the ORM append-only listeners).

    Used by concurrency tests that need real commits and therefore cannot
    rely on the rollback isolation pattern.
    """
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


# =============================================================================
# Per-test session with automatic rollback
# =============================================================================


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    Uses the SQLAlchemy 2.0 ``join_transaction_mode`` pattern:
    - Opens a dedicated connection with an outer transaction
    - Creates a session that *joins* the outer transaction
    - Any ``session.commit()`` inside the test releases a savepoint; it
      does NOT actually commit to the database
    - At teardown the outer transaction is rolled back, undoing ALL data
      changes made during the test
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


# =============================================================================
# Concurrency testing fixtures (real commits + DELETE cleanup)
# =============================================================================


@pytest.fixture(scope="function")
def session_factory(db_engine, db_tables):
    """Provide a tracked session factory for creating sessions in concurrent threads.

    Each thread should create its own session using this factory.
    The factory tracks all created sessions and on teardown:
    1. Blocks new session creation (late threads get RuntimeError)
    2. Force-closes all tracked sessions (returns connections to pool)
    3. Deletes all data
    """
    factory = get_session_factory()
    created_sessions = []
    lock = threading.Lock()
    closed = False

    def tracked_factory():
        nonlocal closed
        with lock:
            if closed:
                raise RuntimeError("session_factory closed (fixture teardown)")
            s = factory()
            created_sessions.append(s)
            return s

    yield tracked_factory

    with lock:
        closed = True

    for s in created_sessions:
        if s.is_active:
            s.rollback()
        s.close()

    _delete_all_rows(db_engine)


# =============================================================================
# Clock and coordinator
# =============================================================================


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


@pytest.fixture
def coordinator(session, deterministic_clock) -> MarketplaceCoordinator:
    return MarketplaceCoordinator(session, clock=deterministic_clock)


# =============================================================================
# Builders
# =============================================================================


@pytest.fixture
def make_participant(coordinator):
    """Register a participant.  Verified unless told otherwise."""
    counter = {"n": 0}

    def _make(
        role: ParticipantRole | str,
        name: str | None = None,
        phone: str | None = None,
        national_id: str | None = None,
        verified: bool = True,
    ):
        counter["n"] += 1
        return coordinator.register_participant(
            name or f"{ParticipantRole(role).value}-{counter['n']}",
            role,
            phone=phone,
            national_id=national_id,
            is_verified=verified,
        )

    return _make


@pytest.fixture
def admin(make_participant):
    return make_participant(ParticipantRole.ADMIN, phone="+1 555 000 0001")


@pytest.fixture
def recipient(make_participant):
    return make_participant(
        ParticipantRole.RECIPIENT, phone="+233 24 000 1111", national_id="GHA-000111",
    )


@pytest.fixture
def supplier(make_participant):
    return make_participant(ParticipantRole.SUPPLIER, phone="+233 20 555 0001")


@pytest.fixture
def supplier_b(make_participant):
    return make_participant(ParticipantRole.SUPPLIER, phone="+233 20 555 0002")


@pytest.fixture
def donor(make_participant):
    return make_participant(ParticipantRole.DONOR, phone="+233 20 555 0100")


@pytest.fixture
def make_request(coordinator, admin):
    """Create a request; approved (audited) unless ``approve=False``."""

    def _make(recipient, quantity_required: int = 100, approve: bool = True, **fields):
        info = coordinator.create_request(
            recipient.id,
            fields.pop("title", "Rice for family of five"),
            quantity_required=quantity_required,
            **fields,
        )
        if approve:
            info = coordinator.audit(info.id, admin.id)
        return info

    return _make


@pytest.fixture
def approved_request(make_request, recipient):
    return make_request(recipient)


@pytest.fixture
def make_warehouse(session, admin):
    def _make(capacity: int, name: str = "Central depot", region: str | None = "Accra") -> UUID:
        warehouse = Warehouse(
            name=name, region=region, capacity=capacity, created_by_id=admin.id,
        )
        session.add(warehouse)
        session.commit()
        return warehouse.id

    return _make


@pytest.fixture
def verified_donation(coordinator, donor, admin):
    """Build an untargeted goods donation and verify it."""

    def _make(quantity: int = 100, item: str = "Rice (kg)", **fields):
        info = coordinator.create_donation(donor.id, "goods", item, quantity, **fields)
        return coordinator.verify_donation(info.id, admin.id)

    return _make
