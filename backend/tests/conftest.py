"""Shared test fixtures for all test modules."""

import contextlib
import hashlib
import hmac
import json
from datetime import UTC, datetime

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import recovery.models  # noqa: F401  registers every table on Base.metadata
from recovery.core import database as db_module
from recovery.core.config import settings
from recovery.core.database import Base, get_db
from recovery.core.retry import breakers
from recovery.models.event import EventType
from recovery.repositories.event_repository import EventRepository
from recovery.routers.webhooks import webhook_rate_limiter
from recovery.schemas.event import ProviderEvent

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

# Fixed reference instant used by time-dependent tests
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture(autouse=True)
def reset_process_state():
    """Circuit breakers and the webhook rate limiter are process-wide."""
    breakers.reset()
    webhook_rate_limiter.reset()
    yield
    breakers.reset()
    webhook_rate_limiter.reset()


@pytest.fixture
def db_session():
    """Create a database session for testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def sign():
    """Sign a webhook body the way the billing provider does."""

    def _sign(body: bytes, secret: str | None = None) -> str:
        digest = hmac.new(
            (secret or settings.WEBHOOK_SECRET).encode("utf-8"), body, hashlib.sha256
        ).hexdigest()
        return f"sha256={digest}"

    return _sign


@pytest.fixture
def webhook_body():
    """Build a provider webhook body."""

    def _body(
        event_id: str,
        event_type: str = "payment.failed",
        membership_id: str = "mem_1",
        user_id: str | None = "user_1",
        occurred_at: datetime | None = None,
        company_id: str = "biz_1",
        **data,
    ) -> bytes:
        payload = {"membership_id": membership_id, "company_id": company_id, **data}
        if user_id is not None:
            payload["user_id"] = user_id
        body = {
            "id": event_id,
            "type": event_type,
            "created_at": (occurred_at or T0).isoformat(),
            "data": payload,
        }
        return json.dumps(body).encode("utf-8")

    return _body


@pytest.fixture
def make_event(db_session, t0):
    """Store a provider event as ingestion would, without signing a body."""

    def _make(
        provider_event_id: str,
        event_type: EventType = EventType.PAYMENT_FAILED,
        membership_id: str | None = "mem_1",
        occurred_at: datetime | None = None,
        user_id: str | None = "user_1",
        amount_cents: int | None = None,
        company_id: str = "biz_1",
    ):
        return EventRepository(db_session).create_if_absent(
            ProviderEvent(
                provider_event_id=provider_event_id,
                provider_type=event_type.value,
                event_type=event_type,
                company_id=company_id,
                membership_id=membership_id,
                user_id=user_id,
                amount_cents=amount_cents,
                failure_reason="card_declined",
                occurred_at=occurred_at or t0,
            ),
            "0" * 64,
        )

    return _make
