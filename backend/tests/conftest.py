# backend/tests/conftest.py
"""
Pytest configuration for the booking core.

Every test gets its own in-memory SQLite database. Services commit, so
isolation comes from a fresh engine per test rather than an outer
transaction. Integrations are replaced by in-memory fakes.
"""

import os

# Set before any bloom_booking import so module-level settings pick them up.
os.environ.setdefault("SITE_MODE", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["CI"] = "1"

from typing import Any, Generator, List
from unittest.mock import MagicMock

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tests.factories import DEC_10_0900, HOUR, FakeGateway, FrozenClock, make_provider

from bloom_booking.api.dependencies.services import (
    get_capture_scheduler,
    get_payment_gateway,
    get_scheduling_client,
    get_sync_trigger,
)
from bloom_booking.core.config import Settings, get_settings
from bloom_booking.database import Base, get_db
from bloom_booking.integrations.scheduling_client import FakeSchedulingClient
from bloom_booking.main import app
import bloom_booking.models  # noqa: F401
from bloom_booking.models.provider import Provider


def enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        site_mode="test",
        database_url="sqlite://",
        scheduling_client_id="",
        stripe_secret_key=None,
        external_booking_enabled=False,
        onboarding_base_url="https://onboarding.example.com",
    )


@pytest.fixture
def production_settings() -> Settings:
    return Settings(site_mode="prod", database_url="sqlite://", scheduling_client_id="")


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(test_engine, "connect", enable_sqlite_foreign_keys)
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def db(engine) -> Generator[Session, None, None]:
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def clock() -> FrozenClock:
    """One hour before the 2025-12-10 09:00 UTC slot used across scenarios."""
    return FrozenClock(DEC_10_0900 - HOUR)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def scheduling_client() -> FakeSchedulingClient:
    return FakeSchedulingClient()


@pytest.fixture
def provider(db: Session) -> Provider:
    return make_provider(db)


@pytest.fixture
def sync_trigger() -> MagicMock:
    trigger = MagicMock()
    trigger.return_value = MagicMock(id="task-123")
    return trigger


@pytest.fixture
def scheduled_captures() -> List[tuple]:
    return []


@pytest.fixture
def client(
    db, settings, gateway, scheduling_client, sync_trigger, scheduled_captures
) -> Generator[TestClient, None, None]:
    """TestClient wired to the test session and fakes (lifespan not run)."""

    def override_get_db() -> Generator[Session, None, None]:
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise

    def capture_scheduler(saga_id: str, countdown: int) -> None:
        scheduled_captures.append((saga_id, countdown))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_scheduling_client] = lambda: scheduling_client
    app.dependency_overrides[get_capture_scheduler] = lambda: capture_scheduler
    app.dependency_overrides[get_sync_trigger] = lambda: sync_trigger
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
