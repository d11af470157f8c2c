"""
Test fixtures for dealfinder backend tests.
"""
from datetime import datetime, timedelta
from typing import Dict, List

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

from dealfinder.api.deps import get_runtime
from dealfinder.config import Settings
from dealfinder.database import Base, get_db
from dealfinder.main import app
from dealfinder.runtime import build_runtime
from dealfinder.services.live_prices import PriceSearchProvider


# Create test database engine (SQLite in-memory, one shared connection)
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Enable foreign key constraints for SQLite
@event.listens_for(test_engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

FIXED_NOW = datetime(2026, 5, 1, 12, 0, 0)


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakePriceProvider(PriceSearchProvider):
    """In-memory upstream: canned itineraries per route / origin, optional errors."""

    def __init__(self):
        self.route_results: Dict[str, list] = {}
        self.origin_results: Dict[str, list] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    async def search_prices(self, origin, destination, date_range):
        key = f"{origin}-{destination}"
        self.calls.append(("route", key, date_range))
        if key in self.errors:
            raise self.errors[key]
        return list(self.route_results.get(key, []))

    async def search_from_origin(self, origin, date_range):
        self.calls.append(("origin", origin, date_range))
        if origin in self.errors:
            raise self.errors[origin]
        return list(self.origin_results.get(origin, []))


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test.
    Creates all tables before the test and drops them after.
    """
    import dealfinder.models  # noqa: F401

    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def session_factory(db_session):
    """Session factory bound to the same in-memory database as db_session."""
    return TestSessionLocal


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_provider():
    return FakePriceProvider()


@pytest.fixture
def test_settings():
    return Settings(
        requests_per_second=50,
        retry_base_delay_seconds=0.01,
        poll_interval_seconds=0.0,
        route_batch_size=5,
    )


@pytest.fixture(scope="function")
def override_get_db(db_session):
    """
    Override the get_db dependency to use the test database session.
    """
    def _override_get_db():
        try:
            yield db_session
        finally:
            pass

    return _override_get_db


@pytest.fixture(scope="function")
def runtime(session_factory, fake_provider, test_settings):
    return build_runtime(test_settings, session_factory=session_factory, provider=fake_provider)


@pytest.fixture(scope="function")
async def client(override_get_db, runtime):
    """
    Create an async test client with the database and runtime dependencies overridden.
    """
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_runtime] = lambda: runtime

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
