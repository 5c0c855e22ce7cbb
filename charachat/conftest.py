# charachat/conftest.py
import os
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from charachat.core.config import settings
from charachat.core.database import (
    create_all_tables,
    drop_all_tables,
    get_db,
    get_session_factory,
    init_engine,
)
from charachat.features.plans.service import seed_plans
from charachat.features.usage.service import seed_service_costs


@pytest.fixture(scope="session")
def db_url():
    """
    Provide the database URL for tests.

    Uses TEST_DATABASE_URL when set, otherwise a shared in-memory SQLite database.
    """
    return os.getenv("TEST_DATABASE_URL") or "sqlite://"


@pytest.fixture(scope="session", autouse=True)
def engine(db_url):
    """Bind the global engine once per test session."""
    return init_engine(db_url)


@pytest.fixture(scope="function")
def db(engine):
    """
    Fresh schema with seeded plans and service costs for each test.
    """
    drop_all_tables()
    create_all_tables()

    session = get_session_factory()()
    seed_plans(session)
    seed_service_costs(session)
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def now():
    """Fixed mid-month instant so day and month boundaries are predictable."""
    return datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client(db, monkeypatch):
    """
    TestClient bound to the test session.

    JWT verification is disabled so tests authenticate with X-User-Id.
    """
    from charachat.main import app

    monkeypatch.setattr(settings, "JWT_SECRET", None)

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
