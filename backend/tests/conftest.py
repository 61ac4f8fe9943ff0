"""
Test configuration and shared fixtures for the calendar sync test suite.

Uses an in-memory SQLite database per test. External calendar providers are
replaced with an in-memory fake so no test talks to the network.
"""

import os

# Must be set before any application module reads configuration
os.environ.setdefault("ENCRYPTION_KEY", "YyD8O45QlfRZUXT9kzjW3xEf6iNqz5EtF_OB8WEOBqw=")
os.environ.setdefault("CALENDAR_API_KEYS", "test-api-key")

import pytest
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from core.database import Database
from services.calendar_providers import ProviderRegistry
from services.connection_service import ConnectionService
from calendar_fakes import FakeCalendarProvider

TEST_API_KEY = "test-api-key"


@pytest.fixture
def database() -> Generator[Database, None, None]:
    """Fresh in-memory database with every table created."""
    db = Database("sqlite://")
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture
def db_session(database: Database) -> Generator[Session, None, None]:
    session = database.new_session()
    yield session
    session.close()


@pytest.fixture
def fake_provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def providers(fake_provider: FakeCalendarProvider) -> ProviderRegistry:
    """Registry serving the fake provider for both supported provider ids."""
    return ProviderRegistry({"nylas": fake_provider, "google": fake_provider})


@pytest.fixture
def connection_service(db_session: Session) -> ConnectionService:
    return ConnectionService(db_session)


@pytest.fixture
def client(database: Database, providers: ProviderRegistry) -> TestClient:
    """
    API client bound to the test database and fake providers.

    The lifespan is not run, so the sync scheduler stays off.
    """
    from main import app

    app.state.database = database
    app.state.providers = providers
    return TestClient(app, headers={"X-API-Key": TEST_API_KEY})
