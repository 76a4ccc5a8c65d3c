"""
Pytest configuration and shared fixtures.

Environment variables can come from the shell or .env; DATABASE_URL gets a default
here so settings can load before any app imports. Every test gets its own
SQLite file under tmp_path.
"""

import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_messaging.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from messaging_service.config import Settings, get_settings  # noqa: E402
get_settings.cache_clear()

from messaging_service.main import create_app  # noqa: E402
from messaging_service.storage import Database  # noqa: E402


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(DATABASE_URL=f"sqlite:///{tmp_path / 'messaging.db'}", LOG_LEVEL="WARNING")


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    """Test client with a fresh database; the lifespan creates the tables."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def database(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'services.db'}")
    database.init_db()
    yield database
    database.drop_all()
    database.dispose()


@pytest.fixture
def db(database):
    """A session for calling services directly."""
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


def sms_payload(**overrides) -> dict:
    payload = {
        "from": "+12025551234",
        "to": "+12025555678",
        "type": "sms",
        "body": "Hello there",
        "attachments": None,
        "timestamp": "2025-01-15T10:00:00Z",
    }
    payload.update(overrides)
    return payload


def email_payload(**overrides) -> dict:
    payload = {
        "from": "alice@example.com",
        "to": "bob@example.com",
        "body": "<p>Hello</p>",
        "attachments": None,
        "timestamp": "2025-01-15T10:00:00Z",
    }
    payload.update(overrides)
    return payload
