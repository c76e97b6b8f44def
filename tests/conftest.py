"""Shared fixtures: in-memory database, settings and API client."""

import os

# Must be set before app modules read their settings
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from app.config import Settings


# ============================================================================
# Pytest Fixtures
# ============================================================================

@pytest.fixture
def engine():
    """In-memory SQLite engine shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Import all models to register them
    import app.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create a test database session."""
    with Session(engine) as session:
        yield session


@pytest.fixture
def session_factory(engine):
    """Opens extra sessions on the test database, as worker threads do."""

    def factory() -> Session:
        return Session(engine)

    return factory


@pytest.fixture
def settings():
    """Settings with fast retries and no provider credentials."""
    settings = Settings()
    settings.DATABASE_URL = "sqlite://"
    settings.WORKER_BATCH_SIZE = 10
    settings.WORKER_MAX_RETRIES = 3
    settings.WORKER_RETRY_DELAY_SECONDS = 0
    settings.WORKER_POLL_INTERVAL_SECONDS = 1
    settings.WEBHOOK_DEFAULT_MAX_ATTEMPTS = 3
    settings.WEBHOOK_DEFAULT_BASE_DELAY_MS = 0
    settings.RETRY_CLIENT_ERRORS = False
    settings.EXPO_ACCESS_TOKEN = ""
    settings.TWILIO_ACCOUNT_SID = ""
    settings.TWILIO_AUTH_TOKEN = ""
    settings.SMTP_HOST = ""
    settings.WEB_PUSH_GATEWAY_URL = ""
    return settings


@pytest.fixture
def client(engine, settings):
    """API client bound to the test database and settings."""
    from app.api.deps import get_db_session
    from app.config import get_settings
    from app.main import app
    from app.services.queue import QueueService

    with Session(engine) as session:
        QueueService(session, settings).ensure_default_lanes()

    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db_session] = override_session
    app.dependency_overrides[get_settings] = lambda: settings
    # No context manager: the lifespan would touch the configured database
    yield TestClient(app)
    app.dependency_overrides.clear()
