"""Pytest configuration for capi_relay tests

WHAT: Provides shared fixtures for HTTP endpoint, store and worker tests
WHY: Ensures consistent test setup, database isolation, and settings control
REFERENCES:
    - capi_relay/main.py: FastAPI application
    - capi_relay/database.py: Database configuration
    - capi_relay/deps.py: Settings and auth dependencies
"""

import base64
import hashlib
import hmac
import os
import uuid
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment (before any capi_relay import)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SERVICE_TENANT_ID", "11111111-1111-1111-1111-111111111111")
os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("INTERNAL_ADMIN_TOKEN", "test-internal-token")
os.environ.setdefault("INTERNAL_CRON_SECRET", "test-cron-secret")
os.environ.setdefault("EVENT_ALLOWED_ORIGINS", "https://shop.example")
os.environ.setdefault("META_PIXEL_ID", "1234567890")
os.environ.setdefault("META_ACCESS_TOKEN", "test-meta-token")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ["SENTRY_DSN"] = ""

TENANT_ID = uuid.UUID(os.environ["SERVICE_TENANT_ID"])
ALLOWED_ORIGIN = "https://shop.example"
INTERNAL_HEADERS = {"X-Internal-Token": os.environ["INTERNAL_ADMIN_TOKEN"]}
CRON_HEADERS = {"X-Cron-Secret": os.environ["INTERNAL_CRON_SECRET"]}


def sign(body: bytes, secret: str = None) -> str:
    """Shopify-style signature for a raw webhook body."""
    secret = secret or os.environ["SHOPIFY_WEBHOOK_SECRET"]
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_settings():
    """Re-read settings per test so monkeypatched env vars take effect."""
    from capi_relay.deps import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine shared across threads."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from capi_relay.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def file_db(tmp_path):
    """File-backed SQLite database for tests needing independent sessions."""
    db_file = tmp_path / "capi_claim.db"
    engine = create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False},
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    from capi_relay.database import Base
    Base.metadata.create_all(bind=engine)

    yield SessionLocal

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """Create FastAPI test application."""
    from capi_relay.main import create_app

    test_app = create_app()

    # Override database dependency
    from capi_relay.database import get_db

    def override_get_db():
        try:
            yield test_db_session
        finally:
            test_db_session.close()

    test_app.dependency_overrides[get_db] = override_get_db

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)
