"""Pytest configuration for shopsync tests

WHAT: Provides shared fixtures for service, HTTP endpoint and worker tests
WHY: Ensures consistent test setup, database isolation, and signed requests
REFERENCES:
    - shopsync/main.py: FastAPI application factory
    - shopsync/database.py: Database configuration
    - shopsync/deps.py: Settings
"""

import base64
import hashlib
import hmac
import json
import os
from typing import Any, Dict, Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before anything reads settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("SYNC_ENABLED", "false")

WEBHOOK_SECRET = "test-webhook-secret"
SHOP_DOMAIN = "test-shop.myshopify.com"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared by every session in the test (StaticPool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from shopsync.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def test_settings():
    from shopsync.deps import Settings

    return Settings(
        DATABASE_URL="sqlite://",
        SHOPIFY_WEBHOOK_SECRET=WEBHOOK_SECRET,
        WEBHOOK_TEST_MODE=False,
        WEBHOOK_BASE_URL="https://hooks.example.com",
        SYNC_ENABLED=False,
        SENTRY_DSN=None,
    )


@pytest.fixture
def app(test_settings, session_factory, test_db_session):
    """FastAPI test application sharing the test session."""
    from shopsync.database import get_db
    from shopsync.main import create_app

    test_app = create_app(settings=test_settings, session_factory=session_factory)

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


# ============================================================================
# Domain Fixtures
# ============================================================================

@pytest.fixture
def tenant(test_db_session):
    from shopsync.models import Tenant

    tenant = Tenant(
        name="Test Shop",
        email="test@shop.com",
        shop_domain=SHOP_DOMAIN,
        access_token="shpat_test_token",
        active=True,
    )
    test_db_session.add(tenant)
    test_db_session.commit()
    return tenant


@pytest.fixture
def inactive_tenant(test_db_session):
    from shopsync.models import Tenant

    tenant = Tenant(
        name="Gone Shop",
        email="gone@shop.com",
        shop_domain="gone-shop.myshopify.com",
        access_token=None,
        active=False,
    )
    test_db_session.add(tenant)
    test_db_session.commit()
    return tenant


@pytest.fixture
def order_payload() -> Dict[str, Any]:
    return {
        "id": 12345,
        "order_number": "TEST-001",
        "email": "customer@example.com",
        "total_price": "99.99",
        "subtotal_price": "89.99",
        "total_tax": "10.00",
        "currency": "USD",
        "financial_status": "paid",
        "fulfillment_status": None,
        "created_at": "2024-01-01T10:00:00-05:00",
        "updated_at": "2024-01-01T10:05:00-05:00",
        "customer": {
            "id": 67890,
            "email": "customer@example.com",
            "first_name": "John",
            "last_name": "Doe",
        },
    }


# ============================================================================
# Signing Helpers
# ============================================================================

def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")


def encode(payload: Any) -> bytes:
    return json.dumps(payload).encode("utf-8")


def webhook_headers(
    topic: str,
    body: bytes,
    shop_domain: str = SHOP_DOMAIN,
    signature: Optional[str] = None,
    webhook_id: Optional[str] = None,
) -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop_domain,
        "X-Shopify-Hmac-Sha256": signature if signature is not None else sign(body),
    }
    if webhook_id:
        headers["X-Shopify-Webhook-Id"] = webhook_id
    return headers
