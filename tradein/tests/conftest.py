"""
Backend Test Configuration.

Pytest fixtures for testing the backup engine and the FastAPI routers against
an in-memory database.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from tradein.tests.fakes import FakeDatabase, FakeDatabaseManager

TEST_API_SECRET = "test-api-secret"
TEST_CRON_SECRET = "test-cron-secret"

# Monday 2025-01-06 09:00 UTC
T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def at(minutes: float = 0, hours: float = 0, days: float = 0) -> datetime:
    """A moment relative to T0."""
    return T0 + timedelta(minutes=minutes, hours=hours, days=days)


def seed(db: FakeDatabase, collection: str, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Insert documents directly, assigning ids."""
    stored = []
    for doc in docs:
        doc = dict(doc)
        doc.setdefault("_id", ObjectId())
        db[collection].docs.append(doc)
        stored.append(doc)
    return stored


@pytest.fixture
def fake_db() -> FakeDatabase:
    """Empty in-memory database."""
    return FakeDatabase()


@pytest.fixture
def notifier():
    """Event publisher stand-in; assertions inspect publish calls."""
    return MagicMock()


@pytest.fixture
def service(fake_db, notifier):
    from tradein.services.backup_service import BackupService

    return BackupService(fake_db, notifier=notifier)


@pytest.fixture
def api_settings(monkeypatch):
    """Configure shared secrets for request authentication."""
    from tradein.core.config import settings

    monkeypatch.setattr(settings, "api_secret", TEST_API_SECRET)
    monkeypatch.setattr(settings, "cron_secret", TEST_CRON_SECRET)
    monkeypatch.setattr(settings, "jwt_secret_key", "x" * 40)
    return settings


@pytest.fixture
def app(fake_db, service, api_settings):
    """The FastAPI application wired to the fake database.

    The lifespan is not run, so no real connection or scheduler is started.
    """
    from tradein.main import app as fastapi_app
    from tradein.core.security import rate_limiter

    rate_limiter.reset()
    fastapi_app.state.db = FakeDatabaseManager(fake_db)
    fastapi_app.state.backup_service = service
    fastapi_app.state.backup_scheduler = None
    return fastapi_app


@pytest.fixture
def client(app) -> TestClient:
    """Create a synchronous test client."""
    return TestClient(app)


@pytest.fixture
def staff_members(fake_db):
    """One active member per role plus an inactive admin."""
    return seed(fake_db, "staff_members", [
        {"email": "admin@store.test", "name": "Admin", "role": "admin", "active": True,
         "permissions": {"pricing": True, "tradeIn": True, "readOnly": False}},
        {"email": "manager@store.test", "name": "Manager", "role": "manager", "active": True,
         "permissions": {"pricing": True, "tradeIn": True, "readOnly": False}},
        {"email": "staff@store.test", "name": "Staff", "role": "staff", "active": True,
         "permissions": {"pricing": False, "tradeIn": True, "readOnly": True}},
        {"email": "restorer@store.test", "name": "Restorer", "role": "staff", "active": True,
         "permissions": {"backupView": True, "backupRestore": True}},
        {"email": "former@store.test", "name": "Former", "role": "admin", "active": False},
    ])


def staff_headers(email: str) -> Dict[str, str]:
    return {"X-API-Key": TEST_API_SECRET, "X-Staff-Identifier": email}
