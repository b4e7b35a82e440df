"""
Pytest configuration and fixtures

Tests run against a single shared in-memory SQLite connection. Every test
gets freshly created tables and drops them afterwards, so nothing leaks
between tests even though the code under test commits.

Celery hand-offs (``.delay``) are patched for every test; no broker is needed.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest

# Must be set before core.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["INTERNAL_API_SECRET"] = "test-internal-secret"
os.environ["ACTIVITY_FILE_UPLOAD_SECRET"] = "test-upload-secret"
os.environ.setdefault("LOG_FORMAT", "text")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import Base, SessionLocal, engine, get_db  # noqa: E402
import models  # noqa: E402,F401
from models import Challenge, User  # noqa: E402


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema per test; dropped afterwards."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def enqueued():
    """
    Replace every Celery hand-off with a mock.

    Routers and tasks import the same task objects, so patching ``delay`` on
    the task covers both.
    """
    def _delay_mock():
        return MagicMock(return_value=MagicMock(id="test-task-id"))

    with patch("tasks.notification_tasks.process_notification_task.delay", new_callable=_delay_mock) as process, \
            patch("tasks.notification_tasks.sweep_webhook_notifications_task.delay", new_callable=_delay_mock) as sweep, \
            patch("tasks.notification_tasks.aggregate_activities_task.delay", new_callable=_delay_mock) as aggregate, \
            patch("tasks.activity_file_tasks.ingest_activity_file_task.delay", new_callable=_delay_mock) as ingest_file:
        yield SimpleNamespace(process=process, sweep=sweep, aggregate=aggregate, ingest_file=ingest_file)


@pytest.fixture
def make_user(db_session):
    def _make(**kwargs):
        suffix = uuid4().hex[:8]
        user = User(
            username=kwargs.pop("username", f"rider_{suffix}"),
            email=kwargs.pop("email", f"rider_{suffix}@example.com"),
            **kwargs,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def test_user(make_user):
    return make_user(garmin_user_id="garmin-user-1", garmin_access_token="token-abc")


@pytest.fixture
def make_challenge(db_session):
    def _make(**kwargs):
        start = kwargs.pop("start_date", datetime(2026, 3, 1, tzinfo=timezone.utc))
        challenge = Challenge(
            title=kwargs.pop("title", "March Distance"),
            challenge_type=kwargs.pop("challenge_type", "distance"),
            start_date=start,
            end_date=kwargs.pop("end_date", start + timedelta(days=6)),
            is_active=kwargs.pop("is_active", True),
            **kwargs,
        )
        db_session.add(challenge)
        db_session.commit()
        return challenge

    return _make


@pytest.fixture
def client(db_session):
    from fastapi.testclient import TestClient
    from main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_db, None)
