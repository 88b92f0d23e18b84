"""
Pytest configuration and fixtures

Every test gets a fresh in-memory SQLite schema. Redis is disabled (the
send budget degrades to the per-run limit) and every transport is
replaced with a recording fake, so nothing leaves the process.
"""
import os

# Must be set before rundown.core.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["SMS_ENABLED"] = "false"
os.environ["PUSH_ENABLED"] = "false"
os.environ["LOG_FORMAT"] = "text"

import random
from datetime import datetime
from uuid import uuid4

import pytest

from rundown.core.database import Base, SessionLocal, engine, init_db
from rundown.models import Activity, Contact, User
from rundown.services.contacts import mint_opt_out_token
from rundown.services.goal_ledger import record_goal_change
from rundown.services.goal_presets import build_goal
from rundown.services.message_deduplicator import InMemoryDedupStore, MessageDeduplicator
from rundown.services.transports import DeliveryResult, Transports


# Monday 2024-06-03 .. Sunday 2024-06-09
WEEK_MONDAY = datetime(2024, 6, 3, 0, 0, 0)
WEEK_WEDNESDAY = datetime(2024, 6, 5, 12, 0, 0)
WEEK_SUNDAY_EVENING = datetime(2024, 6, 9, 21, 0, 0)


@pytest.fixture(scope="function")
def _schema():
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(_schema):
    """Session on a freshly created schema; dropped after the test."""
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def test_user(db_session):
    """A user who wants a Sunday-evening check-in."""
    user = User(
        email=f"runner_{uuid4().hex[:8]}@example.com",
        first_name="Sam",
        created_at=datetime(2024, 1, 1),
        message_style="supportive",
        message_day="Sunday",
        message_time_period="evening",
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def make_goal(db_session):
    def _make(user, goal_type="total_activities", target_value=3, now=WEEK_MONDAY, **kwargs):
        goal = build_goal(goal_type, target_value, **kwargs)
        return record_goal_change(db_session, user.id, goal, now=now).goal

    return _make


@pytest.fixture
def make_contact(db_session):
    def _make(user, email=None, phone=None, name="Alex", **kwargs):
        if email is None and phone is None:
            email = f"buddy_{uuid4().hex[:8]}@example.com"
        contact = Contact(
            user_id=user.id,
            name=name,
            email=email,
            phone=phone,
            opt_out_token=mint_opt_out_token(),
            **kwargs,
        )
        db_session.add(contact)
        db_session.commit()
        return contact

    return _make


@pytest.fixture
def make_activity(db_session):
    def _make(user, activity_type="Run", start_time=WEEK_WEDNESDAY, distance_m=5000.0, moving_time_s=1800):
        activity = Activity(
            user_id=user.id,
            provider="strava",
            external_activity_id=uuid4().hex,
            activity_type=activity_type,
            start_time=start_time,
            distance_m=distance_m,
            moving_time_s=moving_time_s,
        )
        db_session.add(activity)
        db_session.commit()
        return activity

    return _make


class RecordingTransport:
    """Fake sink: records every send, replays scripted results, then succeeds."""

    def __init__(self, channel, results=None):
        self.channel = channel
        self.results = list(results or [])
        self.sent = []

    def send(self, recipient, content, **extras):
        self.sent.append({"recipient": recipient, "content": content, **extras})
        if self.results:
            return self.results.pop(0)
        return DeliveryResult(success=True, provider_message_id=f"{self.channel}-{len(self.sent)}")


@pytest.fixture
def fake_transports():
    return Transports(
        email=RecordingTransport("email"),
        sms=RecordingTransport("sms"),
        push=RecordingTransport("push"),
    )


@pytest.fixture
def deduplicator():
    return MessageDeduplicator(InMemoryDedupStore(), rng=random.Random(7))


@pytest.fixture
def client(db_session):
    from fastapi.testclient import TestClient
    from rundown.main import app

    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def service_headers():
    return {"X-Cron-Secret": "test-cron-secret"}
