"""HTTP surface: opt-out page, job triggers, goals and contacts."""

import json
import logging
from uuid import uuid4

from rundown.core.logging import JSONFormatter
from rundown.models import Contact, NotificationQueueEntry
from rundown.routers.jobs import get_deduplicator, get_transports
from rundown.services.evaluation_scheduler import schedule_slot

from conftest import WEEK_SUNDAY_EVENING


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestOptOutPage:

    def test_opt_out_twice(self, client, db_session, test_user, make_contact):
        contact = make_contact(test_user)

        first = client.get("/v1/accountability/opt-out", params={"token": contact.opt_out_token})
        second = client.get("/v1/accountability/opt-out", params={"token": contact.opt_out_token})

        assert first.status_code == 200
        assert "You&#x27;re all set" in first.text
        assert second.status_code == 200
        assert "Already opted out" in second.text

        db_session.expire_all()
        assert db_session.get(Contact, contact.id).opted_out_at is not None

    def test_missing_token(self, client):
        response = client.get("/v1/accountability/opt-out")
        assert response.status_code == 200
        assert "Missing link" in response.text

    def test_unknown_token(self, client):
        response = client.get("/v1/accountability/opt-out", params={"token": "nope"})
        assert response.status_code == 200
        assert "Link expired" in response.text


class TestJobs:

    def test_requires_service_key(self, client):
        response = client.post("/v1/jobs/reap")
        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"

        response = client.post("/v1/jobs/reap", headers={"X-Cron-Secret": "wrong"})
        assert response.status_code == 401

    def test_unknown_slot(self, client, service_headers):
        response = client.post("/v1/jobs/schedule/midnight", headers=service_headers)
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR_SLOT"

    def test_schedule_slot(self, client, service_headers):
        response = client.post("/v1/jobs/schedule/morning", headers=service_headers)
        assert response.status_code == 200
        assert response.json()["slot"] == "morning"

    def test_deliver(self, client, service_headers, db_session, test_user, make_goal, make_contact,
                     fake_transports, deduplicator):
        from rundown.main import app

        make_goal(test_user, "total_activities", 3)
        make_contact(test_user)
        schedule_slot(db_session, "evening", now=WEEK_SUNDAY_EVENING)
        app.dependency_overrides[get_transports] = lambda: fake_transports
        app.dependency_overrides[get_deduplicator] = lambda: deduplicator

        response = client.post("/v1/jobs/deliver", headers=service_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["claimed"] == 1
        assert body["sent"] == 1
        assert len(fake_transports.email.sent) == 1
        db_session.expire_all()
        assert db_session.query(NotificationQueueEntry).one().status == "sent"

    def test_reap(self, client, service_headers):
        response = client.post("/v1/jobs/reap", headers=service_headers)
        assert response.json() == {"reaped": 0, "requeued": 0, "failed": 0}


class TestGoals:

    def test_create_then_read_goal_and_progress(self, client, service_headers, test_user):
        url = f"/v1/users/{test_user.id}"

        created = client.post(f"{url}/goals", json={"goal_type": "total_runs", "target_value": 4},
                              headers=service_headers)
        assert created.status_code == 201
        body = created.json()
        assert body["deferred"] is False
        assert body["goal"]["target_unit"] == "runs"

        active = client.get(f"{url}/goals/active", headers=service_headers)
        assert active.status_code == 200
        assert active.json()["goal_type"] == "total_runs"

        progress = client.get(f"{url}/progress", headers=service_headers)
        assert progress.status_code == 200
        assert progress.json()["current"] == 0
        assert progress.json()["target"] == 4
        assert progress.json()["is_met"] is False

    def test_invalid_goal(self, client, service_headers, test_user):
        response = client.post(f"/v1/users/{test_user.id}/goals",
                               json={"goal_type": "juggling", "target_value": 2},
                               headers=service_headers)
        assert response.status_code == 422

    def test_no_goal_is_404(self, client, service_headers, test_user):
        response = client.get(f"/v1/users/{test_user.id}/goals/active", headers=service_headers)
        assert response.status_code == 404

    def test_unknown_user_is_404(self, client, service_headers):
        response = client.get(f"/v1/users/{uuid4()}/progress", headers=service_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"


class TestContacts:

    def test_add_list_remove(self, client, service_headers, test_user):
        url = f"/v1/users/{test_user.id}/contacts"

        created = client.post(url, json={"name": "Alex", "email": "alex@example.com", "relationship": "friend"},
                              headers=service_headers)
        assert created.status_code == 201
        contact_id = created.json()["id"]
        assert created.json()["relationship_type"] == "friend"

        listed = client.get(url, headers=service_headers)
        assert [c["id"] for c in listed.json()] == [contact_id]

        removed = client.delete(f"{url}/{contact_id}", headers=service_headers)
        assert removed.status_code == 200
        assert removed.json()["is_active"] is False

        assert client.delete(f"{url}/{uuid4()}", headers=service_headers).status_code == 404

    def test_contact_limit_is_409(self, client, service_headers, test_user):
        url = f"/v1/users/{test_user.id}/contacts"
        for i in range(5):
            response = client.post(url, json={"email": f"c{i}@example.com"}, headers=service_headers)
            assert response.status_code == 201

        response = client.post(url, json={"email": "c5@example.com"}, headers=service_headers)
        assert response.status_code == 409
        assert response.json()["error"] == "CONFLICT"

    def test_contact_needs_an_address(self, client, service_headers, test_user):
        response = client.post(f"/v1/users/{test_user.id}/contacts", json={"name": "Nobody"},
                               headers=service_headers)
        assert response.status_code == 422


def test_json_formatter_merges_extra_fields():
    record = logging.LogRecord("rundown.jobs", logging.INFO, __file__, 10, "Delivery pass finished", None, None)
    record.extra_fields = {"claimed": 3, "sent": 2}

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "Delivery pass finished"
    assert payload["level"] == "INFO"
    assert payload["claimed"] == 3


def test_startup_creates_missing_tables(db_session):
    from fastapi.testclient import TestClient
    from sqlalchemy import inspect

    from rundown.core.database import Base, engine
    from rundown.main import app

    Base.metadata.drop_all(bind=engine)
    with TestClient(app):
        pass

    assert {"goal_history", "notification_queue", "contact"} <= set(inspect(engine).get_table_names())
