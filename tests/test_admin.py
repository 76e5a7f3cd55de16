"""
Tests for the admin routes in main.py - token auth, license CRUD and listings.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from config import Settings
from main import create_app
from models import Event

LICENSE = {
    "device_id": "D1",
    "username": "alice",
    "level": "premium",
    "expiry": "2099-01-01",
    "status": "active",
}


class TestAdminAuth:
    def test_missing_token_is_unauthorized(self, client):
        assert client.get("/admin/licenses").status_code == 401

    def test_wrong_token_is_forbidden(self, client):
        response = client.get("/admin/licenses", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 403

    def test_x_admin_token_header(self, client, admin_token):
        response = client.get("/admin/licenses", headers={"X-Admin-Token": admin_token})

        assert response.status_code == 200

    def test_no_configured_tokens_rejects_everyone(self, db_url, clock, admin_token):
        app = create_app(Settings(db_url=db_url, rate_limit="1000/minute"), clock=clock)

        with TestClient(app) as c:
            response = c.get("/admin/licenses", headers={"Authorization": f"Bearer {admin_token}"})

        assert response.status_code == 401


class TestLicenseCrud:
    def test_upsert_then_list_and_get(self, client, admin_headers):
        created = client.post("/admin/licenses", json=LICENSE, headers=admin_headers)

        assert created.status_code == 200
        assert created.json() == LICENSE
        assert client.get("/admin/licenses", headers=admin_headers).json() == [LICENSE]
        assert client.get("/admin/licenses/D1", headers=admin_headers).json() == LICENSE

    def test_upsert_replaces_existing(self, client, admin_headers):
        client.post("/admin/licenses", json=LICENSE, headers=admin_headers)

        replaced = {**LICENSE, "username": "bob", "level": "lite", "status": "inactive"}
        client.post("/admin/licenses", json=replaced, headers=admin_headers)

        listed = client.get("/admin/licenses", headers=admin_headers).json()
        assert listed == [replaced]
        assert client.get("/check", params={"device_id": "D1"}).json()["status"] == "inactive"

    def test_enumerations_are_normalized(self, client, admin_headers):
        body = {**LICENSE, "level": " Premium ", "status": "ACTIVE"}

        out = client.post("/admin/licenses", json=body, headers=admin_headers).json()

        assert out["level"] == "premium"
        assert out["status"] == "active"

    @pytest.mark.parametrize("override", [
        {"level": "gold"},
        {"status": "paused"},
        {"expiry": "31/12/2099"},
        {"expiry": "2099-02-30"},
    ])
    def test_invalid_fields_are_rejected(self, client, admin_headers, override):
        response = client.post("/admin/licenses", json={**LICENSE, **override}, headers=admin_headers)

        assert response.status_code == 422
        assert client.get("/admin/licenses", headers=admin_headers).json() == []

    def test_blank_device_id_is_rejected(self, client, admin_headers):
        response = client.post("/admin/licenses", json={**LICENSE, "device_id": "  "}, headers=admin_headers)

        assert response.status_code == 400

    def test_delete(self, client, admin_headers):
        client.post("/admin/licenses", json=LICENSE, headers=admin_headers)

        response = client.delete("/admin/licenses/D1", headers=admin_headers)

        assert response.json() == {"ok": True, "deleted": "D1"}
        assert client.get("/admin/licenses/D1", headers=admin_headers).status_code == 404
        assert client.get("/check", params={"device_id": "D1"}).json() == {"status": "unauthorised"}

    def test_delete_unknown_is_not_found(self, client, admin_headers):
        assert client.delete("/admin/licenses/nope", headers=admin_headers).status_code == 404

    def test_admin_writes_are_audited(self, client, admin_headers, session_factory, admin_token):
        client.post("/admin/licenses", json=LICENSE, headers=admin_headers)
        client.delete("/admin/licenses/D1", headers=admin_headers)

        with session_factory() as db:
            rows = db.execute(select(Event).order_by(Event.id)).scalars().all()
            assert [r.event for r in rows] == ["admin_upsert", "admin_delete"]
            assert f"admin:{admin_token[:8]}" in rows[0].data_json


class TestListings:
    def test_events_newest_first_and_filtered(self, client, admin_headers):
        client.get("/check", params={"device_id": "D1"})
        client.get("/check", params={"device_id": "D2"})
        client.post("/event", json={"device_id": "D1", "event": "ping"})

        everything = client.get("/admin/events", headers=admin_headers).json()
        only_d1 = client.get("/admin/events", params={"device_id": "D1"}, headers=admin_headers).json()

        assert [e["event"] for e in everything] == ["ping", "check", "check"]
        assert [e["device_id"] for e in only_d1] == ["D1", "D1"]
        assert only_d1[1]["result"] == "unauthorised"

    def test_events_limit_and_date_range(self, client, admin_headers):
        for _ in range(3):
            client.get("/check", params={"device_id": "D1"})

        limited = client.get("/admin/events", params={"limit": 2}, headers=admin_headers).json()
        future = client.get("/admin/events", params={"since": "2999-01-01"}, headers=admin_headers).json()

        assert len(limited) == 2
        assert future == []

    def test_malformed_date_filter_is_rejected(self, client, admin_headers):
        response = client.get("/admin/events", params={"since": "yesterday"}, headers=admin_headers)

        assert response.status_code == 422

    def test_sessions_listing(self, client, admin_headers, add_license, clock):
        add_license()
        client.post("/event", json={"device_id": "D1", "event": "start"})
        clock.advance(5)
        client.post("/event", json={"device_id": "D1", "event": "start"})
        today = clock.now.date().isoformat()

        rows = client.get("/admin/sessions", params={"device_id": "D1", "since": today, "until": today},
                          headers=admin_headers).json()
        running = client.get("/admin/sessions", params={"status": "running"}, headers=admin_headers).json()

        assert [r["status"] for r in rows] == ["running", "aborted"]
        assert rows[1]["duration_sec"] == 5
        assert len(running) == 1
        assert running[0]["end_time"] is None

    def test_sessions_bad_status_filter(self, client, admin_headers):
        response = client.get("/admin/sessions", params={"status": "paused"}, headers=admin_headers)

        assert response.status_code == 400

    def test_listings_require_admin(self, client):
        assert client.get("/admin/events").status_code == 401
        assert client.get("/admin/sessions").status_code == 401
