"""Tests for REST API endpoints using the ASGI test client."""

import datetime

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from database import get_db as original_get_db
from engine import CheckinEngine
from models import Checkin, LocationPing
from tests.checkin_fixtures import FAR_1KM, NEAR_89M


# ---------------------------------------------------------------------------
# Test setup: override get_db using the original function reference as key
# ---------------------------------------------------------------------------

@pytest.fixture
def service(session_factory):
    return CheckinEngine(session_factory, interval_minutes=60)


@pytest.fixture
def client(session_factory, service):
    """Create a test FastAPI app sharing the in-memory database of the `db` fixture."""

    def test_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    from api import router

    app = FastAPI()
    app.dependency_overrides[original_get_db] = test_get_db
    app.include_router(router)
    app.state.checkin_engine = service
    return TestClient(app)


def _now():
    return datetime.datetime.now(datetime.timezone.utc)


def _checkin(client, user, tag, point=NEAR_89M):
    return client.post("/api/checkins", json={
        "user_id": user.id,
        "tag_id": tag.id,
        "latitude": point["latitude"],
        "longitude": point["longitude"],
    })


# ---------------------------------------------------------------------------
# POST /api/checkins
# ---------------------------------------------------------------------------

class TestCreateCheckin:
    def test_within_radius(self, client, make_tag, make_user):
        tag = make_tag(redirect_url="https://example.com/ok")
        user = make_user(tags=[tag])

        resp = _checkin(client, user, tag)

        assert resp.status_code == 201
        data = resp.json()
        assert data["is_within_radius"] is True
        assert data["radius_meters"] == 100
        assert data["distance_meters"] == pytest.approx(89, abs=1)
        assert data["redirect_url"] == "https://example.com/ok"
        assert data["checkin_id"] > 0

    def test_outside_radius_still_created(self, client, db, make_tag, make_user):
        tag = make_tag()
        user = make_user(tags=[tag])

        resp = _checkin(client, user, tag, point=FAR_1KM)

        assert resp.status_code == 201
        assert resp.json()["is_within_radius"] is False
        assert db.query(Checkin).count() == 1

    def test_already_checked_in_today(self, client, make_tag, make_user):
        tag = make_tag(uid="DOOR-1", redirect_url="https://example.com/ok")
        user = make_user(tags=[tag])
        first = _checkin(client, user, tag).json()

        resp = _checkin(client, user, tag)

        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["error"] == "already_checked_in_today"
        assert detail["checkin_id"] == first["checkin_id"]
        assert detail["tag_uid"] == "DOOR-1"
        assert detail["redirect_url"] == "https://example.com/ok"

    def test_unknown_tag(self, client, make_user):
        user = make_user()
        resp = client.post("/api/checkins", json={"user_id": user.id, "tag_id": 999, "latitude": 0, "longitude": 0})
        assert resp.status_code == 404

    def test_user_not_linked(self, client, make_tag, make_user):
        tag = make_tag()
        user = make_user()
        assert _checkin(client, user, tag).status_code == 404

    def test_tag_without_geolocation(self, client, make_tag, make_user):
        tag = make_tag(latitude=None, longitude=None)
        user = make_user(tags=[tag])
        assert _checkin(client, user, tag).status_code == 400

    def test_out_of_range_coordinates(self, client, make_tag, make_user):
        tag = make_tag()
        user = make_user(tags=[tag])
        resp = _checkin(client, user, tag, point={"latitude": 91.0, "longitude": 0.0})
        assert resp.status_code == 422

    def test_missing_fields(self, client):
        resp = client.post("/api/checkins", json={"user_id": 1})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# GET /api/checkins
# ---------------------------------------------------------------------------

class TestListCheckins:
    def test_filters(self, client, make_tag, make_user):
        first_tag, second_tag = make_tag(), make_tag()
        user = make_user(tags=[first_tag, second_tag])
        _checkin(client, user, first_tag)
        _checkin(client, user, second_tag, point=FAR_1KM)

        all_rows = client.get("/api/checkins").json()
        assert len(all_rows) == 2

        rows = client.get("/api/checkins", params={"tag_id": second_tag.id}).json()
        assert len(rows) == 1
        assert rows[0]["status"] == "failed"
        assert rows[0]["error_message"].startswith("outside radius")
        assert rows[0]["type"] == "manual"

        assert client.get("/api/checkins", params={"type": "automatic"}).json() == []

    def test_newest_first_with_paging(self, client, make_tag, make_user):
        tags = [make_tag() for _ in range(3)]
        user = make_user(tags=tags)
        ids = [_checkin(client, user, tag).json()["checkin_id"] for tag in tags]

        page = client.get("/api/checkins", params={"limit": 2, "offset": 0}).json()
        assert [r["id"] for r in page] == [ids[2], ids[1]]

        rest = client.get("/api/checkins", params={"limit": 2, "offset": 2}).json()
        assert [r["id"] for r in rest] == [ids[0]]


# ---------------------------------------------------------------------------
# POST /api/locations
# ---------------------------------------------------------------------------

class TestUploadLocation:
    def test_stores_ping(self, client, db, make_user):
        user = make_user()

        resp = client.post("/api/locations", json={
            "user_id": user.id, "latitude": NEAR_89M["latitude"], "longitude": NEAR_89M["longitude"],
            "accuracy": 12.5,
        })

        assert resp.status_code == 201
        ping = db.query(LocationPing).one()
        assert ping.user_id == user.id
        assert ping.accuracy == 12.5

    def test_device_timestamp_is_stored_as_utc(self, client, db, make_user):
        user = make_user()

        resp = client.post("/api/locations", json={
            "user_id": user.id, "latitude": 0, "longitude": 0, "timestamp": "2025-01-09T09:00:00-04:00",
        })

        assert resp.status_code == 201
        assert db.query(LocationPing).one().timestamp == datetime.datetime(2025, 1, 9, 13, 0)

    def test_unknown_user(self, client):
        resp = client.post("/api/locations", json={"user_id": 999, "latitude": 0, "longitude": 0})
        assert resp.status_code == 404

    def test_inactive_user(self, client, make_user):
        user = make_user(is_active=False)
        resp = client.post("/api/locations", json={"user_id": user.id, "latitude": 0, "longitude": 0})
        assert resp.status_code == 404

    def test_bad_timestamp(self, client, make_user):
        user = make_user()
        resp = client.post("/api/locations", json={
            "user_id": user.id, "latitude": 0, "longitude": 0, "timestamp": "yesterday",
        })
        assert resp.status_code == 422

    def test_out_of_range_latitude(self, client, make_user):
        user = make_user()
        resp = client.post("/api/locations", json={"user_id": user.id, "latitude": -95, "longitude": 0})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# POST /api/schedules/{id}/trigger
# ---------------------------------------------------------------------------

class TestTrigger:
    def test_trigger(self, client, make_tag, make_user, make_schedule, add_ping):
        tag = make_tag()
        near = make_user(tags=[tag])
        far = make_user(tags=[tag])
        schedule = make_schedule(tags=[tag])
        add_ping(near, NEAR_89M, _now())
        add_ping(far, FAR_1KM, _now())

        resp = client.post(f"/api/schedules/{schedule.id}/trigger")

        assert resp.status_code == 200
        data = resp.json()
        assert data["schedule_id"] == schedule.id
        assert data["users_processed"] == 2
        assert data["users_within_radius"] == 1
        assert data["users_skipped"] == 0

        again = client.post(f"/api/schedules/{schedule.id}/trigger").json()
        assert again["users_processed"] == 0
        assert again["users_skipped"] == 2

    def test_unknown_schedule(self, client):
        assert client.post("/api/schedules/999/trigger").status_code == 404

    def test_schedule_without_geolocated_tags(self, client, make_tag, make_schedule):
        schedule = make_schedule(tags=[make_tag(latitude=None, longitude=None)])
        assert client.post(f"/api/schedules/{schedule.id}/trigger").status_code == 400


# ---------------------------------------------------------------------------
# GET /api/engine/status
# ---------------------------------------------------------------------------

class TestEngineStatus:
    def test_before_first_tick(self, client):
        resp = client.get("/api/engine/status")
        assert resp.status_code == 200
        assert resp.json() == {"running": False, "last_tick": None}

    def test_after_tick(self, client, service):
        service.run_tick()

        data = client.get("/api/engine/status").json()

        assert data["last_tick"]["aborted"] is False
        assert data["last_tick"]["schedules_loaded"] == 0

    def test_not_configured(self):
        from api import router

        app = FastAPI()
        app.include_router(router)
        assert TestClient(app).get("/api/engine/status").status_code == 503
