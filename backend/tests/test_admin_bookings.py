from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import app.main as main_module
from app.availability.admission import AdmissionGate, AdmissionLimit, AdmissionMode, SqlAttemptStore
from app.availability.engine import AvailabilityEngine
from app.availability.settings import EngineSettings
from app.availability.store import AvailabilityStore
from app.db.base import Base
from app.main import app


client = TestClient(app)

ADMIN_HEADERS = {"X-Admin-Key": "super-secret"}
NOW_UTC = datetime(2024, 2, 1, 18, 0, tzinfo=timezone.utc)
BOOKING_PAYLOAD = {
    "client_name": "Jordan Lee",
    "client_email": "jordan@example.com",
    "client_phone": "+15555550100",
    "event_type": "Wedding",
    "event_date": "2024-02-15",
    "start_time": "15:00",
    "end_time": "17:00",
    "services": ["DJ", "photography"],
}


@pytest.fixture
def wired_app(monkeypatch, tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'bookings.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    availability = AvailabilityEngine(
        store=AvailabilityStore(session_factory),
        settings=EngineSettings(),
        clock=lambda: NOW_UTC,
    )
    gate = AdmissionGate(
        mode=AdmissionMode.ENFORCE,
        limits={"booking_create": AdmissionLimit(limit=2, window_seconds=3600)},
        store=SqlAttemptStore(session_factory),
    )
    monkeypatch.setenv("ENV", "prod")
    monkeypatch.setenv("ADMIN_API_KEY", "super-secret")
    monkeypatch.setattr(main_module, "SessionLocal", session_factory)
    monkeypatch.setattr(main_module, "availability_engine", availability)
    monkeypatch.setattr(main_module, "admission_gate", gate)
    yield availability
    engine.dispose()


def _admin_create(**overrides):
    payload = {**BOOKING_PAYLOAD, **overrides}
    return client.post("/v1/admin/bookings", json=payload, headers=ADMIN_HEADERS)


def test_admin_auth_required(wired_app):
    response = client.get(
        "/v1/admin/bookings",
        params={"start_date": "2024-02-01", "end_date": "2024-02-29"},
    )

    assert response.status_code == 401
    assert response.json()["detail"]["error_code"] == "INVALID_ADMIN_API_KEY"


def test_public_booking_then_admin_listing(wired_app):
    created = client.post("/v1/bookings", json=BOOKING_PAYLOAD)

    assert created.status_code == 200
    booking = created.json()["data"]["booking"]
    assert booking["status"] == "PENDING"
    assert booking["services"] == ["DJ", "PHOTOGRAPHY"]

    listed = client.get(
        "/v1/admin/bookings",
        params={"start_date": "2024-02-01", "end_date": "2024-02-29"},
        headers=ADMIN_HEADERS,
    )
    assert listed.status_code == 200
    assert [item["reference"] for item in listed.json()["data"]["bookings"]] == [booking["reference"]]


def test_public_booking_rejects_invalid_email(wired_app):
    response = client.post("/v1/bookings", json={**BOOKING_PAYLOAD, "client_email": "nope"})

    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_ARGS"


def test_public_booking_conflict_is_409_with_alternatives(wired_app):
    assert _admin_create(status="CONFIRMED").status_code == 200

    response = client.post(
        "/v1/bookings",
        json={**BOOKING_PAYLOAD, "start_time": "16:00", "end_time": "18:00"},
    )

    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "SLOT_UNAVAILABLE"
    assert body["availability"]["resolution"]["alternatives"]


def test_public_booking_is_rate_limited_per_client(wired_app):
    for day in ("2024-02-20", "2024-02-21"):
        assert client.post("/v1/bookings", json={**BOOKING_PAYLOAD, "event_date": day}).status_code == 200

    blocked = client.post("/v1/bookings", json={**BOOKING_PAYLOAD, "event_date": "2024-02-22"})

    assert blocked.status_code == 429
    assert blocked.json()["error_code"] == "RATE_LIMITED"
    assert int(blocked.headers["Retry-After"]) >= 1

    cleared = client.delete("/v1/admin/admission/testclient", headers=ADMIN_HEADERS)
    assert cleared.status_code == 200
    retried = client.post("/v1/bookings", json={**BOOKING_PAYLOAD, "event_date": "2024-02-22"})
    assert retried.status_code == 200


def test_admission_clear_rejects_unknown_action(wired_app):
    response = client.delete(
        "/v1/admin/admission/testclient",
        params={"action": "checkout"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 400


def test_admin_status_update_and_delete_flow(wired_app):
    booking_id = _admin_create(status="CONFIRMED").json()["data"]["booking"]["id"]

    refused = client.delete(f"/v1/admin/bookings/{booking_id}", headers=ADMIN_HEADERS)
    assert refused.status_code == 409
    assert refused.json()["error_code"] == "BOOKING_CONFIRMED"

    cancelled = client.patch(
        f"/v1/admin/bookings/{booking_id}",
        json={"status": "CANCELLED"},
        headers=ADMIN_HEADERS,
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["booking"]["status"] == "CANCELLED"

    deleted = client.delete(f"/v1/admin/bookings/{booking_id}", headers=ADMIN_HEADERS)
    assert deleted.status_code == 200

    missing = client.get(f"/v1/admin/bookings/{booking_id}", headers=ADMIN_HEADERS)
    assert missing.status_code == 404


def test_admin_reschedule_conflict_is_409(wired_app):
    _admin_create(status="CONFIRMED")
    other_id = _admin_create(status="CONFIRMED", event_date="2024-02-16").json()["data"]["booking"]["id"]

    response = client.patch(
        f"/v1/admin/bookings/{other_id}",
        json={"event_date": "2024-02-15", "start_time": "16:00", "end_time": "19:00"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 409
    assert response.json()["availability"]["conflicts"][0]["type"] == "direct-overlap"


def test_admin_patch_requires_a_change(wired_app):
    booking_id = _admin_create().json()["data"]["booking"]["id"]

    response = client.patch(f"/v1/admin/bookings/{booking_id}", json={}, headers=ADMIN_HEADERS)

    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_ARGS"


def test_calendar_block_makes_date_unavailable(wired_app):
    blocked = client.put(
        "/v1/admin/calendar/2024-02-15",
        json={"reason": "Venue maintenance"},
        headers=ADMIN_HEADERS,
    )
    assert blocked.status_code == 200

    check = client.post(
        "/v1/availability/check",
        json={"date": "2024-02-15", "start_time": "15:00", "end_time": "17:00", "services": ["DJ"]},
    )
    calendar = client.get(
        "/v1/availability/range",
        params={"start_date": "2024-02-14", "end_date": "2024-02-16"},
    )

    assert check.json()["data"]["blocked_reason"] == "Venue maintenance"
    days = {day["date"]: day for day in calendar.json()["data"]["calendar"]}
    assert days["2024-02-15"]["isAvailable"] is False
    assert days["2024-02-15"]["blockedReason"] == "Venue maintenance"

    unblocked = client.delete("/v1/admin/calendar/2024-02-15", headers=ADMIN_HEADERS)
    assert unblocked.json()["data"]["unblocked"] is True
    assert client.post(
        "/v1/availability/check",
        json={"date": "2024-02-15", "start_time": "15:00", "end_time": "17:00", "services": ["DJ"]},
    ).json()["data"]["available"] is True


def test_admin_listing_rejects_reversed_range(wired_app):
    response = client.get(
        "/v1/admin/bookings",
        params={"start_date": "2024-02-29", "end_date": "2024-02-01"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_RANGE"


def test_identical_public_requests_second_is_409(wired_app):
    first = client.post("/v1/bookings", json=BOOKING_PAYLOAD)
    second = client.post("/v1/bookings", json=BOOKING_PAYLOAD)

    assert first.status_code == 200
    assert second.status_code == 409
    body = second.json()
    assert body["availability"]["available"] is False
    assert body["availability"]["conflicts"][0]["severity"] == "hard"
