"""
tests/test_checkin.py
Tests for QR, location and manual check-in, plus the location QR helpers.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import (
    Appointment,
    AppointmentStatus,
    AuditLog,
    QueueEntry,
    QueueStatus,
    User,
)
from shared.utils.geo import build_location_qr, haversine_meters, parse_location_qr
from tests.conftest import auth_headers, make_appointment, published_events


# ── Location QR helpers ────────────────────────────────────────────────────────

def test_parse_location_qr_json_payload():
    parsed = parse_location_qr(json.dumps(build_location_qr()))
    assert parsed is not None
    assert parsed.location_id == "ASHRAM_MAIN"
    assert parsed.latitude == pytest.approx(19.0760)


@pytest.mark.parametrize("code", ["ASHRAM_MAIN", "ashram", " MAIN "])
def test_parse_legacy_location_codes(code):
    parsed = parse_location_qr(code)
    assert parsed is not None
    assert parsed.location_id == settings.ASHRAM_LOCATION_ID


@pytest.mark.parametrize("code", ["", "TEMPLE", '{"locationId": "ELSEWHERE"}', "[1, 2]"])
def test_parse_rejects_foreign_codes(code):
    assert parse_location_qr(code) is None


def test_haversine_distance():
    assert haversine_meters(19.0760, 72.8777, 19.0760, 72.8777) == 0
    # One thousandth of a degree of latitude is roughly 111 meters
    assert 105 < haversine_meters(19.0760, 72.8777, 19.0770, 72.8777) < 117


# ── QR check-in ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_qr_checkin(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    today_appointment: Appointment,
    fake_redis,
):
    response = await client.post(
        "/checkin/qr", headers=auth_headers(user), json={"qr_code": today_appointment.qr_code}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["appointment"]["status"] == "CHECKED_IN"
    assert data["queue_entry"]["position"] == 1
    assert data["queue_entry"]["people_ahead"] == 0
    assert data["queue_entry"]["estimated_wait"] == settings.QUEUE_MINUTES_PER_DEVOTEE
    assert "number 1" in data["message"]

    events = published_events(fake_redis)
    assert "patient-checked-in" in events
    assert "checkin-confirmed" in events
    assert "queue-updated" in events

    log = await db.scalar(select(AuditLog).where(AuditLog.action == "APPOINTMENT_CHECKED_IN"))
    assert log.new_data["method"] == "qr"


@pytest.mark.asyncio
async def test_qr_checkin_joins_behind_waiting_devotee(
    client: AsyncClient,
    user: User,
    today_appointment: Appointment,
    queue_entry: QueueEntry,
):
    response = await client.post(
        "/checkin/qr", headers=auth_headers(user), json={"qr_code": today_appointment.qr_code}
    )
    assert response.status_code == 200
    entry = response.json()["queue_entry"]
    assert entry["position"] == 2
    assert entry["people_ahead"] == 1
    assert entry["estimated_wait"] == 2 * settings.QUEUE_MINUTES_PER_DEVOTEE


@pytest.mark.asyncio
async def test_qr_unknown_code(client: AsyncClient, user: User):
    response = await client.post("/checkin/qr", headers=auth_headers(user), json={"qr_code": "nope"})
    assert response.status_code == 404
    assert response.json()["detail"] == "Invalid QR code"


@pytest.mark.asyncio
async def test_qr_of_another_devotee(
    client: AsyncClient,
    second_user: User,
    today_appointment: Appointment,
):
    response = await client.post(
        "/checkin/qr", headers=auth_headers(second_user), json={"qr_code": today_appointment.qr_code}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_qr_not_today(client: AsyncClient, user: User, future_appointment: Appointment):
    response = await client.post(
        "/checkin/qr", headers=auth_headers(user), json={"qr_code": future_appointment.qr_code}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Appointment is not scheduled for today"


@pytest.mark.asyncio
async def test_qr_twice_rejected(client: AsyncClient, user: User, today_appointment: Appointment):
    payload = {"qr_code": today_appointment.qr_code}
    first = await client.post("/checkin/qr", headers=auth_headers(user), json=payload)
    assert first.status_code == 200

    second = await client.post("/checkin/qr", headers=auth_headers(user), json=payload)
    assert second.status_code == 400


@pytest.mark.asyncio
async def test_qr_cancelled_appointment(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    guruji_user: User,
):
    appointment = await make_appointment(
        db, user, guruji_user, datetime.now(timezone.utc), status=AppointmentStatus.CANCELLED
    )
    response = await client.post(
        "/checkin/qr", headers=auth_headers(user), json={"qr_code": appointment.qr_code}
    )
    assert response.status_code == 400


# ── Location check-in ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_location_checkin_with_gps(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    today_appointment: Appointment,
):
    response = await client.post(
        "/checkin/location",
        headers=auth_headers(user),
        json={
            "qr_data": json.dumps(build_location_qr()),
            "latitude": 19.07605,
            "longitude": 72.87775,
        },
    )
    assert response.status_code == 200
    assert response.json()["appointment"]["id"] == str(today_appointment.id)

    log = await db.scalar(select(AuditLog).where(AuditLog.action == "APPOINTMENT_CHECKED_IN"))
    assert log.new_data["location_id"] == "ASHRAM_MAIN"


@pytest.mark.asyncio
async def test_location_checkin_legacy_code_without_gps(
    client: AsyncClient,
    user: User,
    today_appointment: Appointment,
):
    response = await client.post(
        "/checkin/location", headers=auth_headers(user), json={"qr_data": "ASHRAM_MAIN"}
    )
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_location_checkin_invalid_code(client: AsyncClient, user: User, today_appointment: Appointment):
    response = await client.post(
        "/checkin/location", headers=auth_headers(user), json={"qr_data": "SOMEWHERE_ELSE"}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid location QR code"


@pytest.mark.asyncio
async def test_location_checkin_too_far(client: AsyncClient, user: User, today_appointment: Appointment):
    response = await client.post(
        "/checkin/location",
        headers=auth_headers(user),
        json={"qr_data": "ASHRAM_MAIN", "latitude": 19.0860, "longitude": 72.8777},
    )
    assert response.status_code == 400
    assert "meters" in response.json()["detail"]


@pytest.mark.asyncio
async def test_location_checkin_without_appointment(client: AsyncClient, user: User):
    response = await client.post(
        "/checkin/location", headers=auth_headers(user), json={"qr_data": "ASHRAM_MAIN"}
    )
    assert response.status_code == 404
    assert response.json()["detail"] == "No appointment found for today"


@pytest.mark.asyncio
async def test_location_checkin_too_early(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    guruji_user: User,
    monkeypatch,
):
    monkeypatch.setattr(settings, "CHECKIN_WINDOW_BEFORE_MINUTES", 0)
    await make_appointment(db, user, guruji_user, datetime.now(timezone.utc) + timedelta(minutes=1))

    response = await client.post(
        "/checkin/location", headers=auth_headers(user), json={"qr_data": "ASHRAM_MAIN"}
    )
    assert response.status_code == 400
    assert response.json()["detail"].startswith("Too early")


@pytest.mark.asyncio
async def test_location_checkin_too_late(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    guruji_user: User,
    monkeypatch,
):
    monkeypatch.setattr(settings, "CHECKIN_WINDOW_AFTER_MINUTES", 0)
    await make_appointment(db, user, guruji_user, datetime.now(timezone.utc) - timedelta(minutes=1))

    response = await client.post(
        "/checkin/location", headers=auth_headers(user), json={"qr_data": "ASHRAM_MAIN"}
    )
    assert response.status_code == 400
    assert response.json()["detail"].startswith("Too late")


# ── Manual check-in ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_manual_checkin(
    client: AsyncClient,
    db: AsyncSession,
    coordinator_user: User,
    today_appointment: Appointment,
):
    response = await client.post(
        "/checkin/manual",
        headers=auth_headers(coordinator_user),
        json={"appointment_id": str(today_appointment.id), "notes": "Arrived with wheelchair"},
    )
    assert response.status_code == 200
    assert response.json()["queue_entry"]["notes"] == "Arrived with wheelchair"

    entry = await db.scalar(select(QueueEntry).where(QueueEntry.appointment_id == today_appointment.id))
    assert entry.status == QueueStatus.WAITING
    log = await db.scalar(select(AuditLog).where(AuditLog.action == "APPOINTMENT_CHECKED_IN"))
    assert log.user_id == coordinator_user.id
    assert log.new_data["location_id"] == settings.MANUAL_CHECKIN_DEFAULT_LOCATION


@pytest.mark.asyncio
async def test_manual_checkin_staff_only(client: AsyncClient, user: User, today_appointment: Appointment):
    response = await client.post(
        "/checkin/manual", headers=auth_headers(user), json={"appointment_id": str(today_appointment.id)}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_manual_checkin_already_queued(
    client: AsyncClient,
    db: AsyncSession,
    coordinator_user: User,
    second_user: User,
    guruji_user: User,
    queue_entry: QueueEntry,
):
    """A devotee can hold only one active queue entry."""
    appointment = await make_appointment(
        db, second_user, guruji_user, datetime.now(timezone.utc) + timedelta(minutes=10)
    )
    response = await client.post(
        "/checkin/manual",
        headers=auth_headers(coordinator_user),
        json={"appointment_id": str(appointment.id)},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_location_qr_payload(client: AsyncClient, coordinator_user: User, user: User):
    response = await client.get("/checkin/location-qr", headers=auth_headers(coordinator_user))
    assert response.status_code == 200
    assert response.json()["locationId"] == "ASHRAM_MAIN"
    assert response.json()["type"] == "ashram_checkin"

    denied = await client.get("/checkin/location-qr", headers=auth_headers(user))
    assert denied.status_code == 403
