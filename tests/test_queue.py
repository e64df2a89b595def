"""
tests/test_queue.py
Tests for walk-in joins, leaving, priority ordering, the staff views and queue status changes.
"""

import uuid

import pytest
from fastapi import HTTPException
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.queue.service import queue_lock, queue_lock_name
from shared.models.models import (
    Appointment,
    AppointmentStatus,
    ConsultationSession,
    Notification,
    Priority,
    QueueEntry,
    QueueStatus,
    User,
)
from tests.conftest import auth_headers, make_queue_entry, published_events


# ── Join & leave ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_join_queue(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    guruji_user: User,
    fake_redis,
):
    """A walk-in gets a CHECKED_IN appointment starting now and position 1."""
    response = await client.post(
        "/queue/join", headers=auth_headers(user), json={"reason": "Headache"}
    )
    assert response.status_code == 201
    data = response.json()
    assert data["position"] == 1
    assert data["status"] == "WAITING"
    assert data["guruji_id"] == str(guruji_user.id)
    assert data["people_ahead"] == 0

    appointment = await db.get(Appointment, uuid.UUID(data["appointment_id"]))
    assert appointment.status == AppointmentStatus.CHECKED_IN
    assert appointment.reason == "Headache"

    guruji_note = await db.scalar(select(Notification).where(Notification.user_id == guruji_user.id))
    assert guruji_note.title == "Devotee Waiting"
    assert "queue-updated" in published_events(fake_redis)
    # The lock is released after the commit
    assert queue_lock_name(guruji_user.id) not in fake_redis.store


@pytest.mark.asyncio
async def test_join_twice_rejected(client: AsyncClient, user: User, guruji_user: User):
    first = await client.post("/queue/join", headers=auth_headers(user), json={})
    assert first.status_code == 201

    second = await client.post("/queue/join", headers=auth_headers(user), json={})
    assert second.status_code == 409
    assert second.json()["detail"] == "You are already in the queue"


@pytest.mark.asyncio
async def test_only_devotees_join(client: AsyncClient, coordinator_user: User, guruji_user: User):
    response = await client.post("/queue/join", headers=auth_headers(coordinator_user), json={})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_urgent_join_goes_first(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    guruji_user: User,
    queue_entry: QueueEntry,
):
    """Priority beats arrival order: an URGENT walk-in is served before a NORMAL one already waiting."""
    response = await client.post(
        "/queue/join", headers=auth_headers(user), json={"priority": "URGENT"}
    )
    assert response.status_code == 201
    assert response.json()["position"] == 1

    await db.refresh(queue_entry)
    assert queue_entry.position == 2
    assert queue_entry.estimated_wait == 2 * settings.QUEUE_MINUTES_PER_DEVOTEE


@pytest.mark.asyncio
async def test_leave_queue(
    client: AsyncClient,
    db: AsyncSession,
    second_user: User,
    queue_entry: QueueEntry,
):
    response = await client.post("/queue/leave", headers=auth_headers(second_user))
    assert response.status_code == 200

    await db.refresh(queue_entry)
    assert queue_entry.status == QueueStatus.CANCELLED
    appointment = await db.get(Appointment, queue_entry.appointment_id)
    await db.refresh(appointment)
    assert appointment.status == AppointmentStatus.CANCELLED


@pytest.mark.asyncio
async def test_leave_renumbers_others(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    second_user: User,
    guruji_user: User,
    queue_entry: QueueEntry,
):
    behind = await make_queue_entry(db, user, guruji_user, position=2)

    await client.post("/queue/leave", headers=auth_headers(second_user))

    await db.refresh(behind)
    assert behind.position == 1
    assert behind.estimated_wait == settings.QUEUE_MINUTES_PER_DEVOTEE


@pytest.mark.asyncio
async def test_leave_when_not_queued(client: AsyncClient, user: User):
    response = await client.post("/queue/leave", headers=auth_headers(user))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_cannot_leave_during_consultation(
    client: AsyncClient,
    second_user: User,
    consultation: ConsultationSession,
):
    response = await client.post("/queue/leave", headers=auth_headers(second_user))
    assert response.status_code == 400


# ── Views ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_my_position(client: AsyncClient, second_user: User, queue_entry: QueueEntry):
    response = await client.get("/queue/me", headers=auth_headers(second_user))
    assert response.status_code == 200
    assert response.json()["id"] == str(queue_entry.id)
    assert response.json()["guruji_name"] == "Guruji Maharaj"


@pytest.mark.asyncio
async def test_my_position_when_not_queued(client: AsyncClient, user: User):
    response = await client.get("/queue/me", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json() is None


@pytest.mark.asyncio
async def test_guruji_queue_view(
    client: AsyncClient,
    guruji_user: User,
    user: User,
    queue_entry: QueueEntry,
):
    response = await client.get("/queue/guruji", headers=auth_headers(guruji_user))
    assert response.status_code == 200
    entries = response.json()
    assert len(entries) == 1
    assert entries[0]["user_name"] == "Sita Devi"
    assert entries[0]["user_phone"] == "+919812345671"

    denied = await client.get("/queue/guruji", headers=auth_headers(user))
    assert denied.status_code == 403


@pytest.mark.asyncio
async def test_staff_queue_include_all(
    client: AsyncClient,
    db: AsyncSession,
    coordinator_user: User,
    user: User,
    guruji_user: User,
    queue_entry: QueueEntry,
):
    finished = await make_queue_entry(db, user, guruji_user, position=2)
    finished.status = QueueStatus.COMPLETED
    await db.commit()
    headers = auth_headers(coordinator_user)

    active = await client.get("/queue", headers=headers)
    assert [e["id"] for e in active.json()] == [str(queue_entry.id)]

    everything = await client.get("/queue", headers=headers, params={"include_all": True})
    assert len(everything.json()) == 2

    completed = await client.get("/queue", headers=headers, params={"status": "COMPLETED"})
    assert [e["id"] for e in completed.json()] == [str(finished.id)]


@pytest.mark.asyncio
async def test_devotee_cannot_see_full_queue(client: AsyncClient, user: User):
    response = await client.get("/queue", headers=auth_headers(user))
    assert response.status_code == 403


# ── Status changes ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_status_in_progress_starts_consultation(
    client: AsyncClient,
    db: AsyncSession,
    guruji_user: User,
    queue_entry: QueueEntry,
    fake_redis,
):
    response = await client.patch(
        f"/queue/{queue_entry.id}/status",
        headers=auth_headers(guruji_user),
        json={"status": "IN_PROGRESS"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "IN_PROGRESS"

    session = await db.scalar(
        select(ConsultationSession).where(ConsultationSession.appointment_id == queue_entry.appointment_id)
    )
    assert session is not None
    assert session.end_time is None
    assert "consultation-started" in published_events(fake_redis)


@pytest.mark.asyncio
async def test_status_completed_requires_active_consultation(
    client: AsyncClient,
    admin_user: User,
    queue_entry: QueueEntry,
):
    # WAITING cannot jump straight to COMPLETED
    response = await client.patch(
        f"/queue/{queue_entry.id}/status",
        headers=auth_headers(admin_user),
        json={"status": "COMPLETED"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_status_completed_closes_consultation(
    client: AsyncClient,
    db: AsyncSession,
    guruji_user: User,
    queue_entry: QueueEntry,
    consultation: ConsultationSession,
    monkeypatch,
):
    monkeypatch.setattr(settings, "CONSULTATION_REQUIRES_REMEDY", False)
    response = await client.patch(
        f"/queue/{queue_entry.id}/status",
        headers=auth_headers(guruji_user),
        json={"status": "COMPLETED", "notes": "Rest advised"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "COMPLETED"

    await db.refresh(consultation)
    assert consultation.end_time is not None
    assert consultation.notes == "Rest advised"


@pytest.mark.asyncio
async def test_status_cancelled_notifies_devotee(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    second_user: User,
    queue_entry: QueueEntry,
):
    response = await client.patch(
        f"/queue/{queue_entry.id}/status",
        headers=auth_headers(admin_user),
        json={"status": "CANCELLED"},
    )
    assert response.status_code == 200

    note = await db.scalar(select(Notification).where(Notification.user_id == second_user.id))
    assert note.title == "Removed From Queue"


@pytest.mark.asyncio
async def test_coordinator_cannot_change_queue_status(
    client: AsyncClient,
    coordinator_user: User,
    queue_entry: QueueEntry,
):
    response = await client.patch(
        f"/queue/{queue_entry.id}/status",
        headers=auth_headers(coordinator_user),
        json={"status": "CANCELLED"},
    )
    assert response.status_code == 403


# ── Locking ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_queue_lock_busy_returns_409(fake_redis, guruji_user: User):
    fake_redis.store[queue_lock_name(guruji_user.id)] = "someone-else"
    with pytest.raises(HTTPException) as exc:
        async with queue_lock(fake_redis, guruji_user.id):
            pass
    assert exc.value.status_code == 409
    assert fake_redis.store[queue_lock_name(guruji_user.id)] == "someone-else"


@pytest.mark.asyncio
async def test_priority_walk_in_keeps_priority(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    guruji_user: User,
):
    response = await client.post("/queue/join", headers=auth_headers(user), json={"priority": "HIGH"})
    entry = await db.scalar(select(QueueEntry).where(QueueEntry.id == uuid.UUID(response.json()["id"])))
    assert entry.priority == Priority.HIGH
