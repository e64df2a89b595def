"""
tests/test_admin.py
Tests for admin-only endpoints: user management, the audit trail and the usage report.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    AppointmentStatus,
    AuditLog,
    ConsultationSession,
    QueueEntry,
    QueueStatus,
    User,
    UserRole,
)
from shared.utils.timeutils import local_today
from tests.conftest import TEST_PASSWORD, auth_headers, make_appointment, published_events


# ── Access Control ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_user_cannot_access_admin_endpoints(client: AsyncClient, user: User):
    response = await client.get("/admin/users", headers=auth_headers(user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_coordinator_cannot_access_admin_endpoints(client: AsyncClient, coordinator_user: User):
    response = await client.get("/admin/audit-logs", headers=auth_headers(coordinator_user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unauthenticated_cannot_access_admin(client: AsyncClient):
    response = await client.get("/admin/users")
    assert response.status_code == 401


# ── User Management ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_users_with_filters(
    client: AsyncClient,
    admin_user: User,
    user: User,
    guruji_user: User,
):
    headers = auth_headers(admin_user)
    everyone = await client.get("/admin/users", headers=headers)
    assert everyone.json()["total"] == 3

    gurujis = await client.get("/admin/users", headers=headers, params={"role": "GURUJI"})
    assert [u["id"] for u in gurujis.json()["items"]] == [str(guruji_user.id)]

    found = await client.get("/admin/users", headers=headers, params={"search": "ramesh"})
    assert [u["name"] for u in found.json()["items"]] == ["Ramesh Kumar"]


@pytest.mark.asyncio
async def test_create_guruji(client: AsyncClient, db: AsyncSession, admin_user: User):
    response = await client.post(
        "/admin/users",
        headers=auth_headers(admin_user),
        json={
            "name": "Swami Prakash",
            "email": "Prakash@Example.com",
            "password": TEST_PASSWORD,
            "role": "GURUJI",
        },
    )
    assert response.status_code == 201
    data = response.json()
    assert data["role"] == "GURUJI"
    assert data["email"] == "prakash@example.com"

    log = await db.scalar(select(AuditLog).where(AuditLog.action == "USER_CREATED"))
    assert log.resource_id == data["id"]
    assert log.user_id == admin_user.id


@pytest.mark.asyncio
async def test_create_user_duplicate_email(client: AsyncClient, admin_user: User, user: User):
    response = await client.post(
        "/admin/users",
        headers=auth_headers(admin_user),
        json={"name": "Copy", "email": user.email, "password": TEST_PASSWORD},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_update_user_records_before_and_after(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    user: User,
):
    response = await client.put(
        f"/admin/users/{user.id}",
        headers=auth_headers(admin_user),
        json={"name": "Ramesh K. Sharma", "address": "Dadar, Mumbai"},
    )
    assert response.status_code == 200
    assert response.json()["name"] == "Ramesh K. Sharma"

    log = await db.scalar(select(AuditLog).where(AuditLog.action == "USER_UPDATED"))
    assert log.old_data["name"] == "Ramesh Kumar"
    assert log.new_data["name"] == "Ramesh K. Sharma"


@pytest.mark.asyncio
async def test_update_user_phone_taken(
    client: AsyncClient,
    admin_user: User,
    user: User,
    second_user: User,
):
    response = await client.put(
        f"/admin/users/{user.id}",
        headers=auth_headers(admin_user),
        json={"phone": second_user.phone},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_get_unknown_user(client: AsyncClient, admin_user: User):
    response = await client.get(
        "/admin/users/00000000-0000-0000-0000-000000000000", headers=auth_headers(admin_user)
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_change_role(client: AsyncClient, db: AsyncSession, admin_user: User, user: User):
    response = await client.patch(
        f"/admin/users/{user.id}/role", headers=auth_headers(admin_user), json={"role": "COORDINATOR"}
    )
    assert response.status_code == 200
    assert response.json()["role"] == "COORDINATOR"

    log = await db.scalar(select(AuditLog).where(AuditLog.action == "USER_ROLE_CHANGED"))
    assert log.old_data == {"role": "USER"}
    assert log.new_data == {"role": "COORDINATOR"}


@pytest.mark.asyncio
async def test_admin_cannot_demote_self(client: AsyncClient, admin_user: User):
    response = await client.patch(
        f"/admin/users/{admin_user.id}/role", headers=auth_headers(admin_user), json={"role": "USER"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_toggle_status(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    user: User,
    fake_redis,
):
    url = f"/admin/users/{user.id}/toggle-status"
    off = await client.post(url, headers=auth_headers(admin_user))
    assert off.status_code == 200
    assert off.json()["is_active"] is False
    assert "user-status-changed" in published_events(fake_redis)

    # The deactivated account can no longer call the API
    me = await client.get("/users/me", headers=auth_headers(user))
    assert me.status_code in (401, 403)

    on = await client.post(url, headers=auth_headers(admin_user))
    assert on.json()["is_active"] is True


@pytest.mark.asyncio
async def test_cannot_deactivate_admins(client: AsyncClient, db: AsyncSession, admin_user: User):
    other_admin = User(name="Second Admin", email="admin2@example.com", role=UserRole.ADMIN)
    db.add(other_admin)
    await db.commit()

    headers = auth_headers(admin_user)
    assert (await client.post(f"/admin/users/{other_admin.id}/toggle-status", headers=headers)).status_code == 403
    assert (await client.post(f"/admin/users/{admin_user.id}/toggle-status", headers=headers)).status_code == 403


@pytest.mark.asyncio
async def test_soft_delete_user(client: AsyncClient, db: AsyncSession, admin_user: User, user: User):
    response = await client.delete(f"/admin/users/{user.id}", headers=auth_headers(admin_user))
    assert response.status_code == 200

    await db.refresh(user)
    assert user.deleted_at is not None
    assert user.is_active is False

    gone = await client.get(f"/admin/users/{user.id}", headers=auth_headers(admin_user))
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_admin_cannot_delete_self(client: AsyncClient, admin_user: User):
    response = await client.delete(f"/admin/users/{admin_user.id}", headers=auth_headers(admin_user))
    assert response.status_code == 403


# ── Audit Log ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_audit_log_filters(client: AsyncClient, db: AsyncSession, admin_user: User, user: User):
    db.add_all([
        AuditLog(user_id=admin_user.id, action="USER_UPDATED", resource="user", resource_id=str(user.id)),
        AuditLog(user_id=user.id, action="APPOINTMENT_CANCELLED", resource="appointment"),
        AuditLog(user_id=user.id, action="LOGIN", resource="auth"),
    ])
    await db.commit()
    headers = auth_headers(admin_user)

    everything = await client.get("/admin/audit-logs", headers=headers)
    assert everything.json()["total"] == 3

    by_action = await client.get("/admin/audit-logs", headers=headers, params={"action": "login"})
    assert [log["action"] for log in by_action.json()["items"]] == ["LOGIN"]

    by_user = await client.get("/admin/audit-logs", headers=headers, params={"user_id": str(user.id)})
    assert by_user.json()["total"] == 2

    by_resource = await client.get("/admin/audit-logs", headers=headers, params={"resource": "appointment"})
    assert by_resource.json()["total"] == 1


# ── Reports ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_usage_report(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    user: User,
    guruji_user: User,
    queue_entry: QueueEntry,
):
    now = datetime.now(timezone.utc)
    await make_appointment(db, user, guruji_user, now, status=AppointmentStatus.CANCELLED)
    queue_entry.status = QueueStatus.COMPLETED
    db.add(ConsultationSession(
        appointment_id=queue_entry.appointment_id,
        devotee_id=queue_entry.user_id,
        guruji_id=guruji_user.id,
        start_time=now - timedelta(minutes=12),
        end_time=now,
        duration=12,
    ))
    await db.commit()

    response = await client.get("/admin/reports/usage", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["period"]["date_to"] == local_today().isoformat()
    assert data["appointments"]["total"] == 2
    assert data["appointments"]["by_status"] == {"CHECKED_IN": 1, "CANCELLED": 1}
    assert data["consultations"] == {"completed": 1, "average_duration_minutes": 12.0}
    assert data["queue"]["completed"] == 1
    assert data["new_users"]["USER"] == 2


@pytest.mark.asyncio
async def test_usage_report_rejects_inverted_range(client: AsyncClient, admin_user: User):
    response = await client.get(
        "/admin/reports/usage",
        headers=auth_headers(admin_user),
        params={"date_from": "2026-03-10", "date_to": "2026-03-01"},
    )
    assert response.status_code == 400
