"""
tests/test_settings.py
Tests for admin-editable settings and their typed reads.
"""

import json

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.settings.service import (
    DEFAULT_SETTINGS,
    get_setting,
    infer_setting_type,
    seed_default_settings,
    serialize_setting_value,
)
from shared.models.models import AuditLog, SettingType, SystemSetting, User
from tests.conftest import auth_headers, published_events


# ── Value handling ─────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "value, setting_type, expected",
    [
        (True, SettingType.BOOLEAN, "true"),
        ("off", SettingType.BOOLEAN, "false"),
        (15, SettingType.NUMBER, "15"),
        ("7.5", SettingType.NUMBER, "7.5"),
        ({"start": 9}, SettingType.JSON, '{"start": 9}'),
        ("Shanti Ashram", SettingType.STRING, "Shanti Ashram"),
    ],
)
def test_serialize_setting_value(value, setting_type, expected):
    assert serialize_setting_value(value, setting_type) == expected


@pytest.mark.parametrize(
    "value, setting_type",
    [(5, SettingType.BOOLEAN), ("maybe", SettingType.BOOLEAN), (True, SettingType.NUMBER),
     ("ten", SettingType.NUMBER), ("{oops", SettingType.JSON), (12, SettingType.STRING)],
)
def test_serialize_rejects_mismatched_values(value, setting_type):
    with pytest.raises(ValueError):
        serialize_setting_value(value, setting_type)


def test_infer_setting_type():
    assert infer_setting_type(False) == SettingType.BOOLEAN
    assert infer_setting_type(3) == SettingType.NUMBER
    assert infer_setting_type([1]) == SettingType.JSON
    assert infer_setting_type("x") == SettingType.STRING


@pytest.mark.asyncio
async def test_get_setting_typed_and_fallback(db: AsyncSession):
    db.add_all([
        SystemSetting(key="queue.minutes_per_devotee", value="20", type=SettingType.NUMBER, category="queue"),
        SystemSetting(key="broken.flag", value="perhaps", type=SettingType.BOOLEAN, category="general"),
    ])
    await db.commit()

    assert await get_setting(db, "queue.minutes_per_devotee", 15) == 20
    assert await get_setting(db, "broken.flag", True) is True
    assert await get_setting(db, "missing.key", "fallback") == "fallback"


@pytest.mark.asyncio
async def test_seed_default_settings_is_idempotent(db: AsyncSession):
    assert await seed_default_settings(db) == len(DEFAULT_SETTINGS)
    await db.commit()
    assert await seed_default_settings(db) == 0

    hours = await get_setting(db, "ashram.business_hours")
    assert set(hours) == {"start", "end"}


# ── Endpoints ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_upsert_known_setting(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    fake_redis,
):
    response = await client.put(
        "/settings/queue.minutes_per_devotee",
        headers=auth_headers(admin_user),
        json={"value": 20},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["value"] == 20
    assert data["type"] == "NUMBER"
    assert data["category"] == "queue"
    assert data["is_public"] is True

    log = await db.scalar(select(AuditLog).where(AuditLog.action == "SETTING_UPDATED"))
    assert log.resource_id == "queue.minutes_per_devotee"
    assert log.old_data == {"value": None}

    channel, message = fake_redis.published[-1]
    frame = json.loads(message)
    assert frame["event"] == "system-message"
    assert frame["data"] == {"type": "setting_updated", "key": "queue.minutes_per_devotee", "value": 20}


@pytest.mark.asyncio
async def test_update_existing_setting_keeps_type(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
):
    db.add(SystemSetting(
        key="consultation.require_remedy", value="true", type=SettingType.BOOLEAN, category="consultation"
    ))
    await db.commit()

    response = await client.put(
        "/settings/consultation.require_remedy", headers=auth_headers(admin_user), json={"value": "no"}
    )
    assert response.status_code == 200
    assert response.json()["value"] is False


@pytest.mark.asyncio
async def test_private_setting_value_not_broadcast(client: AsyncClient, admin_user: User, fake_redis):
    await client.put(
        "/settings/consultation.require_remedy", headers=auth_headers(admin_user), json={"value": False}
    )
    frame = json.loads(fake_redis.published[-1][1])
    assert frame["data"]["value"] is None


@pytest.mark.asyncio
async def test_upsert_rejects_wrong_type(client: AsyncClient, admin_user: User):
    response = await client.put(
        "/settings/queue.minutes_per_devotee", headers=auth_headers(admin_user), json={"value": "soon"}
    )
    assert response.status_code == 400
    assert "NUMBER" in response.json()["detail"]


@pytest.mark.asyncio
async def test_known_setting_type_cannot_be_overridden(
    client: AsyncClient, user: User, guruji_user: User, admin_user: User,
):
    response = await client.put(
        "/settings/queue.minutes_per_devotee",
        headers=auth_headers(admin_user),
        json={"value": "fifteen", "type": "STRING"},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Setting 'queue.minutes_per_devotee' is a NUMBER setting"

    # The queue still works on the default
    joined = await client.post("/queue/join", headers=auth_headers(user), json={})
    assert joined.status_code == 201


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["queue.minutes_per_devotee", "appointments.duration_minutes"])
@pytest.mark.parametrize("value", [0, -5])
async def test_minute_settings_must_be_positive(client: AsyncClient, admin_user: User, key, value):
    response = await client.put(f"/settings/{key}", headers=auth_headers(admin_user), json={"value": value})
    assert response.status_code == 400
    assert "greater than zero" in response.json()["detail"]


@pytest.mark.asyncio
async def test_new_setting_type_is_inferred(client: AsyncClient, admin_user: User):
    response = await client.put(
        "/settings/festival.closures",
        headers=auth_headers(admin_user),
        json={"value": ["2026-11-01"], "category": "calendar", "is_public": True},
    )
    assert response.status_code == 200
    assert response.json()["type"] == "JSON"
    assert response.json()["category"] == "calendar"


@pytest.mark.asyncio
async def test_list_settings_grouped(client: AsyncClient, db: AsyncSession, admin_user: User):
    await seed_default_settings(db)
    await db.commit()

    response = await client.get("/settings", headers=auth_headers(admin_user))
    assert response.status_code == 200
    groups = response.json()
    assert {"queue", "consultation", "appointments", "general"} <= set(groups)
    assert [s["key"] for s in groups["queue"]] == ["queue.minutes_per_devotee"]


@pytest.mark.asyncio
async def test_public_settings_without_login(client: AsyncClient, db: AsyncSession):
    await seed_default_settings(db)
    await db.commit()

    response = await client.get("/settings/public")
    assert response.status_code == 200
    data = response.json()
    assert "ashram.name" in data
    assert "consultation.require_remedy" not in data


@pytest.mark.asyncio
async def test_settings_admin_only(client: AsyncClient, coordinator_user: User):
    headers = auth_headers(coordinator_user)
    assert (await client.get("/settings", headers=headers)).status_code == 403
    assert (await client.put("/settings/ashram.name", headers=headers, json={"value": "x"})).status_code == 403
