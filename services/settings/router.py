"""
services/settings/router.py
Admin-editable runtime settings.
"""

from collections import defaultdict

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.realtime.manager import ADMIN_ROOM, QUEUE_ROOM, SYSTEM_MESSAGE, publish
from services.settings.service import (
    DEFAULT_SETTINGS,
    check_setting_value,
    infer_setting_type,
    serialize_setting_value,
)
from shared.middleware.auth import require_admin
from shared.models.models import SettingType, SystemSetting, User
from shared.schemas.schemas import SettingResponse, SettingUpdateRequest
from shared.utils.audit import record_audit

router = APIRouter(prefix="/settings", tags=["Settings"])


def _to_response(setting: SystemSetting) -> SettingResponse:
    try:
        value = setting.typed_value
    except ValueError:
        value = setting.value
    return SettingResponse(
        key=setting.key,
        value=value,
        type=setting.type,
        category=setting.category,
        description=setting.description,
        is_public=setting.is_public,
        updated_at=setting.updated_at,
    )


@router.get("/public")
async def public_settings(db: AsyncSession = Depends(get_db)):
    """Key/value map of settings the apps may read without logging in."""
    result = await db.execute(select(SystemSetting).where(SystemSetting.is_public.is_(True)))
    return {s.key: _to_response(s).value for s in result.scalars().all()}


@router.get("")
async def list_settings(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(SystemSetting).order_by(SystemSetting.category, SystemSetting.key))
    grouped = defaultdict(list)
    for setting in result.scalars().all():
        grouped[setting.category].append(_to_response(setting))
    return dict(grouped)


@router.put("/{key}", response_model=SettingResponse)
async def upsert_setting(
    key: str,
    data: SettingUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create or update a setting. The value must fit the setting's type."""
    setting = await db.scalar(select(SystemSetting).where(SystemSetting.key == key))
    default = DEFAULT_SETTINGS.get(key)

    if default:
        setting_type = default[0]
        if data.type and SettingType(data.type) != setting_type:
            raise HTTPException(
                status_code=400,
                detail=f"Setting '{key}' is a {setting_type.value} setting",
            )
    elif data.type:
        setting_type = SettingType(data.type)
    elif setting:
        setting_type = setting.type
    else:
        setting_type = infer_setting_type(data.value)

    try:
        raw = serialize_setting_value(data.value, setting_type)
        check_setting_value(key, raw, setting_type)
    except ValueError as e:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid value for {setting_type.value} setting '{key}': {e}",
        )

    old_value = setting.value if setting else None
    if setting is None:
        setting = SystemSetting(
            key=key,
            category=data.category or (default[1] if default else "general"),
            description=data.description or (default[2] if default else None),
            is_public=data.is_public if data.is_public is not None else bool(default and default[3]),
            value=raw,
            type=setting_type,
        )
        db.add(setting)
    else:
        setting.value = raw
        setting.type = setting_type
        if data.category:
            setting.category = data.category
        if data.description is not None:
            setting.description = data.description
        if data.is_public is not None:
            setting.is_public = data.is_public
    setting.updated_by_id = current_user.id
    await db.flush()

    await record_audit(
        db, current_user, "SETTING_UPDATED", "system_setting", key,
        old_data={"value": old_value}, new_data={"value": raw, "type": setting_type.value},
        request=request,
    )
    await db.commit()

    response = _to_response(setting)
    await publish(
        SYSTEM_MESSAGE,
        [ADMIN_ROOM, QUEUE_ROOM],
        {
            "type": "setting_updated",
            "key": key,
            "value": response.value if setting.is_public else None,
        },
    )
    return response
