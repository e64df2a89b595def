"""
services/settings/service.py
Typed reads of admin-editable settings, falling back to environment defaults.
"""

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import SettingType, SystemSetting, parse_setting_value

logger = logging.getLogger(__name__)

QUEUE_MINUTES_PER_DEVOTEE = "queue.minutes_per_devotee"
CONSULTATION_REQUIRE_REMEDY = "consultation.require_remedy"
APPOINTMENT_DURATION_MINUTES = "appointments.duration_minutes"

# key -> (type, category, description, is_public, default factory)
DEFAULT_SETTINGS = {
    QUEUE_MINUTES_PER_DEVOTEE: (
        SettingType.NUMBER, "queue", "Estimated minutes per devotee in the queue", True,
        lambda: settings.QUEUE_MINUTES_PER_DEVOTEE,
    ),
    CONSULTATION_REQUIRE_REMEDY: (
        SettingType.BOOLEAN, "consultation", "Completing a consultation requires a remedy", False,
        lambda: settings.CONSULTATION_REQUIRES_REMEDY,
    ),
    APPOINTMENT_DURATION_MINUTES: (
        SettingType.NUMBER, "appointments", "Length of one appointment in minutes", True,
        lambda: settings.APPOINTMENT_DURATION_MINUTES,
    ),
    "ashram.name": (
        SettingType.STRING, "general", "Display name of the ashram", True,
        lambda: settings.ASHRAM_NAME,
    ),
    "ashram.business_hours": (
        SettingType.JSON, "general", "Opening hours (local time)", True,
        lambda: {"start": settings.BUSINESS_HOURS_START, "end": settings.BUSINESS_HOURS_END},
    ),
}


def serialize_setting_value(value: Any, setting_type: SettingType) -> str:
    """Inverse of parse_setting_value. Raises ValueError when value does not fit the type."""
    if setting_type == SettingType.BOOLEAN:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, str):
            return "true" if parse_setting_value(value, SettingType.BOOLEAN) else "false"
        raise ValueError("Expected a boolean")
    if setting_type == SettingType.NUMBER:
        if isinstance(value, bool):
            raise ValueError("Expected a number")
        return str(parse_setting_value(str(value), SettingType.NUMBER))
    if setting_type == SettingType.JSON:
        if isinstance(value, str):
            json.loads(value)
            return value
        return json.dumps(value)
    if not isinstance(value, str):
        raise ValueError("Expected a string")
    return value


def infer_setting_type(value: Any) -> SettingType:
    if isinstance(value, bool):
        return SettingType.BOOLEAN
    if isinstance(value, (int, float)):
        return SettingType.NUMBER
    if isinstance(value, (dict, list)):
        return SettingType.JSON
    return SettingType.STRING


async def get_setting(db: AsyncSession, key: str, default: Any = None) -> Any:
    """Typed value of a setting, or the default when missing or unparsable."""
    row = await db.scalar(select(SystemSetting).where(SystemSetting.key == key))
    if row is None:
        return default
    try:
        return row.typed_value
    except ValueError:
        logger.warning(f"Setting '{key}' has an unparsable value, using default")
        return default


async def seed_default_settings(db: AsyncSession) -> int:
    existing = set((await db.execute(select(SystemSetting.key))).scalars().all())
    added = 0
    for key, (setting_type, category, description, is_public, factory) in DEFAULT_SETTINGS.items():
        if key in existing:
            continue
        db.add(SystemSetting(
            key=key,
            value=serialize_setting_value(factory(), setting_type),
            type=setting_type,
            category=category,
            description=description,
            is_public=is_public,
        ))
        added += 1
    return added


# Durations that feed queue and slot arithmetic
POSITIVE_NUMBER_SETTINGS = {QUEUE_MINUTES_PER_DEVOTEE, APPOINTMENT_DURATION_MINUTES}


def check_setting_value(key: str, raw: str, setting_type: SettingType) -> None:
    """Raise ValueError when a stored value would break the code that reads it."""
    if key in POSITIVE_NUMBER_SETTINGS and parse_setting_value(raw, setting_type) <= 0:
        raise ValueError("must be greater than zero")
