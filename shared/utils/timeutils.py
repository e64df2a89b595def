"""
shared/utils/timeutils.py
Ashram-local calendar helpers. Everything is stored in UTC; "today" means today in ASHRAM_TIMEZONE.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from config.settings import settings


def ashram_tz() -> ZoneInfo:
    return ZoneInfo(settings.ASHRAM_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_today() -> date:
    return utcnow().astimezone(ashram_tz()).date()


def local_date_of(moment: datetime) -> date:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ashram_tz()).date()


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """UTC [start, end) of a local calendar day."""
    tz = ashram_tz()
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def today_bounds() -> tuple[datetime, datetime]:
    return day_bounds(local_today())


def slot_grid(day: date) -> list[datetime]:
    """UTC start times of every bookable slot in business hours for a local day."""
    tz = ashram_tz()
    cursor = datetime.combine(day, time(hour=settings.BUSINESS_HOURS_START), tzinfo=tz)
    end = datetime.combine(day, time(hour=settings.BUSINESS_HOURS_END), tzinfo=tz)
    step = timedelta(minutes=settings.SLOT_INTERVAL_MINUTES)
    slots = []
    while cursor < end:
        slots.append(cursor.astimezone(timezone.utc))
        cursor += step
    return slots


def format_local(moment: datetime, fmt: str = "%d %b %Y, %I:%M %p") -> str:
    """Human-readable local time for notification templates and PDFs."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ashram_tz()).strftime(fmt)
