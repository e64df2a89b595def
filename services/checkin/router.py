"""
services/checkin/router.py
Arrival at the ashram. Three ways in, one outcome: the appointment becomes CHECKED_IN
and the devotee gets a place in the guruji's queue.
  - qr:       devotee (or staff) scans the appointment's personal QR
  - location: devotee scans the QR printed at the ashram entrance, with optional GPS
  - manual:   reception checks someone in by appointment id
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from config.settings import settings
from services.appointment.service import appointment_response, get_appointment_or_404
from services.queue.service import announce_checkin, check_in, ensure_not_queued, people_ahead, queue_lock, serialize_entry
from shared.middleware.auth import get_current_user, is_staff, require_staff
from shared.models.models import BOOKABLE_STATUSES, Appointment, User
from shared.schemas.schemas import (
    CheckinResponse,
    LocationCheckinRequest,
    ManualCheckinRequest,
    QRCheckinRequest,
)
from shared.utils.geo import build_location_qr, haversine_meters, parse_location_qr
from shared.utils.timeutils import local_date_of, local_today, today_bounds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkin", tags=["Check-in"])


# ── Helpers ───────────────────────────────────────────────────

def _ensure_checkin_allowed(appointment: Appointment) -> None:
    if appointment.status not in BOOKABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Appointment is {appointment.status.value} and cannot be checked in",
        )
    if local_date_of(appointment.start_time) != local_today():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Appointment is not scheduled for today",
        )


def _ensure_within_window(appointment: Appointment, now: datetime) -> None:
    opens = appointment.start_time - timedelta(minutes=settings.CHECKIN_WINDOW_BEFORE_MINUTES)
    closes = appointment.start_time + timedelta(minutes=settings.CHECKIN_WINDOW_AFTER_MINUTES)
    if now < opens:
        minutes = int((opens - now).total_seconds() // 60) + 1
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Too early to check in. Check-in opens in {minutes} minutes",
        )
    if now > closes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Too late to check in. Please contact reception",
        )


async def _complete_checkin(
    db: AsyncSession,
    redis,
    appointment: Appointment,
    actor: User,
    method: str,
    request: Request,
    location_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> CheckinResponse:
    """Lock the guruji's queue, check in, commit, then fan out."""
    async with queue_lock(redis, appointment.guruji_id):
        entry = await check_in(db, appointment, actor, method, location_id=location_id, request=request)
        if notes:
            entry.notes = notes
        await db.commit()

    devotee = await db.get(User, appointment.user_id)
    guruji = await db.get(User, appointment.guruji_id)
    await announce_checkin(db, appointment, entry, devotee.name if devotee else None)

    logger.info(f"Appointment {appointment.id} checked in via {method}, position {entry.position}")
    return CheckinResponse(
        message=f"Checked in. You are number {entry.position} in the queue",
        appointment=appointment_response(appointment, devotee.name if devotee else None, guruji.name if guruji else None),
        queue_entry=serialize_entry(
            entry,
            user_name=devotee.name if devotee else None,
            guruji_name=guruji.name if guruji else None,
            people_ahead=await people_ahead(db, entry),
        ),
    )


# ── Routes ────────────────────────────────────────────────────

@router.post("/qr", response_model=CheckinResponse)
async def checkin_by_qr(
    data: QRCheckinRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Check in with the QR token issued at booking."""
    appointment = await db.scalar(select(Appointment).where(Appointment.qr_code == data.qr_code))
    if not appointment:
        raise HTTPException(status_code=404, detail="Invalid QR code")
    if appointment.user_id != current_user.id and not is_staff(current_user):
        raise HTTPException(status_code=403, detail="This QR code belongs to another devotee")
    _ensure_checkin_allowed(appointment)
    return await _complete_checkin(db, redis, appointment, current_user, "qr", request)


@router.post("/location", response_model=CheckinResponse)
async def checkin_by_location(
    data: LocationCheckinRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Self check-in at the ashram entrance.
    1. The scanned QR must be an ashram location code
    2. When both sides carry coordinates, the device must be within the radius
    3. The caller's appointment today must be inside the check-in window
    """
    location = parse_location_qr(data.qr_data)
    if not location:
        raise HTTPException(status_code=400, detail="Invalid location QR code")

    if (
        data.latitude is not None and data.longitude is not None
        and location.latitude is not None and location.longitude is not None
    ):
        distance = haversine_meters(data.latitude, data.longitude, location.latitude, location.longitude)
        if distance > settings.CHECKIN_RADIUS_METERS:
            raise HTTPException(
                status_code=400,
                detail=f"You are {round(distance)} meters from {location.location_name}. "
                       f"Please check in within {round(settings.CHECKIN_RADIUS_METERS)} meters",
            )

    start, end = today_bounds()
    result = await db.execute(
        select(Appointment)
        .where(
            Appointment.user_id == current_user.id,
            Appointment.status.in_(BOOKABLE_STATUSES),
            Appointment.start_time >= start,
            Appointment.start_time < end,
        )
        .order_by(Appointment.start_time)
    )
    candidates = result.scalars().all()
    if not candidates:
        raise HTTPException(status_code=404, detail="No appointment found for today")

    now = datetime.now(timezone.utc)
    appointment = min(candidates, key=lambda a: abs((a.start_time - now).total_seconds()))
    _ensure_within_window(appointment, now)
    await ensure_not_queued(db, current_user.id)

    return await _complete_checkin(
        db, redis, appointment, current_user, "location", request, location_id=location.location_id
    )


@router.post("/manual", response_model=CheckinResponse)
async def manual_checkin(
    data: ManualCheckinRequest,
    request: Request,
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Reception desk check-in by appointment id."""
    appointment = await get_appointment_or_404(db, data.appointment_id)
    _ensure_checkin_allowed(appointment)
    return await _complete_checkin(
        db, redis, appointment, current_user, "manual", request,
        location_id=data.location_id or settings.MANUAL_CHECKIN_DEFAULT_LOCATION,
        notes=data.notes,
    )


@router.get("/location-qr")
async def location_qr(
    location_id: Optional[str] = Query(None, max_length=100),
    current_user: User = Depends(require_staff),
):
    """Payload to print as the entrance QR code."""
    return build_location_qr(location_id)
