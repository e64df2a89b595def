"""
services/reception/router.py
Front-desk tools for coordinators: walk-in registration, phone bookings,
emergency arrivals and devotee lookup.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.appointment.service import (
    announce_booking,
    appointment_response,
    create_appointment,
    resolve_guruji,
)
from services.notification.router import dispatch_notification
from services.queue.service import announce_checkin, queue_lock, serialize_entry, walk_in
from shared.middleware.auth import require_staff
from shared.models.models import Appointment, Priority, User, UserRole
from shared.schemas.schemas import (
    EmergencyRequest,
    PhoneBookingRequest,
    QuickRegisterRequest,
    UserResponse,
)
from shared.utils.audit import record_audit
from shared.utils.security import generate_password, hash_password
from shared.utils.timeutils import today_bounds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reception", tags=["Reception"])


# ── Helpers ───────────────────────────────────────────────────

async def _find_by_phone(db: AsyncSession, phone: str) -> Optional[User]:
    return await db.scalar(select(User).where(User.phone == phone, User.deleted_at.is_(None)))


async def _ensure_unique(db: AsyncSession, phone: Optional[str], email: Optional[str]) -> None:
    if phone and await db.scalar(select(User.id).where(User.phone == phone)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Phone number already registered")
    if email and await db.scalar(select(User.id).where(User.email == email)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")


async def _register(db: AsyncSession, name: str, phone: str, email: Optional[str] = None, **profile) -> tuple[User, str]:
    """Create a USER with a generated password. Returns (user, temporary password)."""
    await _ensure_unique(db, phone, email)
    temp_password = generate_password()
    user = User(
        name=name,
        phone=phone,
        email=email,
        password_hash=hash_password(temp_password),
        role=UserRole.USER,
        **profile,
    )
    db.add(user)
    await db.flush()
    await dispatch_notification(db, user, "ACCOUNT_CREATED", data={"registered_at": "reception"})
    return user, temp_password


async def _find_or_register(
    db: AsyncSession,
    phone: str,
    name: Optional[str],
    email: Optional[str] = None,
) -> tuple[User, bool]:
    user = await _find_by_phone(db, phone)
    if user:
        return user, False
    if not name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Name is required to register a new devotee",
        )
    user, _ = await _register(db, name, phone, email)
    return user, True


# ── Routes ────────────────────────────────────────────────────

@router.post("/register", status_code=status.HTTP_201_CREATED)
async def quick_register(
    data: QuickRegisterRequest,
    request: Request,
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Register a walk-in devotee. The temporary password is shown once to reception."""
    user, temp_password = await _register(
        db, data.name, data.phone, data.email,
        date_of_birth=data.date_of_birth,
        emergency_contact=data.emergency_contact,
    )
    await record_audit(
        db, current_user, "USER_REGISTERED_AT_RECEPTION", "user", user.id,
        new_data={"name": user.name, "phone": user.phone},
        request=request,
    )
    await db.commit()
    logger.info(f"Reception {current_user.id} registered devotee {user.id}")
    return {
        "user": UserResponse.model_validate(user),
        "temporary_password": temp_password,
    }


@router.post("/phone-booking", status_code=status.HTTP_201_CREATED)
async def phone_booking(
    data: PhoneBookingRequest,
    request: Request,
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Book on behalf of a caller, registering them first if the phone number is new."""
    devotee, created = await _find_or_register(db, data.phone, data.name, data.email)
    guruji = await resolve_guruji(db, data.guruji_id)

    appointment = await create_appointment(
        db,
        devotee=devotee,
        guruji=guruji,
        start_time=data.start_time,
        booked_by=current_user,
        reason=data.reason,
        notes="Booked by phone",
        priority=data.priority,
        request=request,
    )
    await db.commit()

    response = appointment_response(appointment, devotee.name, guruji.name)
    await announce_booking(response)
    return {"appointment": response, "user_created": created}


@router.post("/emergency", status_code=status.HTTP_201_CREATED)
async def emergency_arrival(
    data: EmergencyRequest,
    request: Request,
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Emergency arrival: checked in immediately with URGENT priority (by default),
    which places the devotee ahead of everyone still waiting.
    """
    devotee, created = await _find_or_register(db, data.phone, data.name)
    guruji = await resolve_guruji(db, data.guruji_id)
    priority = Priority(data.priority)

    async with queue_lock(redis, guruji.id):
        appointment, entry = await walk_in(
            db, devotee, guruji, current_user,
            reason=f"EMERGENCY: {data.nature}",
            priority=priority,
        )
        await dispatch_notification(
            db, guruji, "EMERGENCY_PATIENT",
            {"devotee_name": devotee.name, "nature": data.nature},
            data={"queue_entry_id": entry.id, "appointment_id": appointment.id, "priority": priority.value},
        )
        await record_audit(
            db, current_user, "EMERGENCY_QUEUE_ENTRY", "queue_entry", entry.id,
            new_data={"user_id": str(devotee.id), "nature": data.nature, "priority": priority.value},
            request=request,
        )
        await db.commit()

    await announce_checkin(db, appointment, entry, devotee.name)
    logger.warning(f"Emergency entry {entry.id} for {devotee.id} at position {entry.position}")
    return {
        "queue_entry": serialize_entry(entry, user_name=devotee.name, guruji_name=guruji.name),
        "appointment": appointment_response(appointment, devotee.name, guruji.name),
        "user_created": created,
        "is_emergency": True,
    }


@router.get("/search")
async def search_devotees(
    q: str = Query(..., min_length=2, max_length=100),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Find devotees by name, phone or email, each with today's appointment if any."""
    pattern = f"%{q}%"
    result = await db.execute(
        select(User)
        .where(
            User.deleted_at.is_(None),
            or_(User.name.ilike(pattern), User.phone.ilike(pattern), User.email.ilike(pattern)),
        )
        .order_by(User.name)
        .limit(20)
    )
    users = result.scalars().all()

    start, end = today_bounds()
    results = []
    for user in users:
        todays = await db.scalar(
            select(Appointment)
            .where(
                Appointment.user_id == user.id,
                Appointment.start_time >= start,
                Appointment.start_time < end,
            )
            .order_by(Appointment.start_time)
            .limit(1)
        )
        results.append({
            "user": UserResponse.model_validate(user),
            "today_appointment": appointment_response(todays) if todays else None,
        })
    return {"count": len(results), "results": results}
