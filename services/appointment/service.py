"""
services/appointment/service.py
Booking rules shared by the appointment, reception and queue routers.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from fastapi import HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.router import dispatch_notification
from services.realtime.manager import (
    ADMIN_ROOM,
    APPOINTMENT_CONFIRMED,
    NEW_APPOINTMENT,
    publish,
    queue_room,
    user_room,
)
from services.settings.service import APPOINTMENT_DURATION_MINUTES, get_setting
from shared.models.models import (
    Appointment,
    AppointmentStatus,
    FamilyContact,
    Priority,
    User,
    UserRole,
)
from shared.schemas.schemas import AppointmentResponse
from shared.utils.audit import record_audit
from shared.utils.security import generate_qr_token
from shared.utils.timeutils import format_local

logger = logging.getLogger(__name__)

# Statuses that no longer hold a slot
RELEASED_STATUSES = (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW)


async def get_appointment_or_404(db: AsyncSession, appointment_id: UUID) -> Appointment:
    appointment = await db.get(Appointment, appointment_id)
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return appointment


async def resolve_guruji(db: AsyncSession, guruji_id: Optional[UUID] = None) -> User:
    """The requested guruji, or the first active one when none is given."""
    query = select(User).where(
        User.role == UserRole.GURUJI,
        User.is_active.is_(True),
        User.deleted_at.is_(None),
    )
    if guruji_id:
        guruji = await db.scalar(query.where(User.id == guruji_id))
        if not guruji:
            raise HTTPException(status_code=404, detail="Guruji not found")
        return guruji

    guruji = await db.scalar(query.order_by(User.created_at).limit(1))
    if not guruji:
        raise HTTPException(status_code=404, detail="No guruji available")
    return guruji


async def appointment_duration(db: AsyncSession) -> timedelta:
    minutes = await get_setting(
        db, APPOINTMENT_DURATION_MINUTES, settings.APPOINTMENT_DURATION_MINUTES
    )
    return timedelta(minutes=int(minutes))


async def ensure_slot_free(
    db: AsyncSession,
    guruji_id: UUID,
    start_time: datetime,
    exclude_id: Optional[UUID] = None,
) -> None:
    """409 when the guruji already has a live appointment starting within the conflict window."""
    window = timedelta(minutes=settings.BOOKING_CONFLICT_WINDOW_MINUTES)
    query = select(Appointment.id).where(
        Appointment.guruji_id == guruji_id,
        Appointment.status.notin_(RELEASED_STATUSES),
        Appointment.start_time >= start_time - window,
        Appointment.start_time <= start_time + window,
    )
    if exclude_id:
        query = query.where(Appointment.id != exclude_id)
    if await db.scalar(query.limit(1)):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This time slot is not available",
        )


async def family_link(db: AsyncSession, contact: User, elderly_user_id: UUID) -> Optional[FamilyContact]:
    """Active FamilyContact row where `contact` looks after `elderly_user_id`."""
    return await db.scalar(
        select(FamilyContact).where(
            FamilyContact.elderly_user_id == elderly_user_id,
            FamilyContact.family_contact_id == contact.id,
            FamilyContact.is_active.is_(True),
        )
    )


async def resolve_devotee(db: AsyncSession, actor: User, user_id: Optional[UUID]) -> User:
    """
    Who an appointment is for. Booking on behalf of someone else needs staff rights
    or an active family link with booking permission.
    """
    if not user_id or user_id == actor.id:
        return actor

    devotee = await db.scalar(
        select(User).where(User.id == user_id, User.deleted_at.is_(None))
    )
    if not devotee:
        raise HTTPException(status_code=404, detail="User not found")

    if actor.role in (UserRole.COORDINATOR, UserRole.ADMIN):
        return devotee

    link = await family_link(db, actor, user_id)
    if not link or not link.can_book_appointments:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not allowed to book for this user",
        )
    return devotee


async def create_appointment(
    db: AsyncSession,
    *,
    devotee: User,
    guruji: User,
    start_time: datetime,
    booked_by: User,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    priority=Priority.NORMAL,
    is_recurring: bool = False,
    recurring_pattern: Optional[dict] = None,
    request: Optional[Request] = None,
) -> Appointment:
    """
    Book a future slot. Checks the conflict window, stores a BOOKED appointment with
    a fresh QR token, notifies devotee and guruji and writes the audit row.
    The caller commits and then calls announce_booking().
    """
    await ensure_slot_free(db, guruji.id, start_time)

    appointment = Appointment(
        user_id=devotee.id,
        guruji_id=guruji.id,
        booked_by_id=booked_by.id if booked_by.id != devotee.id else None,
        start_time=start_time,
        end_time=start_time + await appointment_duration(db),
        status=AppointmentStatus.BOOKED,
        priority=Priority(priority),
        reason=reason,
        notes=notes,
        is_recurring=is_recurring,
        recurring_pattern=recurring_pattern,
        qr_code=generate_qr_token(),
    )
    db.add(appointment)
    await db.flush()

    when = format_local(start_time)
    await dispatch_notification(
        db, devotee, "APPOINTMENT_BOOKED",
        {"guruji_name": guruji.name, "time": when},
        data={"appointment_id": appointment.id},
    )
    await dispatch_notification(
        db, guruji, "APPOINTMENT_REQUEST",
        {"devotee_name": devotee.name, "time": when},
        data={"appointment_id": appointment.id},
    )
    await record_audit(
        db, booked_by, "APPOINTMENT_CREATED", "appointment", appointment.id,
        new_data={
            "user_id": str(devotee.id),
            "guruji_id": str(guruji.id),
            "start_time": start_time.isoformat(),
            "priority": appointment.priority.value,
        },
        request=request,
    )
    logger.info(f"Appointment {appointment.id} booked for {devotee.id} with {guruji.id} at {start_time}")
    return appointment


def appointment_response(
    appointment: Appointment,
    user_name: Optional[str] = None,
    guruji_name: Optional[str] = None,
) -> AppointmentResponse:
    return AppointmentResponse.model_validate(appointment).model_copy(
        update={"user_name": user_name, "guruji_name": guruji_name}
    )


async def load_appointment_response(db: AsyncSession, appointment: Appointment) -> AppointmentResponse:
    devotee = await db.get(User, appointment.user_id)
    guruji = await db.get(User, appointment.guruji_id)
    return appointment_response(
        appointment,
        user_name=devotee.name if devotee else None,
        guruji_name=guruji.name if guruji else None,
    )


async def announce_booking(response: AppointmentResponse) -> None:
    payload = response.model_dump(mode="json")
    await publish(APPOINTMENT_CONFIRMED, [user_room(response.user_id)], payload)
    await publish(NEW_APPOINTMENT, [ADMIN_ROOM, queue_room(response.guruji_id)], payload)
