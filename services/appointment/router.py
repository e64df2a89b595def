"""
services/appointment/router.py
Appointment lifecycle.
States: BOOKED → CONFIRMED → CHECKED_IN → IN_PROGRESS → COMPLETED
        with CANCELLED / NO_SHOW as exits
"""

from datetime import date, datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from config.database import get_db
from config.redis_client import get_redis
from config.settings import settings
from services.appointment.service import (
    RELEASED_STATUSES,
    announce_booking,
    appointment_duration,
    appointment_response,
    create_appointment,
    ensure_slot_free,
    get_appointment_or_404,
    load_appointment_response,
    resolve_devotee,
    resolve_guruji,
)
from services.notification.router import dispatch_notification
from services.queue.service import (
    announce_checkin,
    broadcast_queue,
    check_in,
    end_open_consultation,
    queue_lock,
    recalculate_positions,
)
from services.realtime.manager import (
    ADMIN_ROOM,
    APPOINTMENT_CANCELLED,
    APPOINTMENT_UPDATED,
    publish,
    queue_room,
    user_room,
)
from shared.middleware.auth import get_current_user, is_staff, require_admin
from shared.models.models import (
    BOOKABLE_STATUSES,
    Appointment,
    AppointmentStatus,
    ConsultationSession,
    Priority,
    QueueEntry,
    QueueStatus,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AppointmentCancelRequest,
    AppointmentCreateRequest,
    AppointmentRescheduleRequest,
    AppointmentResponse,
    AppointmentStatusUpdate,
    AppointmentUpdateRequest,
    MessageResponse,
)
from shared.utils.audit import record_audit
from shared.utils.pagination import page_response
from shared.utils.timeutils import day_bounds, format_local, slot_grid
from shared.utils.transitions import ensure_appointment_transition

router = APIRouter(prefix="/appointments", tags=["Appointments"])

TERMINAL_STATUSES = (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW)


# ── Helpers ───────────────────────────────────────────────────

def _is_owner(appointment: Appointment, user: User) -> bool:
    return appointment.user_id == user.id


def _ensure_can_view(appointment: Appointment, user: User) -> None:
    if _is_owner(appointment, user) or appointment.guruji_id == user.id or is_staff(user):
        return
    raise HTTPException(status_code=403, detail="Not authorized to view this appointment")


def _ensure_owner_or_staff(appointment: Appointment, user: User) -> None:
    if not (_is_owner(appointment, user) or is_staff(user)):
        raise HTTPException(status_code=403, detail="Not authorized to modify this appointment")


async def _active_entry_for(db: AsyncSession, appointment: Appointment) -> Optional[QueueEntry]:
    return await db.scalar(
        select(QueueEntry).where(
            QueueEntry.appointment_id == appointment.id,
            QueueEntry.status.in_((QueueStatus.WAITING, QueueStatus.IN_PROGRESS)),
        )
    )


async def _close_entry(db: AsyncSession, appointment: Appointment, target: AppointmentStatus) -> Optional[QueueEntry]:
    """Bring the queue entry in line with a terminal appointment status."""
    entry = await _active_entry_for(db, appointment)
    if not entry:
        return None
    finished = target == AppointmentStatus.COMPLETED and entry.status == QueueStatus.IN_PROGRESS
    now = datetime.now(timezone.utc)
    entry.status = QueueStatus.COMPLETED if finished else QueueStatus.CANCELLED
    entry.completed_at = now
    await end_open_consultation(db, appointment.id, now)
    await recalculate_positions(db, entry.guruji_id)
    return entry


def _appointment_rooms(appointment: Appointment) -> list[str]:
    return [user_room(appointment.user_id), ADMIN_ROOM, queue_room(appointment.guruji_id)]


# ── Booking ───────────────────────────────────────────────────

@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    data: AppointmentCreateRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Book a slot with a guruji.
    1. Resolve who it is for (self, family member, or anyone when staff)
    2. Resolve the guruji (first active one when not given)
    3. Reject starts within the conflict window of another live appointment
    4. Store BOOKED with a fresh QR token, notify both sides
    """
    devotee = await resolve_devotee(db, current_user, data.user_id)
    guruji = await resolve_guruji(db, data.guruji_id)

    appointment = await create_appointment(
        db,
        devotee=devotee,
        guruji=guruji,
        start_time=data.start_time,
        booked_by=current_user,
        reason=data.reason,
        notes=data.notes,
        priority=data.priority,
        is_recurring=data.is_recurring,
        recurring_pattern=data.recurring_pattern,
        request=request,
    )
    await db.commit()

    response = appointment_response(appointment, devotee.name, guruji.name)
    await announce_booking(response)
    return response


@router.get("")
async def list_appointments(
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    on_date: Optional[date] = Query(None, alias="date"),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    user_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Appointments visible to the caller: staff see all, gurujis and devotees their own."""
    devotee = aliased(User)
    guruji = aliased(User)
    query = (
        select(Appointment, devotee.name, guruji.name)
        .join(devotee, devotee.id == Appointment.user_id)
        .join(guruji, guruji.id == Appointment.guruji_id)
    )

    if is_staff(current_user):
        if user_id:
            query = query.where(Appointment.user_id == user_id)
    elif current_user.role == UserRole.GURUJI:
        query = query.where(Appointment.guruji_id == current_user.id)
    else:
        query = query.where(Appointment.user_id == current_user.id)

    if status_filter:
        query = query.where(Appointment.status == status_filter)
    if on_date:
        start, end = day_bounds(on_date)
        query = query.where(Appointment.start_time >= start, Appointment.start_time < end)
    if date_from:
        query = query.where(Appointment.start_time >= day_bounds(date_from)[0])
    if date_to:
        query = query.where(Appointment.start_time < day_bounds(date_to)[1])
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(
            devotee.name.ilike(pattern),
            devotee.phone.ilike(pattern),
            Appointment.reason.ilike(pattern),
        ))

    total = await db.scalar(
        select(func.count()).select_from(query.with_only_columns(Appointment.id).subquery())
    )
    result = await db.execute(
        query.order_by(Appointment.start_time.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [
        appointment_response(appt, user_name, guruji_name)
        for appt, user_name, guruji_name in result.all()
    ]
    return page_response(items, total or 0, page, page_size)


@router.get("/availability")
async def get_availability(
    on_date: date = Query(..., alias="date"),
    guruji_id: Optional[UUID] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Free and taken slots on the business-hours grid for one local day."""
    guruji = await resolve_guruji(db, guruji_id)
    start, end = day_bounds(on_date)
    result = await db.execute(
        select(Appointment.start_time).where(
            Appointment.guruji_id == guruji.id,
            Appointment.status.notin_(RELEASED_STATUSES),
            Appointment.start_time >= start,
            Appointment.start_time < end,
        )
    )
    taken = list(result.scalars().all())
    window = settings.BOOKING_CONFLICT_WINDOW_MINUTES * 60
    now = datetime.now(timezone.utc)

    booked, available = [], []
    for slot in slot_grid(on_date):
        if any(abs((slot - t).total_seconds()) <= window for t in taken):
            booked.append(slot.isoformat())
        elif slot > now:
            available.append(slot.isoformat())

    return {
        "date": on_date.isoformat(),
        "guruji_id": str(guruji.id),
        "booked_slots": booked,
        "available_slots": available,
    }


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    appointment = await get_appointment_or_404(db, appointment_id)
    _ensure_can_view(appointment, current_user)
    return await load_appointment_response(db, appointment)


@router.put("/{appointment_id}", response_model=AppointmentResponse)
async def update_appointment(
    appointment_id: UUID,
    data: AppointmentUpdateRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    appointment = await get_appointment_or_404(db, appointment_id)
    staff = is_staff(current_user)
    if not staff:
        if not _is_owner(appointment, current_user):
            raise HTTPException(status_code=403, detail="Not authorized to modify this appointment")
        if appointment.status not in BOOKABLE_STATUSES:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot edit an appointment that is {appointment.status.value}",
            )
        if data.guruji_id:
            raise HTTPException(status_code=403, detail="Only staff can reassign the guruji")

    changes = data.model_dump(exclude_unset=True)
    old = {k: str(getattr(appointment, k)) for k in changes}
    if data.guruji_id and data.guruji_id != appointment.guruji_id:
        guruji = await resolve_guruji(db, data.guruji_id)
        await ensure_slot_free(db, guruji.id, appointment.start_time, exclude_id=appointment.id)
        appointment.guruji_id = guruji.id
    if "reason" in changes:
        appointment.reason = data.reason
    if "notes" in changes:
        appointment.notes = data.notes
    if data.priority:
        appointment.priority = Priority(data.priority)

    await record_audit(
        db, current_user, "APPOINTMENT_UPDATED", "appointment", appointment.id,
        old_data=old, new_data={k: str(v) for k, v in changes.items()}, request=request,
    )
    await db.commit()

    response = await load_appointment_response(db, appointment)
    await publish(APPOINTMENT_UPDATED, _appointment_rooms(appointment), response.model_dump(mode="json"))
    return response


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: UUID,
    request: Request,
    data: Optional[AppointmentCancelRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Cancel an appointment; a waiting queue entry is dropped and the queue renumbered."""
    appointment = await get_appointment_or_404(db, appointment_id)
    _ensure_owner_or_staff(appointment, current_user)
    ensure_appointment_transition(appointment, AppointmentStatus.CANCELLED)
    reason = data.reason if data else None

    async with queue_lock(redis, appointment.guruji_id):
        old_status = appointment.status.value
        appointment.status = AppointmentStatus.CANCELLED
        appointment.cancelled_at = datetime.now(timezone.utc)
        if reason:
            appointment.notes = f"{appointment.notes}\nCancelled: {reason}" if appointment.notes else f"Cancelled: {reason}"
        entry = await _close_entry(db, appointment, AppointmentStatus.CANCELLED)

        devotee = await db.get(User, appointment.user_id)
        await dispatch_notification(
            db, devotee, "APPOINTMENT_CANCELLED",
            {"time": format_local(appointment.start_time)},
            data={"appointment_id": appointment.id, "reason": reason},
        )
        await record_audit(
            db, current_user, "APPOINTMENT_CANCELLED", "appointment", appointment.id,
            old_data={"status": old_status},
            new_data={"status": AppointmentStatus.CANCELLED.value, "reason": reason},
            request=request,
        )
        await db.commit()

    response = await load_appointment_response(db, appointment)
    await publish(APPOINTMENT_CANCELLED, _appointment_rooms(appointment), response.model_dump(mode="json"))
    if entry:
        await broadcast_queue(db, appointment.guruji_id)
    return response


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_id: UUID,
    data: AppointmentRescheduleRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    appointment = await get_appointment_or_404(db, appointment_id)
    _ensure_owner_or_staff(appointment, current_user)
    if appointment.status not in BOOKABLE_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot reschedule an appointment that is {appointment.status.value}",
        )
    await ensure_slot_free(db, appointment.guruji_id, data.start_time, exclude_id=appointment.id)

    old_start = appointment.start_time
    appointment.start_time = data.start_time
    appointment.end_time = data.start_time + await appointment_duration(db)
    appointment.status = AppointmentStatus.BOOKED

    guruji = await db.get(User, appointment.guruji_id)
    devotee = await db.get(User, appointment.user_id)
    await dispatch_notification(
        db, devotee, "APPOINTMENT_RESCHEDULED",
        {"guruji_name": guruji.name, "time": format_local(data.start_time)},
        data={"appointment_id": appointment.id},
    )
    await record_audit(
        db, current_user, "APPOINTMENT_RESCHEDULED", "appointment", appointment.id,
        old_data={"start_time": old_start.isoformat()},
        new_data={"start_time": data.start_time.isoformat()},
        request=request,
    )
    await db.commit()

    response = appointment_response(appointment, devotee.name, guruji.name)
    await publish(APPOINTMENT_UPDATED, _appointment_rooms(appointment), response.model_dump(mode="json"))
    return response


@router.patch("/{appointment_id}/status", response_model=AppointmentResponse)
async def update_appointment_status(
    appointment_id: UUID,
    data: AppointmentStatusUpdate,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Staff or the assigned guruji move an appointment along the state machine."""
    appointment = await get_appointment_or_404(db, appointment_id)
    if not (is_staff(current_user) or appointment.guruji_id == current_user.id):
        raise HTTPException(status_code=403, detail="Not authorized to change this appointment")

    target = AppointmentStatus(data.status)
    ensure_appointment_transition(appointment, target)
    old_status = appointment.status.value
    entry = None

    async with queue_lock(redis, appointment.guruji_id):
        if target == AppointmentStatus.CHECKED_IN:
            entry = await check_in(db, appointment, current_user, method="status_update", request=request)
        else:
            now = datetime.now(timezone.utc)
            appointment.status = target
            if target == AppointmentStatus.CANCELLED:
                appointment.cancelled_at = now
            elif target == AppointmentStatus.COMPLETED:
                appointment.completed_at = now
            if target in TERMINAL_STATUSES:
                entry = await _close_entry(db, appointment, target)
        if data.notes:
            appointment.notes = data.notes

        devotee = await db.get(User, appointment.user_id)
        await dispatch_notification(
            db, devotee, "APPOINTMENT_STATUS",
            {"time": format_local(appointment.start_time), "status": target.value.replace("_", " ").lower()},
            data={"appointment_id": appointment.id, "status": target.value},
        )
        await record_audit(
            db, current_user, "APPOINTMENT_STATUS_CHANGED", "appointment", appointment.id,
            old_data={"status": old_status},
            new_data={"status": target.value},
            request=request,
        )
        await db.commit()

    response = await load_appointment_response(db, appointment)
    await publish(APPOINTMENT_UPDATED, _appointment_rooms(appointment), response.model_dump(mode="json"))
    if target == AppointmentStatus.CHECKED_IN:
        await announce_checkin(db, appointment, entry, devotee.name)
    elif entry:
        await broadcast_queue(db, appointment.guruji_id)
    return response


@router.delete("/{appointment_id}", response_model=MessageResponse)
async def delete_appointment(
    appointment_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    appointment = await get_appointment_or_404(db, appointment_id)
    has_session = await db.scalar(
        select(ConsultationSession.id).where(ConsultationSession.appointment_id == appointment.id)
    )
    if has_session:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Appointment has a consultation record and cannot be deleted",
        )

    guruji_id = appointment.guruji_id
    removed = await db.execute(delete(QueueEntry).where(QueueEntry.appointment_id == appointment.id))
    await record_audit(
        db, current_user, "APPOINTMENT_DELETED", "appointment", appointment.id,
        old_data={"status": appointment.status.value, "user_id": str(appointment.user_id)},
        request=request,
    )
    await db.delete(appointment)
    if removed.rowcount:
        await recalculate_positions(db, guruji_id)
    await db.commit()

    if removed.rowcount:
        await broadcast_queue(db, guruji_id)
    return MessageResponse(message="Appointment deleted")
