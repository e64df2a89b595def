"""
services/queue/service.py
Waiting-room queue: ordering, per-guruji locking, check-in, and the consultation hand-offs
that move an entry through WAITING → IN_PROGRESS → COMPLETED.

Routes hold queue_lock() across their commit so two check-ins for the same guruji
never compute positions from the same snapshot.
"""

import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException, Request, status
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt, wait_exponential

from config.redis_client import RedisCache
from config.settings import settings
from services.appointment.service import appointment_duration
from services.notification.router import dispatch_notification
from services.realtime.manager import (
    ADMIN_ROOM,
    CHECKIN_CONFIRMED,
    CONSULTATION_COMPLETED,
    CONSULTATION_ENDED,
    CONSULTATION_READY,
    CONSULTATION_STARTED,
    PATIENT_CHECKED_IN,
    QUEUE_ROOM,
    QUEUE_UPDATED,
    YOUR_TURN_NEXT,
    publish,
    queue_room,
    user_room,
)
from services.settings.service import (
    CONSULTATION_REQUIRE_REMEDY,
    QUEUE_MINUTES_PER_DEVOTEE,
    get_setting,
)
from shared.models.models import (
    ACTIVE_QUEUE_STATUSES,
    PRIORITY_RANK,
    Appointment,
    AppointmentStatus,
    ConsultationSession,
    Priority,
    QueueEntry,
    QueueStatus,
    RemedyDocument,
    User,
)
from shared.schemas.schemas import QueueEntryResponse
from shared.utils.audit import record_audit
from shared.utils.security import generate_qr_token
from shared.utils.transitions import ensure_appointment_transition, ensure_queue_transition

logger = logging.getLogger(__name__)

LOCK_ATTEMPTS = 5


# ── Locking ───────────────────────────────────────────────────

def queue_lock_name(guruji_id) -> str:
    return f"queue_lock:{guruji_id or 'unassigned'}"


@asynccontextmanager
async def queue_lock(redis, guruji_id):
    """
    Serialize queue mutations for one guruji across API instances.
    Retries with exponential backoff; a lock that stays busy becomes 409.
    """
    cache = RedisCache(redis)
    name = queue_lock_name(guruji_id)
    owner = uuid.uuid4().hex
    try:
        await AsyncRetrying(
            stop=stop_after_attempt(LOCK_ATTEMPTS),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_result(lambda acquired: not acquired),
        )(cache.acquire_lock, name, owner)
    except RetryError:
        logger.warning(f"Queue lock {name} busy after {LOCK_ATTEMPTS} attempts")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="The queue is being updated, please try again",
        )
    try:
        yield
    finally:
        await cache.release_lock(name, owner)


@asynccontextmanager
async def queue_locks(redis, *guruji_ids):
    """Hold the locks of several queues, taken in a stable order."""
    async with AsyncExitStack() as stack:
        by_name = {queue_lock_name(g): g for g in guruji_ids}
        for name in sorted(by_name):
            await stack.enter_async_context(queue_lock(redis, by_name[name]))
        yield


# ── Ordering ──────────────────────────────────────────────────

def _order_key(entry: QueueEntry):
    arrived = entry.checked_in_at or entry.created_at or datetime.now(timezone.utc)
    return (
        0 if entry.status == QueueStatus.IN_PROGRESS else 1,
        -PRIORITY_RANK.get(entry.priority, PRIORITY_RANK[Priority.NORMAL]),
        arrived,
    )


async def minutes_per_devotee(db: AsyncSession) -> int:
    value = await get_setting(db, QUEUE_MINUTES_PER_DEVOTEE, settings.QUEUE_MINUTES_PER_DEVOTEE)
    return int(value)


def _guruji_filter(guruji_id):
    if guruji_id is None:
        return QueueEntry.guruji_id.is_(None)
    return QueueEntry.guruji_id == guruji_id


async def recalculate_positions(db: AsyncSession, guruji_id) -> list[QueueEntry]:
    """
    Renumber one guruji's active entries: IN_PROGRESS first, then priority
    (URGENT > HIGH > NORMAL > LOW), then arrival. Returns the entries in order.
    """
    await db.flush()
    result = await db.execute(
        select(QueueEntry).where(
            _guruji_filter(guruji_id),
            QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
        )
    )
    entries = sorted(result.scalars().all(), key=_order_key)
    per_devotee = await minutes_per_devotee(db)
    for i, entry in enumerate(entries):
        entry.position = i + 1
        entry.estimated_wait = (i + 1) * per_devotee
    await db.flush()
    return entries


async def get_active_entry(db: AsyncSession, user_id) -> Optional[QueueEntry]:
    return await db.scalar(
        select(QueueEntry)
        .where(QueueEntry.user_id == user_id, QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES))
        .order_by(QueueEntry.created_at.desc())
        .limit(1)
    )


async def ensure_not_queued(db: AsyncSession, user_id) -> None:
    if await get_active_entry(db, user_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="You are already in the queue",
        )


async def enqueue(
    db: AsyncSession,
    appointment: Appointment,
    notes: Optional[str] = None,
) -> QueueEntry:
    """Add a checked-in appointment at the tail of its guruji's queue, then renumber."""
    tail = await db.scalar(
        select(func.count(QueueEntry.id)).where(
            _guruji_filter(appointment.guruji_id),
            QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
        )
    )
    entry = QueueEntry(
        appointment_id=appointment.id,
        user_id=appointment.user_id,
        guruji_id=appointment.guruji_id,
        position=(tail or 0) + 1,
        status=QueueStatus.WAITING,
        priority=appointment.priority,
        checked_in_at=appointment.checked_in_at or datetime.now(timezone.utc),
        notes=notes,
    )
    db.add(entry)
    await db.flush()
    await recalculate_positions(db, appointment.guruji_id)
    return entry


async def check_in(
    db: AsyncSession,
    appointment: Appointment,
    actor: User,
    method: str,
    location_id: Optional[str] = None,
    request: Optional[Request] = None,
) -> QueueEntry:
    """Mark an appointment CHECKED_IN and enqueue it. Caller holds the queue lock and commits."""
    ensure_appointment_transition(appointment, AppointmentStatus.CHECKED_IN)
    await ensure_not_queued(db, appointment.user_id)

    old_status = appointment.status.value
    appointment.status = AppointmentStatus.CHECKED_IN
    appointment.checked_in_at = datetime.now(timezone.utc)
    entry = await enqueue(db, appointment)

    await record_audit(
        db, actor, "APPOINTMENT_CHECKED_IN", "appointment", appointment.id,
        old_data={"status": old_status},
        new_data={
            "status": AppointmentStatus.CHECKED_IN.value,
            "method": method,
            "location_id": location_id,
            "queue_position": entry.position,
        },
        request=request,
    )

    devotee = await db.get(User, appointment.user_id)
    if devotee:
        await dispatch_notification(
            db, devotee, "CHECKED_IN",
            {"position": entry.position, "wait": entry.estimated_wait},
            data={"appointment_id": appointment.id, "queue_entry_id": entry.id},
        )
    return entry


async def walk_in(
    db: AsyncSession,
    devotee: User,
    guruji: User,
    booked_by: User,
    reason: Optional[str] = None,
    priority=Priority.NORMAL,
) -> tuple[Appointment, QueueEntry]:
    """
    Same-day arrival without a prior booking: an appointment starting now,
    already CHECKED_IN, plus its queue entry. Caller holds the queue lock and commits.
    """
    await ensure_not_queued(db, devotee.id)
    now = datetime.now(timezone.utc)
    appointment = Appointment(
        user_id=devotee.id,
        guruji_id=guruji.id,
        booked_by_id=booked_by.id if booked_by.id != devotee.id else None,
        start_time=now,
        end_time=now + await appointment_duration(db),
        status=AppointmentStatus.CHECKED_IN,
        priority=Priority(priority),
        reason=reason,
        qr_code=generate_qr_token(),
        checked_in_at=now,
    )
    db.add(appointment)
    await db.flush()
    entry = await enqueue(db, appointment)
    return appointment, entry


async def cancel_entry(db: AsyncSession, entry: QueueEntry, notes: Optional[str] = None) -> None:
    """Cancel a queue entry and, where still possible, its appointment."""
    ensure_queue_transition(entry, QueueStatus.CANCELLED)
    now = datetime.now(timezone.utc)
    entry.status = QueueStatus.CANCELLED
    entry.completed_at = now
    if notes:
        entry.notes = notes

    appointment = await db.get(Appointment, entry.appointment_id)
    if appointment and appointment.status not in (
        AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW
    ):
        appointment.status = AppointmentStatus.CANCELLED
        appointment.cancelled_at = now
    await end_open_consultation(db, entry.appointment_id, now)
    await recalculate_positions(db, entry.guruji_id)


async def end_open_consultation(
    db: AsyncSession, appointment_id, now: Optional[datetime] = None
) -> Optional[ConsultationSession]:
    """Close the live session of an appointment whose queue entry was closed outside /complete."""
    session = await db.scalar(
        select(ConsultationSession).where(
            ConsultationSession.appointment_id == appointment_id,
            ConsultationSession.end_time.is_(None),
        )
    )
    if session is None:
        return None
    now = now or datetime.now(timezone.utc)
    session.end_time = now
    session.duration = round((now - session.start_time).total_seconds() / 60)
    logger.info(f"Consultation {session.id} ended by queue status change after {session.duration} min")
    return session


# ── Consultation hand-offs ────────────────────────────────────

async def get_active_consultation(db: AsyncSession, guruji_id) -> Optional[ConsultationSession]:
    return await db.scalar(
        select(ConsultationSession).where(
            ConsultationSession.guruji_id == guruji_id,
            ConsultationSession.end_time.is_(None),
        )
    )


async def start_consultation(db: AsyncSession, entry: QueueEntry, guruji: User) -> ConsultationSession:
    """Move a WAITING entry into a live consultation with this guruji."""
    if entry.status != QueueStatus.WAITING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Queue entry is {entry.status.value}, expected WAITING",
        )
    if entry.guruji_id is not None and entry.guruji_id != guruji.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This devotee is waiting for another guruji",
        )
    if await get_active_consultation(db, guruji.id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="You already have an active consultation",
        )

    appointment = await db.get(Appointment, entry.appointment_id)
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    ensure_appointment_transition(appointment, AppointmentStatus.IN_PROGRESS)

    now = datetime.now(timezone.utc)
    previous_guruji_id = entry.guruji_id
    entry.status = QueueStatus.IN_PROGRESS
    entry.started_at = now
    entry.guruji_id = guruji.id
    appointment.status = AppointmentStatus.IN_PROGRESS
    appointment.guruji_id = guruji.id

    session = ConsultationSession(
        appointment_id=appointment.id,
        devotee_id=entry.user_id,
        guruji_id=guruji.id,
        start_time=now,
    )
    db.add(session)
    await db.flush()
    await recalculate_positions(db, guruji.id)
    if previous_guruji_id != guruji.id:
        # Picked up from the unassigned queue, which now has a gap
        await recalculate_positions(db, previous_guruji_id)

    devotee = await db.get(User, entry.user_id)
    if devotee:
        await dispatch_notification(
            db, devotee, "CONSULTATION_STARTED", {"guruji_name": guruji.name},
            data={"consultation_id": session.id, "appointment_id": appointment.id},
        )
    return session


async def finish_consultation(
    db: AsyncSession,
    session: ConsultationSession,
    diagnosis: Optional[str] = None,
    notes: Optional[str] = None,
) -> tuple[QueueEntry, Optional[QueueEntry]]:
    """
    End a consultation and complete its queue entry and appointment.
    Returns (completed entry, next waiting entry or None).
    """
    if not session.is_active:
        raise HTTPException(status_code=400, detail="Consultation is already completed")

    entry = await db.scalar(
        select(QueueEntry).where(QueueEntry.appointment_id == session.appointment_id)
    )
    if not entry or entry.status != QueueStatus.IN_PROGRESS:
        raise HTTPException(status_code=400, detail="Queue entry is not in progress")

    require_remedy = await get_setting(
        db, CONSULTATION_REQUIRE_REMEDY, settings.CONSULTATION_REQUIRES_REMEDY
    )
    if require_remedy:
        remedies = await db.scalar(
            select(func.count(RemedyDocument.id)).where(
                RemedyDocument.consultation_session_id == session.id
            )
        )
        if not remedies:
            raise HTTPException(status_code=400, detail="At least one remedy must be prescribed")

    now = datetime.now(timezone.utc)
    session.end_time = now
    session.duration = round((now - session.start_time).total_seconds() / 60)
    if diagnosis is not None:
        session.diagnosis = diagnosis
    if notes is not None:
        session.notes = notes

    entry.status = QueueStatus.COMPLETED
    entry.completed_at = now
    appointment = await db.get(Appointment, session.appointment_id)
    if appointment:
        ensure_appointment_transition(appointment, AppointmentStatus.COMPLETED)
        appointment.status = AppointmentStatus.COMPLETED
        appointment.completed_at = now

    remaining = await recalculate_positions(db, session.guruji_id)
    next_entry = next((e for e in remaining if e.status == QueueStatus.WAITING), None)

    guruji = await db.get(User, session.guruji_id)
    guruji_name = guruji.name if guruji else "Guruji"
    devotee = await db.get(User, session.devotee_id)
    if devotee:
        await dispatch_notification(
            db, devotee, "CONSULTATION_COMPLETED", {"guruji_name": guruji_name},
            data={"consultation_id": session.id},
        )
    if next_entry:
        next_devotee = await db.get(User, next_entry.user_id)
        if next_devotee:
            await dispatch_notification(
                db, next_devotee, "YOUR_TURN_NEXT", {"guruji_name": guruji_name},
                data={"queue_entry_id": next_entry.id},
            )
    return entry, next_entry


# ── Reads & broadcast ─────────────────────────────────────────

async def list_entries(
    db: AsyncSession,
    guruji_id=None,
    status_filter: Optional[QueueStatus] = None,
    include_all: bool = False,
) -> list[QueueEntryResponse]:
    """Queue entries with devotee and guruji names, IN_PROGRESS first, then by position."""
    devotee = aliased(User)
    guruji = aliased(User)
    query = (
        select(QueueEntry, devotee.name, devotee.phone, guruji.name)
        .join(devotee, devotee.id == QueueEntry.user_id)
        .outerjoin(guruji, guruji.id == QueueEntry.guruji_id)
        .order_by(
            case(
                (QueueEntry.status == QueueStatus.IN_PROGRESS, 0),
                (QueueEntry.status == QueueStatus.WAITING, 1),
                else_=2,
            ),
            QueueEntry.position,
            QueueEntry.checked_in_at,
        )
    )
    if guruji_id is not None:
        query = query.where(QueueEntry.guruji_id == guruji_id)
    if status_filter is not None:
        query = query.where(QueueEntry.status == status_filter)
    elif not include_all:
        query = query.where(QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES))

    result = await db.execute(query)
    return [
        serialize_entry(entry, user_name=name, user_phone=phone, guruji_name=g_name)
        for entry, name, phone, g_name in result.all()
    ]


def serialize_entry(entry: QueueEntry, **extra) -> QueueEntryResponse:
    return QueueEntryResponse.model_validate(entry).model_copy(update=extra)


async def people_ahead(db: AsyncSession, entry: QueueEntry) -> int:
    return await db.scalar(
        select(func.count(QueueEntry.id)).where(
            _guruji_filter(entry.guruji_id),
            QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
            QueueEntry.position < entry.position,
        )
    ) or 0


def queue_rooms(guruji_id) -> list[str]:
    rooms = [QUEUE_ROOM, ADMIN_ROOM]
    if guruji_id is not None:
        rooms.append(queue_room(guruji_id))
    return rooms


async def broadcast_queue(db: AsyncSession, guruji_id) -> None:
    """Emit the current ordering of one guruji's queue. Call after commit."""
    entries = await list_entries(db, guruji_id=guruji_id)
    await publish(
        QUEUE_UPDATED,
        queue_rooms(guruji_id),
        {
            "guruji_id": str(guruji_id) if guruji_id else None,
            "entries": [e.model_dump(mode="json") for e in entries],
        },
    )


async def announce_checkin(db: AsyncSession, appointment: Appointment, entry: QueueEntry,
                           devotee_name: Optional[str]) -> None:
    """Realtime fan-out after a successful check-in commit."""
    payload = {
        "appointment_id": str(appointment.id),
        "queue_entry_id": str(entry.id),
        "user_id": str(appointment.user_id),
        "user_name": devotee_name,
        "guruji_id": str(appointment.guruji_id),
        "position": entry.position,
        "estimated_wait": entry.estimated_wait,
        "priority": entry.priority.value,
    }
    await publish(PATIENT_CHECKED_IN, queue_rooms(appointment.guruji_id), payload)
    await publish(CHECKIN_CONFIRMED, [user_room(appointment.user_id)], payload)
    await broadcast_queue(db, appointment.guruji_id)


async def announce_consultation_started(
    db: AsyncSession,
    session: ConsultationSession,
    previous_guruji_id,
) -> None:
    payload = {
        "consultation_id": str(session.id),
        "appointment_id": str(session.appointment_id),
        "devotee_id": str(session.devotee_id),
        "guruji_id": str(session.guruji_id),
        "start_time": session.start_time.isoformat(),
    }
    await publish(CONSULTATION_STARTED, queue_rooms(session.guruji_id), payload)
    await publish(CONSULTATION_READY, [user_room(session.devotee_id)], payload)
    await broadcast_queue(db, session.guruji_id)
    if previous_guruji_id != session.guruji_id:
        await broadcast_queue(db, previous_guruji_id)


async def announce_consultation_finished(
    db: AsyncSession,
    session: ConsultationSession,
    next_entry: Optional[QueueEntry],
) -> None:
    payload = {
        "consultation_id": str(session.id),
        "appointment_id": str(session.appointment_id),
        "devotee_id": str(session.devotee_id),
        "guruji_id": str(session.guruji_id),
        "duration": session.duration,
        "next_queue_entry_id": str(next_entry.id) if next_entry else None,
    }
    await publish(CONSULTATION_ENDED, queue_rooms(session.guruji_id), payload)
    await publish(CONSULTATION_COMPLETED, [user_room(session.devotee_id)], payload)
    if next_entry:
        await publish(
            YOUR_TURN_NEXT,
            [user_room(next_entry.user_id)],
            {"queue_entry_id": str(next_entry.id), "guruji_id": str(session.guruji_id)},
        )
    await broadcast_queue(db, session.guruji_id)
