"""
services/queue/router.py
Walk-in joins, the devotee's own place in line, and the live queue views for gurujis and staff.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.appointment.service import resolve_guruji
from services.notification.router import dispatch_notification
from services.queue.service import (
    announce_checkin,
    announce_consultation_finished,
    announce_consultation_started,
    broadcast_queue,
    cancel_entry,
    ensure_not_queued,
    finish_consultation,
    get_active_entry,
    list_entries,
    people_ahead,
    queue_lock,
    queue_locks,
    serialize_entry,
    start_consultation,
    walk_in,
)
from shared.middleware.auth import (
    get_current_user,
    require_guruji,
    require_staff_or_guruji,
    require_user,
)
from shared.models.models import (
    ConsultationSession,
    QueueEntry,
    QueueStatus,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    MessageResponse,
    QueueEntryResponse,
    QueueJoinRequest,
    QueueStatusUpdate,
)
from shared.utils.audit import record_audit
from shared.utils.transitions import ensure_queue_transition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["Queue"])


async def _get_entry_or_404(db: AsyncSession, entry_id: UUID) -> QueueEntry:
    entry = await db.get(QueueEntry, entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Queue entry not found")
    return entry


async def _entry_response(db: AsyncSession, entry: QueueEntry) -> QueueEntryResponse:
    devotee = await db.get(User, entry.user_id)
    guruji = await db.get(User, entry.guruji_id) if entry.guruji_id else None
    return serialize_entry(
        entry,
        user_name=devotee.name if devotee else None,
        user_phone=devotee.phone if devotee else None,
        guruji_name=guruji.name if guruji else None,
        people_ahead=await people_ahead(db, entry) if entry.is_active else None,
    )


# ── Devotee ───────────────────────────────────────────────────

@router.post("/join", response_model=QueueEntryResponse, status_code=status.HTTP_201_CREATED)
async def join_queue(
    data: QueueJoinRequest,
    request: Request,
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Walk-in join without a booking.
    Creates an appointment for now that is already CHECKED_IN, plus its queue entry.
    """
    await ensure_not_queued(db, current_user.id)
    guruji = await resolve_guruji(db, data.guruji_id)

    async with queue_lock(redis, guruji.id):
        appointment, entry = await walk_in(
            db, current_user, guruji, current_user, reason=data.reason, priority=data.priority
        )
        await dispatch_notification(
            db, guruji, "QUEUE_JOINED", {"devotee_name": current_user.name},
            data={"queue_entry_id": entry.id, "appointment_id": appointment.id},
        )
        await record_audit(
            db, current_user, "QUEUE_JOINED", "queue_entry", entry.id,
            new_data={"guruji_id": str(guruji.id), "position": entry.position},
            request=request,
        )
        await db.commit()

    await announce_checkin(db, appointment, entry, current_user.name)
    logger.info(f"User {current_user.id} joined queue of {guruji.id} at position {entry.position}")
    return await _entry_response(db, entry)


@router.post("/leave", response_model=MessageResponse)
async def leave_queue(
    request: Request,
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    entry = await get_active_entry(db, current_user.id)
    if not entry:
        raise HTTPException(status_code=404, detail="You are not in the queue")
    if entry.status == QueueStatus.IN_PROGRESS:
        raise HTTPException(status_code=400, detail="Your consultation has already started")

    async with queue_lock(redis, entry.guruji_id):
        await cancel_entry(db, entry, notes="Left the queue")
        await record_audit(
            db, current_user, "QUEUE_LEFT", "queue_entry", entry.id, request=request,
        )
        await db.commit()

    await broadcast_queue(db, entry.guruji_id)
    return MessageResponse(message="You have left the queue")


@router.get("/me", response_model=Optional[QueueEntryResponse])
async def my_queue_position(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    entry = await get_active_entry(db, current_user.id)
    if not entry:
        return None
    return await _entry_response(db, entry)


# ── Guruji / staff views ──────────────────────────────────────

@router.get("/guruji", response_model=list[QueueEntryResponse])
async def my_guruji_queue(
    current_user: User = Depends(require_guruji),
    db: AsyncSession = Depends(get_db),
):
    return await list_entries(db, guruji_id=current_user.id)


@router.get("", response_model=list[QueueEntryResponse])
async def get_queue(
    guruji_id: Optional[UUID] = Query(None),
    status_filter: Optional[QueueStatus] = Query(None, alias="status"),
    include_all: bool = Query(False),
    current_user: User = Depends(require_staff_or_guruji),
    db: AsyncSession = Depends(get_db),
):
    """Active entries by default; include_all adds completed and cancelled ones."""
    return await list_entries(
        db,
        guruji_id=guruji_id,
        status_filter=QueueStatus(status_filter) if status_filter else None,
        include_all=include_all,
    )


@router.patch("/{entry_id}/status", response_model=QueueEntryResponse)
async def update_queue_status(
    entry_id: UUID,
    data: QueueStatusUpdate,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Move an entry along WAITING → IN_PROGRESS → COMPLETED (or CANCELLED).
    IN_PROGRESS opens a consultation; COMPLETED closes the open one.
    """
    entry = await _get_entry_or_404(db, entry_id)
    is_admin = current_user.role == UserRole.ADMIN
    owns = current_user.role == UserRole.GURUJI and entry.guruji_id in (None, current_user.id)
    if not (is_admin or owns):
        raise HTTPException(status_code=403, detail="Not authorized to update this queue entry")

    target = QueueStatus(data.status)
    ensure_queue_transition(entry, target)
    old_status = entry.status.value
    previous_guruji_id = entry.guruji_id
    session = next_entry = guruji = None
    if target == QueueStatus.IN_PROGRESS:
        guruji = current_user if current_user.role == UserRole.GURUJI else await resolve_guruji(db, entry.guruji_id)

    async with queue_locks(redis, previous_guruji_id, guruji.id if guruji else previous_guruji_id):
        if target == QueueStatus.IN_PROGRESS:
            session = await start_consultation(db, entry, guruji)
        elif target == QueueStatus.COMPLETED:
            session = await db.scalar(
                select(ConsultationSession).where(
                    ConsultationSession.appointment_id == entry.appointment_id,
                    ConsultationSession.end_time.is_(None),
                )
            )
            if not session:
                raise HTTPException(status_code=400, detail="No active consultation for this entry")
            _, next_entry = await finish_consultation(db, session, notes=data.notes)
        else:
            await cancel_entry(db, entry, notes=data.notes)
            devotee = await db.get(User, entry.user_id)
            await dispatch_notification(
                db, devotee, "QUEUE_CANCELLED", data={"queue_entry_id": entry.id},
            )

        await record_audit(
            db, current_user, "QUEUE_STATUS_CHANGED", "queue_entry", entry.id,
            old_data={"status": old_status},
            new_data={"status": target.value},
            request=request,
        )
        await db.commit()

    if target == QueueStatus.IN_PROGRESS:
        await announce_consultation_started(db, session, previous_guruji_id)
    elif target == QueueStatus.COMPLETED:
        await announce_consultation_finished(db, session, next_entry)
    else:
        await broadcast_queue(db, entry.guruji_id)
    return await _entry_response(db, entry)
