"""
services/consultation/router.py
Consultation sessions between a guruji and the devotee at the head of the queue.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from config.database import get_db
from config.redis_client import get_redis
from services.queue.service import (
    announce_consultation_finished,
    announce_consultation_started,
    finish_consultation,
    queue_lock,
    queue_locks,
    start_consultation,
)
from services.remedy.service import document_responses
from shared.middleware.auth import get_current_user, is_staff, require_guruji, require_guruji_or_admin
from shared.models.models import ConsultationSession, QueueEntry, RemedyDocument, User, UserRole
from shared.schemas.schemas import (
    ConsultationCompleteRequest,
    ConsultationResponse,
    ConsultationStartRequest,
    ConsultationUpdateRequest,
)
from shared.utils.audit import record_audit
from shared.utils.pagination import page_response
from shared.utils.timeutils import day_bounds

router = APIRouter(prefix="/consultations", tags=["Consultations"])


async def _get_session_or_404(db: AsyncSession, consultation_id: UUID) -> ConsultationSession:
    session = await db.get(ConsultationSession, consultation_id)
    if not session:
        raise HTTPException(status_code=404, detail="Consultation not found")
    return session


async def _consultation_response(
    db: AsyncSession,
    session: ConsultationSession,
    with_remedies: bool = True,
) -> ConsultationResponse:
    devotee = await db.get(User, session.devotee_id)
    guruji = await db.get(User, session.guruji_id)
    remedies = (
        await document_responses(db, RemedyDocument.consultation_session_id == session.id)
        if with_remedies else []
    )
    return ConsultationResponse.model_validate(session).model_copy(update={
        "devotee_name": devotee.name if devotee else None,
        "guruji_name": guruji.name if guruji else None,
        "remedies": remedies,
    })


def _ensure_owner(session: ConsultationSession, user: User, allow_admin: bool = False) -> None:
    if session.guruji_id == user.id:
        return
    if allow_admin and user.role == UserRole.ADMIN:
        return
    raise HTTPException(status_code=403, detail="This consultation belongs to another guruji")


# ── Lifecycle ─────────────────────────────────────────────────

@router.post("/start", response_model=ConsultationResponse, status_code=status.HTTP_201_CREATED)
async def start(
    data: ConsultationStartRequest,
    request: Request,
    current_user: User = Depends(require_guruji),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Call the next devotee in. The entry goes IN_PROGRESS and a session opens."""
    entry = await db.get(QueueEntry, data.queue_entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Queue entry not found")

    previous_guruji_id = entry.guruji_id
    async with queue_locks(redis, previous_guruji_id, current_user.id):
        session = await start_consultation(db, entry, current_user)
        await record_audit(
            db, current_user, "CONSULTATION_STARTED", "consultation", session.id,
            new_data={"queue_entry_id": str(entry.id), "devotee_id": str(entry.user_id)},
            request=request,
        )
        await db.commit()

    await announce_consultation_started(db, session, previous_guruji_id)
    return await _consultation_response(db, session, with_remedies=False)


@router.post("/{consultation_id}/complete", response_model=ConsultationResponse)
async def complete(
    consultation_id: UUID,
    request: Request,
    data: Optional[ConsultationCompleteRequest] = None,
    current_user: User = Depends(require_guruji_or_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Close the session, complete the entry and appointment, and tell the next
    devotee in line that they are up.
    """
    session = await _get_session_or_404(db, consultation_id)
    _ensure_owner(session, current_user, allow_admin=True)

    async with queue_lock(redis, session.guruji_id):
        _, next_entry = await finish_consultation(
            db, session,
            diagnosis=data.diagnosis if data else None,
            notes=data.notes if data else None,
        )
        await record_audit(
            db, current_user, "CONSULTATION_COMPLETED", "consultation", session.id,
            new_data={"duration": session.duration},
            request=request,
        )
        await db.commit()

    await announce_consultation_finished(db, session, next_entry)
    return await _consultation_response(db, session)


# ── Reads & notes ─────────────────────────────────────────────

@router.get("")
async def list_consultations(
    active_only: bool = Query(False),
    guruji_id: Optional[UUID] = Query(None),
    devotee_id: Optional[UUID] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    devotee = aliased(User)
    guruji = aliased(User)
    query = (
        select(ConsultationSession, devotee.name, guruji.name)
        .join(devotee, devotee.id == ConsultationSession.devotee_id)
        .join(guruji, guruji.id == ConsultationSession.guruji_id)
    )

    if current_user.role == UserRole.GURUJI:
        query = query.where(ConsultationSession.guruji_id == current_user.id)
    elif not is_staff(current_user):
        query = query.where(ConsultationSession.devotee_id == current_user.id)

    if active_only:
        query = query.where(ConsultationSession.end_time.is_(None))
    if guruji_id:
        query = query.where(ConsultationSession.guruji_id == guruji_id)
    if devotee_id:
        query = query.where(ConsultationSession.devotee_id == devotee_id)
    if date_from:
        query = query.where(ConsultationSession.start_time >= day_bounds(date_from)[0])
    if date_to:
        query = query.where(ConsultationSession.start_time < day_bounds(date_to)[1])

    total = await db.scalar(
        select(func.count()).select_from(query.with_only_columns(ConsultationSession.id).subquery())
    )
    result = await db.execute(
        query.order_by(ConsultationSession.start_time.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [
        ConsultationResponse.model_validate(s).model_copy(
            update={"devotee_name": d_name, "guruji_name": g_name}
        )
        for s, d_name, g_name in result.all()
    ]
    return page_response(items, total or 0, page, page_size)


@router.get("/{consultation_id}", response_model=ConsultationResponse)
async def get_consultation(
    consultation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    session = await _get_session_or_404(db, consultation_id)
    if current_user.id not in (session.devotee_id, session.guruji_id) and not is_staff(current_user):
        raise HTTPException(status_code=403, detail="Not authorized to view this consultation")
    return await _consultation_response(db, session)


@router.patch("/{consultation_id}", response_model=ConsultationResponse)
async def update_consultation(
    consultation_id: UUID,
    data: ConsultationUpdateRequest,
    current_user: User = Depends(require_guruji),
    db: AsyncSession = Depends(get_db),
):
    """Clinical notes; editable by the guruji who ran the session."""
    session = await _get_session_or_404(db, consultation_id)
    _ensure_owner(session, current_user)

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(session, field, value)
    await db.commit()
    return await _consultation_response(db, session)
