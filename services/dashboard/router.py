"""
services/dashboard/router.py
Role dashboards: one aggregate read per screen.
"""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.appointment.service import appointment_response
from services.queue.service import get_active_entry, list_entries, people_ahead, serialize_entry
from services.remedy.service import document_responses
from shared.middleware.auth import get_current_user, require_admin, require_guruji, require_staff
from shared.models.models import (
    ACTIVE_QUEUE_STATUSES,
    BOOKABLE_STATUSES,
    Appointment,
    AppointmentStatus,
    AuditLog,
    ConsultationSession,
    Notification,
    QueueEntry,
    RemedyDocument,
    RemedyTemplate,
    User,
)
from shared.schemas.schemas import AuditLogResponse
from shared.utils.timeutils import today_bounds

router = APIRouter(prefix="/dashboard", tags=["Dashboard"])

CRITICAL_CANCELLATIONS = 10
WARNING_CANCELLATIONS = 5
WARNING_QUEUE_LENGTH = 20


def system_health(cancellations_24h: int, active_queue: int) -> str:
    if cancellations_24h > CRITICAL_CANCELLATIONS:
        return "critical"
    if cancellations_24h > WARNING_CANCELLATIONS or active_queue > WARNING_QUEUE_LENGTH:
        return "warning"
    return "good"


async def _count(db: AsyncSession, column, *criteria) -> int:
    return await db.scalar(select(func.count(column)).where(*criteria)) or 0


@router.get("/admin")
async def admin_dashboard(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    since = datetime.now(timezone.utc) - timedelta(hours=24)
    total_users = await _count(db, User.id, User.deleted_at.is_(None))
    total_appointments = await _count(db, Appointment.id)
    active_templates = await _count(db, RemedyTemplate.id, RemedyTemplate.is_active.is_(True))
    active_queue = await _count(db, QueueEntry.id, QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES))
    cancellations = await _count(
        db, Appointment.id,
        Appointment.status == AppointmentStatus.CANCELLED,
        Appointment.cancelled_at >= since,
    )

    recent = await db.execute(select(AuditLog).order_by(AuditLog.created_at.desc()).limit(10))
    return {
        "stats": {
            "total_users": total_users,
            "total_appointments": total_appointments,
            "active_remedy_templates": active_templates,
            "active_queue_entries": active_queue,
            "cancellations_24h": cancellations,
        },
        "system_health": system_health(cancellations, active_queue),
        "recent_activity": [AuditLogResponse.model_validate(a) for a in recent.scalars().all()],
    }


@router.get("/coordinator")
async def coordinator_dashboard(
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    start, end = today_bounds()
    today = (Appointment.start_time >= start, Appointment.start_time < end)
    two_hours_ago = datetime.now(timezone.utc) - timedelta(hours=2)

    return {
        "today_appointments": await _count(db, Appointment.id, *today),
        "pending_appointments": await _count(
            db, Appointment.id, *today, Appointment.status.in_(BOOKABLE_STATUSES)
        ),
        "recent_checkins": await _count(db, Appointment.id, Appointment.checked_in_at >= two_hours_ago),
        "queue": await list_entries(db),
    }


@router.get("/guruji")
async def guruji_dashboard(
    current_user: User = Depends(require_guruji),
    db: AsyncSession = Depends(get_db),
):
    start, end = today_bounds()
    mine_today = (
        Appointment.guruji_id == current_user.id,
        Appointment.start_time >= start,
        Appointment.start_time < end,
    )
    todays = await db.execute(
        select(Appointment, User.name)
        .join(User, User.id == Appointment.user_id)
        .where(*mine_today)
        .order_by(Appointment.start_time)
    )
    last_seen = func.max(ConsultationSession.start_time).label("last_seen")
    recent = await db.execute(
        select(User.id, User.name, last_seen)
        .join(ConsultationSession, ConsultationSession.devotee_id == User.id)
        .where(ConsultationSession.guruji_id == current_user.id)
        .group_by(User.id, User.name)
        .order_by(last_seen.desc())
        .limit(5)
    )

    return {
        "today_appointments": [appointment_response(a, user_name=name) for a, name in todays.all()],
        "completed_today": await _count(
            db, Appointment.id, *mine_today, Appointment.status == AppointmentStatus.COMPLETED
        ),
        "active_consultations": await _count(
            db, ConsultationSession.id,
            ConsultationSession.guruji_id == current_user.id,
            ConsultationSession.end_time.is_(None),
        ),
        "queue_length": await _count(
            db, QueueEntry.id,
            QueueEntry.guruji_id == current_user.id,
            QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
        ),
        "recent_devotees": [
            {"id": str(uid), "name": name, "last_seen": seen} for uid, name, seen in recent.all()
        ],
    }


@router.get("/user")
async def user_dashboard(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    upcoming = await db.execute(
        select(Appointment, User.name)
        .join(User, User.id == Appointment.guruji_id)
        .where(
            Appointment.user_id == current_user.id,
            Appointment.status.in_(BOOKABLE_STATUSES),
            Appointment.start_time >= datetime.now(timezone.utc),
        )
        .order_by(Appointment.start_time)
        .limit(5)
    )
    entry = await get_active_entry(db, current_user.id)
    remedies = await document_responses(db, RemedyDocument.user_id == current_user.id)

    return {
        "upcoming_appointments": [
            appointment_response(a, guruji_name=name) for a, name in upcoming.all()
        ],
        "queue_entry": (
            serialize_entry(entry, people_ahead=await people_ahead(db, entry)) if entry else None
        ),
        "recent_remedies": remedies[:5],
        "unread_notifications": await _count(
            db, Notification.id,
            Notification.user_id == current_user.id,
            Notification.is_read.is_(False),
        ),
    }


@router.get("/alerts")
async def alerts(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Errors and failed logins from the last 24 hours."""
    since = datetime.now(timezone.utc) - timedelta(hours=24)
    result = await db.execute(
        select(AuditLog)
        .where(
            AuditLog.created_at >= since,
            or_(AuditLog.action.contains("ERROR"), AuditLog.action == "FAILED_LOGIN"),
        )
        .order_by(AuditLog.created_at.desc())
        .limit(100)
    )
    items = [AuditLogResponse.model_validate(a) for a in result.scalars().all()]
    return {"count": len(items), "alerts": items}
