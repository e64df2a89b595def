"""
services/admin/router.py
Admin-only endpoints: user management, the audit trail, and usage reports.

ALL mutations are written to AuditLog (with IP and user agent) before returning.
"""

from datetime import date, timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.realtime.manager import ADMIN_ROOM, USER_STATUS_CHANGED, publish
from shared.middleware.auth import require_admin
from shared.models.models import (
    Appointment,
    AuditLog,
    ConsultationSession,
    QueueEntry,
    QueueStatus,
    RemedyDocument,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AdminUserCreate,
    AdminUserUpdate,
    AuditLogResponse,
    MessageResponse,
    RoleUpdateRequest,
    UserResponse,
)
from shared.utils.audit import record_audit
from shared.utils.pagination import page_response, paginate_query
from shared.utils.security import hash_password
from shared.utils.timeutils import day_bounds, local_today, utcnow

router = APIRouter(prefix="/admin", tags=["Admin"])

REPORT_DEFAULT_DAYS = 30


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _get_user_or_404(db: AsyncSession, user_id: UUID) -> User:
    user = await db.scalar(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


async def _ensure_contact_free(
    db: AsyncSession,
    email: Optional[str],
    phone: Optional[str],
    exclude_id: Optional[UUID] = None,
) -> None:
    if email:
        query = select(User.id).where(User.email == email)
        if exclude_id:
            query = query.where(User.id != exclude_id)
        if await db.scalar(query):
            raise HTTPException(status_code=409, detail="Email already registered")
    if phone:
        query = select(User.id).where(User.phone == phone)
        if exclude_id:
            query = query.where(User.id != exclude_id)
        if await db.scalar(query):
            raise HTTPException(status_code=409, detail="Phone number already registered")


def _snapshot(user: User) -> dict:
    return {
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "role": user.role.value,
        "is_active": user.is_active,
    }


# ── User Management ────────────────────────────────────────────────────────────

@router.get("/users")
async def list_users(
    search: Optional[str] = Query(None, max_length=100),
    role: Optional[UserRole] = Query(None),
    is_active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """All non-deleted accounts, newest first."""
    query = select(User).where(User.deleted_at.is_(None)).order_by(User.created_at.desc())
    if search:
        pattern = f"%{search}%"
        query = query.where(
            or_(User.name.ilike(pattern), User.email.ilike(pattern), User.phone.ilike(pattern))
        )
    if role:
        query = query.where(User.role == role)
    if is_active is not None:
        query = query.where(User.is_active.is_(is_active))

    users, total = await paginate_query(db, query, page, page_size)
    return page_response([UserResponse.model_validate(u) for u in users], total, page, page_size)


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    data: AdminUserCreate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create an account with any role (coordinators and gurujis are created here)."""
    email = data.email.lower() if data.email else None
    await _ensure_contact_free(db, email, data.phone)

    user = User(
        name=data.name,
        email=email,
        phone=data.phone,
        password_hash=hash_password(data.password),
        role=UserRole(data.role),
    )
    db.add(user)
    await db.flush()

    await record_audit(
        db, current_user, "USER_CREATED", "user", user.id,
        new_data=_snapshot(user), request=request,
    )
    await db.commit()
    return UserResponse.model_validate(user)


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return UserResponse.model_validate(await _get_user_or_404(db, user_id))


@router.put("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: UUID,
    data: AdminUserUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user_or_404(db, user_id)
    updates = data.model_dump(exclude_none=True)
    if "email" in updates:
        updates["email"] = updates["email"].lower()
    await _ensure_contact_free(db, updates.get("email"), updates.get("phone"), exclude_id=user.id)

    before = _snapshot(user)
    for field, value in updates.items():
        setattr(user, field, value)

    await record_audit(
        db, current_user, "USER_UPDATED", "user", user.id,
        old_data=before, new_data=_snapshot(user), request=request,
    )
    await db.commit()
    await db.refresh(user)
    return UserResponse.model_validate(user)


@router.patch("/users/{user_id}/role", response_model=UserResponse)
async def change_role(
    user_id: UUID,
    data: RoleUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Change a user's role. Admins cannot demote themselves."""
    user = await _get_user_or_404(db, user_id)
    new_role = UserRole(data.role)
    if user.id == current_user.id and new_role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="You cannot change your own role")

    old_role = user.role
    user.role = new_role
    await record_audit(
        db, current_user, "USER_ROLE_CHANGED", "user", user.id,
        old_data={"role": old_role.value}, new_data={"role": new_role.value},
        request=request,
    )
    await db.commit()
    return UserResponse.model_validate(user)


@router.post("/users/{user_id}/toggle-status", response_model=UserResponse)
async def toggle_user_status(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Activate or deactivate an account. Admins (including yourself) cannot be deactivated here."""
    user = await _get_user_or_404(db, user_id)
    if user.id == current_user.id:
        raise HTTPException(status_code=403, detail="You cannot change your own status")
    if user.role == UserRole.ADMIN and user.is_active:
        raise HTTPException(status_code=403, detail="Cannot deactivate admin users")

    user.is_active = not user.is_active
    await record_audit(
        db, current_user, "USER_STATUS_CHANGED", "user", user.id,
        old_data={"is_active": not user.is_active}, new_data={"is_active": user.is_active},
        request=request,
    )
    await db.commit()

    await publish(
        USER_STATUS_CHANGED,
        [ADMIN_ROOM],
        {"user_id": str(user.id), "is_active": user.is_active, "changed_by": str(current_user.id)},
    )
    return UserResponse.model_validate(user)


@router.delete("/users/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Soft delete: the row stays for history, the account can no longer sign in."""
    user = await _get_user_or_404(db, user_id)
    if user.id == current_user.id:
        raise HTTPException(status_code=403, detail="You cannot delete your own account")

    user.deleted_at = utcnow()
    user.is_active = False
    await record_audit(
        db, current_user, "USER_DELETED", "user", user.id,
        old_data=_snapshot(user), request=request,
    )
    await db.commit()
    return MessageResponse(message="User deleted")


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action e.g. USER_ROLE_CHANGED"),
    resource: Optional[str] = Query(None),
    user_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Audit trail, newest first. Entries are append-only."""
    query = select(AuditLog).order_by(AuditLog.created_at.desc())
    if action:
        query = query.where(AuditLog.action == action.upper())
    if resource:
        query = query.where(AuditLog.resource == resource)
    if user_id:
        query = query.where(AuditLog.user_id == user_id)

    logs, total = await paginate_query(db, query, page, page_size)
    return page_response([AuditLogResponse.model_validate(log) for log in logs], total, page, page_size)


# ── Reports ───────────────────────────────────────────────────────────────────

@router.get("/reports/usage")
async def usage_report(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Usage over a local-date range (default: the last 30 days).
    Appointments are bucketed by start time, everything else by creation time.
    """
    date_to = date_to or local_today()
    date_from = date_from or date_to - timedelta(days=REPORT_DEFAULT_DAYS)
    if date_from > date_to:
        raise HTTPException(status_code=400, detail="date_from must not be after date_to")
    start, end = day_bounds(date_from)[0], day_bounds(date_to)[1]

    by_status = await db.execute(
        select(Appointment.status, func.count(Appointment.id))
        .where(Appointment.start_time >= start, Appointment.start_time < end)
        .group_by(Appointment.status)
    )
    appointments = {s.value: n for s, n in by_status.all()}

    consultations = await db.execute(
        select(func.count(ConsultationSession.id), func.avg(ConsultationSession.duration))
        .where(
            ConsultationSession.end_time.is_not(None),
            ConsultationSession.start_time >= start,
            ConsultationSession.start_time < end,
        )
    )
    completed, avg_duration = consultations.one()

    remedies = await db.scalar(
        select(func.count(RemedyDocument.id))
        .where(RemedyDocument.created_at >= start, RemedyDocument.created_at < end)
    )

    by_role = await db.execute(
        select(User.role, func.count(User.id))
        .where(User.created_at >= start, User.created_at < end, User.deleted_at.is_(None))
        .group_by(User.role)
    )

    throughput = await db.execute(
        select(QueueEntry.status, func.count(QueueEntry.id))
        .where(QueueEntry.checked_in_at >= start, QueueEntry.checked_in_at < end)
        .group_by(QueueEntry.status)
    )
    queue_counts = {s.value: n for s, n in throughput.all()}

    return {
        "period": {"date_from": date_from.isoformat(), "date_to": date_to.isoformat()},
        "appointments": {"total": sum(appointments.values()), "by_status": appointments},
        "consultations": {
            "completed": completed or 0,
            "average_duration_minutes": round(float(avg_duration), 1) if avg_duration is not None else None,
        },
        "remedies_prescribed": remedies or 0,
        "new_users": {r.value: n for r, n in by_role.all()},
        "queue": {
            "checked_in": sum(queue_counts.values()),
            "completed": queue_counts.get(QueueStatus.COMPLETED.value, 0),
            "cancelled": queue_counts.get(QueueStatus.CANCELLED.value, 0),
            "by_status": queue_counts,
        },
    }
