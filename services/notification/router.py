"""
services/notification/router.py
In-app notifications plus the dispatcher every other service uses.
Push, SMS and email go out through Celery workers (tasks/notification_tasks.py);
the in-app copy is pushed over the realtime socket.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.notification.templates import TEMPLATES, render
from services.realtime.manager import NOTIFICATION, NOTIFICATION_READ, publish, user_room
from shared.middleware.auth import get_current_user, require_admin, require_staff
from shared.models.models import FamilyContact, Notification, NotificationType, User
from shared.schemas.schemas import MessageResponse, NotificationResponse, NotificationSendRequest
from shared.utils.audit import record_audit
from shared.utils.pagination import page_response, paginate_query
from tasks.notification_tasks import fan_out

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ── Dispatcher ────────────────────────────────────────────────

async def _family_recipients(db: AsyncSession, user_id) -> list[User]:
    result = await db.execute(
        select(User)
        .join(FamilyContact, FamilyContact.family_contact_id == User.id)
        .where(
            FamilyContact.elderly_user_id == user_id,
            FamilyContact.is_active.is_(True),
            FamilyContact.can_receive_updates.is_(True),
            User.is_active.is_(True),
        )
    )
    return list(result.scalars().all())


def _queue_channels(notif: Notification, recipient: User, template: dict, template_vars: dict) -> None:
    try:
        fan_out(notif, recipient, template, template_vars)
    except Exception as e:
        # Broker unreachable; the in-app copy is already stored
        logger.warning(f"Could not queue channel delivery for notification {notif.id}: {e}")


async def dispatch_notification(
    db: AsyncSession,
    user: User,
    key: str,
    template_vars: Optional[dict] = None,
    data: Optional[dict] = None,
    *,
    title: Optional[str] = None,
    body: Optional[str] = None,
    notification_type: Optional[NotificationType] = None,
    notify_family: Optional[bool] = None,
) -> Notification:
    """
    Central notification dispatcher.
    1. Save to DB (in-app), plus copies for family contacts when the template asks for it
    2. Once the caller commits, queue push / SMS / email for the configured channels
    3. Then emit a `notification` event to each recipient's room
    """
    template = TEMPLATES.get(key, {})
    vars_ = {"ashram_name": settings.ASHRAM_NAME, **(template_vars or {})}
    title = title or render(template.get("title", "Notification"), **vars_)
    body = body or render(template.get("body", ""), **vars_)
    notif_type = notification_type or template.get("type", NotificationType.SYSTEM)
    payload = jsonable_encoder(data) if data else None

    notif = Notification(user_id=user.id, type=notif_type, title=title, body=body, data=payload)
    db.add(notif)
    deliveries = [(notif, user)]

    if notify_family if notify_family is not None else template.get("family", False):
        for relative in await _family_recipients(db, user.id):
            copy = Notification(
                user_id=relative.id,
                type=notif_type,
                title=f"{user.name}: {title}",
                body=body,
                data={**(payload or {}), "elderly_user_id": str(user.id)},
            )
            db.add(copy)
            deliveries.append((copy, relative))

    await db.flush()

    async def deliver() -> None:
        for item, recipient in deliveries:
            _queue_channels(item, recipient, template, vars_)
            await publish(
                NOTIFICATION,
                [user_room(recipient.id)],
                NotificationResponse.model_validate(item).model_dump(mode="json"),
            )

    # Workers load the row by id, so nothing leaves before the commit
    db.run_after_commit(deliver)
    return notif


async def _get_own_notification(db: AsyncSession, notification_id: UUID, user: User) -> Notification:
    notif = await db.scalar(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user.id,
        )
    )
    if not notif:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notif


# ── REST Endpoints ────────────────────────────────────────────

@router.get("")
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications."""
    query = (
        select(Notification)
        .where(Notification.user_id == current_user.id)
        .order_by(Notification.created_at.desc())
    )
    if unread_only:
        query = query.where(Notification.is_read.is_(False))

    rows, total = await paginate_query(db, query, page, page_size)
    return page_response(
        [NotificationResponse.model_validate(n) for n in rows], total, page, page_size
    )


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id,
            Notification.is_read.is_(False),
        )
    )
    return {"unread_count": count or 0}


@router.get("/stats")
async def notification_stats(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Platform-wide notification volume."""
    total = await db.scalar(select(func.count(Notification.id)))
    unread = await db.scalar(
        select(func.count(Notification.id)).where(Notification.is_read.is_(False))
    )
    since = datetime.now(timezone.utc) - timedelta(hours=24)
    last_24h = await db.scalar(
        select(func.count(Notification.id)).where(Notification.created_at >= since)
    )
    by_type = await db.execute(
        select(Notification.type, func.count(Notification.id)).group_by(Notification.type)
    )
    return {
        "total": total or 0,
        "unread": unread or 0,
        "last_24h": last_24h or 0,
        "by_type": {t.value: c for t, c in by_type.all()},
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_notification(
    data: NotificationSendRequest,
    request: Request,
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Staff broadcast to explicit users or to every active user of a role."""
    query = select(User).where(User.is_active.is_(True), User.deleted_at.is_(None))
    if data.user_ids:
        query = query.where(User.id.in_(data.user_ids))
    else:
        query = query.where(User.role == data.role)
    recipients = (await db.execute(query)).scalars().all()
    if not recipients:
        raise HTTPException(status_code=404, detail="No matching recipients")

    for recipient in recipients:
        await dispatch_notification(
            db,
            recipient,
            "BROADCAST",
            data=data.data,
            title=data.title,
            body=data.body,
            notification_type=NotificationType(data.type),
        )

    await record_audit(
        db, current_user, "NOTIFICATION_SENT", "notification",
        new_data={"title": data.title, "recipients": len(recipients), "type": data.type},
        request=request,
    )
    await db.commit()
    return {"sent": len(recipients)}


@router.get("/{notification_id}", response_model=NotificationResponse)
async def get_notification(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _get_own_notification(db, notification_id, current_user)


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notif = await _get_own_notification(db, notification_id, current_user)
    if not notif.is_read:
        notif.is_read = True
        notif.read_at = datetime.now(timezone.utc)
    await db.commit()

    await publish(
        NOTIFICATION_READ,
        [user_room(current_user.id)],
        {"notification_id": str(notif.id)},
    )
    return MessageResponse(message="Marked as read")


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()

    await publish(NOTIFICATION_READ, [user_room(current_user.id)], {"all": True})
    return MessageResponse(message=f"{result.rowcount} notifications marked as read")


@router.delete("/{notification_id}", response_model=MessageResponse)
async def delete_notification(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notif = await _get_own_notification(db, notification_id, current_user)
    await db.execute(delete(Notification).where(Notification.id == notif.id))
    await db.commit()
    return MessageResponse(message="Notification deleted")
