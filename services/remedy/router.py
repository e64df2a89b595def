"""
services/remedy/router.py
Remedy template catalogue, prescriptions, and the printable remedy document.
Email/SMS delivery of prescribed documents runs in the Celery beat task
tasks.notification_tasks.deliver_remedy_documents.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy import desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification.router import dispatch_notification
from services.realtime.manager import ADMIN_ROOM, REMEDY_PRESCRIBED, publish, queue_room, user_room
from services.remedy.pdf import build_remedy_pdf, remedy_filename
from services.remedy.service import (
    can_view_document,
    can_view_for,
    document_query,
    document_response,
    to_response,
)
from shared.middleware.auth import (
    get_current_user,
    is_staff,
    require_admin,
    require_guruji_or_admin,
    require_staff_or_guruji,
)
from shared.models.models import (
    ConsultationSession,
    RemedyDocument,
    RemedyTemplate,
    RemedyType,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    MessageResponse,
    PrescribeRequest,
    RemedyDocumentResponse,
    RemedyDocumentUpdate,
    RemedyTemplateCreate,
    RemedyTemplateResponse,
    RemedyTemplateUpdate,
)
from shared.utils.audit import record_audit
from shared.utils.pagination import page_response, paginate_query

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/remedies", tags=["Remedies"])


async def _get_template_or_404(db: AsyncSession, template_id: UUID) -> RemedyTemplate:
    template = await db.get(RemedyTemplate, template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Remedy template not found")
    return template


async def _get_document_or_404(db: AsyncSession, document_id: UUID) -> RemedyDocument:
    document = await db.get(RemedyDocument, document_id)
    if not document:
        raise HTTPException(status_code=404, detail="Remedy document not found")
    return document


def _ensure_prescriber_or_admin(document: RemedyDocument, user: User) -> None:
    if document.prescribed_by_id != user.id and user.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Only the prescriber can change this remedy")


# ── Templates ─────────────────────────────────────────────────

@router.get("/templates")
async def list_templates(
    remedy_type: Optional[RemedyType] = Query(None, alias="type"),
    category: Optional[str] = Query(None),
    language: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    include_inactive: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    query = select(RemedyTemplate).order_by(RemedyTemplate.category, RemedyTemplate.name)
    if not (include_inactive and is_staff(current_user)):
        query = query.where(RemedyTemplate.is_active.is_(True))
    if remedy_type:
        query = query.where(RemedyTemplate.type == remedy_type)
    if category:
        query = query.where(RemedyTemplate.category == category)
    if language:
        query = query.where(RemedyTemplate.language == language)
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(
            RemedyTemplate.name.ilike(pattern),
            RemedyTemplate.description.ilike(pattern),
            RemedyTemplate.category.ilike(pattern),
        ))

    rows, total = await paginate_query(db, query, page, page_size)
    return page_response(
        [RemedyTemplateResponse.model_validate(t) for t in rows], total, page, page_size
    )


@router.get("/templates/{template_id}", response_model=RemedyTemplateResponse)
async def get_template(
    template_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _get_template_or_404(db, template_id)


@router.post("/templates", response_model=RemedyTemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    data: RemedyTemplateCreate,
    request: Request,
    current_user: User = Depends(require_guruji_or_admin),
    db: AsyncSession = Depends(get_db),
):
    template = RemedyTemplate(
        **data.model_dump(exclude={"type"}),
        type=RemedyType(data.type),
        created_by_id=current_user.id,
    )
    db.add(template)
    await db.flush()
    await record_audit(
        db, current_user, "REMEDY_TEMPLATE_CREATED", "remedy_template", template.id,
        new_data={"name": template.name, "type": template.type.value},
        request=request,
    )
    await db.commit()
    return template


@router.put("/templates/{template_id}", response_model=RemedyTemplateResponse)
async def update_template(
    template_id: UUID,
    data: RemedyTemplateUpdate,
    request: Request,
    current_user: User = Depends(require_guruji_or_admin),
    db: AsyncSession = Depends(get_db),
):
    template = await _get_template_or_404(db, template_id)
    changes = data.model_dump(exclude_unset=True)
    if "type" in changes:
        changes["type"] = RemedyType(changes["type"])
    for field, value in changes.items():
        setattr(template, field, value)

    await record_audit(
        db, current_user, "REMEDY_TEMPLATE_UPDATED", "remedy_template", template.id,
        new_data={k: str(v) for k, v in changes.items()},
        request=request,
    )
    await db.commit()
    return template


@router.delete("/templates/{template_id}", response_model=MessageResponse)
async def deactivate_template(
    template_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Templates are never removed; prescribed documents keep pointing at them."""
    template = await _get_template_or_404(db, template_id)
    template.is_active = False
    await record_audit(
        db, current_user, "REMEDY_TEMPLATE_DEACTIVATED", "remedy_template", template.id,
        request=request,
    )
    await db.commit()
    return MessageResponse(message="Remedy template deactivated")


# ── Prescriptions ─────────────────────────────────────────────

@router.post("/prescribe", response_model=RemedyDocumentResponse, status_code=status.HTTP_201_CREATED)
async def prescribe(
    data: PrescribeRequest,
    request: Request,
    current_user: User = Depends(require_guruji_or_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Prescribe from a template.
    With consultation_session_id: the guruji running that live session.
    With user_id only: a direct prescription by a guruji or admin.
    """
    session = None
    if data.consultation_session_id:
        if current_user.role != UserRole.GURUJI:
            raise HTTPException(status_code=403, detail="Only gurujis can prescribe during a consultation")
        session = await db.get(ConsultationSession, data.consultation_session_id)
        if not session:
            raise HTTPException(status_code=404, detail="Consultation not found")
        if session.guruji_id != current_user.id:
            raise HTTPException(status_code=403, detail="This consultation belongs to another guruji")
        if not session.is_active:
            raise HTTPException(status_code=400, detail="Consultation is already completed")
        devotee = await db.get(User, session.devotee_id)
    else:
        devotee = await db.scalar(
            select(User).where(User.id == data.user_id, User.deleted_at.is_(None))
        )
        if not devotee:
            raise HTTPException(status_code=404, detail="User not found")

    template = await db.scalar(
        select(RemedyTemplate).where(
            RemedyTemplate.id == data.template_id,
            RemedyTemplate.is_active.is_(True),
        )
    )
    if not template:
        raise HTTPException(status_code=404, detail="Remedy template not found or inactive")

    document = RemedyDocument(
        consultation_session_id=session.id if session else None,
        template_id=template.id,
        user_id=devotee.id,
        prescribed_by_id=current_user.id,
        custom_instructions=data.custom_instructions,
        custom_dosage=data.custom_dosage,
        custom_duration=data.custom_duration,
    )
    db.add(document)
    await db.flush()

    await dispatch_notification(
        db, devotee, "REMEDY_PRESCRIBED",
        {"guruji_name": current_user.name, "remedy_name": template.name},
        data={"remedy_document_id": document.id, "consultation_id": session.id if session else None},
    )
    await record_audit(
        db, current_user, "REMEDY_PRESCRIBED", "remedy_document", document.id,
        new_data={"template_id": str(template.id), "user_id": str(devotee.id)},
        request=request,
    )
    await db.commit()

    response = await document_response(db, document)
    rooms = [user_room(devotee.id), ADMIN_ROOM]
    if session:
        rooms.append(queue_room(session.guruji_id))
    await publish(REMEDY_PRESCRIBED, rooms, response.model_dump(mode="json"))
    logger.info(f"Remedy {template.name} prescribed to {devotee.id} by {current_user.id}")
    return response


@router.get("/documents")
async def list_documents(
    user_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Staff see all, gurujis what they prescribed, devotees their own or a cared-for elder's."""
    query = document_query()
    if is_staff(current_user):
        if user_id:
            query = query.where(RemedyDocument.user_id == user_id)
    elif current_user.role == UserRole.GURUJI:
        query = query.where(RemedyDocument.prescribed_by_id == current_user.id)
        if user_id:
            query = query.where(RemedyDocument.user_id == user_id)
    else:
        target = user_id or current_user.id
        if not await can_view_for(db, current_user, target):
            raise HTTPException(status_code=403, detail="Not authorized to view these remedies")
        query = query.where(RemedyDocument.user_id == target)

    total = await db.scalar(
        select(func.count()).select_from(query.with_only_columns(RemedyDocument.id).subquery())
    )
    result = await db.execute(
        query.order_by(RemedyDocument.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return page_response([to_response(row) for row in result.all()], total or 0, page, page_size)


@router.get("/documents/{document_id}", response_model=RemedyDocumentResponse)
async def get_document(
    document_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    document = await _get_document_or_404(db, document_id)
    if not await can_view_document(db, current_user, document):
        raise HTTPException(status_code=403, detail="Not authorized to view this remedy")
    return await document_response(db, document)


@router.put("/documents/{document_id}", response_model=RemedyDocumentResponse)
async def update_document(
    document_id: UUID,
    data: RemedyDocumentUpdate,
    current_user: User = Depends(require_guruji_or_admin),
    db: AsyncSession = Depends(get_db),
):
    document = await _get_document_or_404(db, document_id)
    _ensure_prescriber_or_admin(document, current_user)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(document, field, value)
    await db.commit()
    return await document_response(db, document)


@router.delete("/documents/{document_id}", response_model=MessageResponse)
async def delete_document(
    document_id: UUID,
    request: Request,
    current_user: User = Depends(require_guruji_or_admin),
    db: AsyncSession = Depends(get_db),
):
    document = await _get_document_or_404(db, document_id)
    _ensure_prescriber_or_admin(document, current_user)
    await record_audit(
        db, current_user, "REMEDY_DELETED", "remedy_document", document.id,
        old_data={"template_id": str(document.template_id), "user_id": str(document.user_id)},
        request=request,
    )
    await db.delete(document)
    await db.commit()
    return MessageResponse(message="Remedy deleted")


@router.post("/documents/{document_id}/resend", response_model=MessageResponse)
async def resend_document(
    document_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Clear the delivery flags; the next delivery run sends it again."""
    document = await _get_document_or_404(db, document_id)
    if not await can_view_document(db, current_user, document):
        raise HTTPException(status_code=403, detail="Not authorized to resend this remedy")

    document.email_sent = False
    document.sms_sent = False
    document.delivered_at = None
    document.resend_requested_at = datetime.now(timezone.utc)

    template = await db.get(RemedyTemplate, document.template_id)
    devotee = await db.get(User, document.user_id)
    await dispatch_notification(
        db, devotee, "REMEDY_RESENT", {"remedy_name": template.name},
        data={"remedy_document_id": document.id},
    )
    await db.commit()
    return MessageResponse(message="Remedy will be sent again shortly")


@router.get("/documents/{document_id}/pdf")
async def download_pdf(
    document_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    document = await _get_document_or_404(db, document_id)
    if not await can_view_document(db, current_user, document):
        raise HTTPException(status_code=403, detail="Not authorized to download this remedy")

    template = await db.get(RemedyTemplate, document.template_id)
    devotee = await db.get(User, document.user_id)
    guruji = await db.get(User, document.prescribed_by_id) if document.prescribed_by_id else None
    pdf = build_remedy_pdf(document, template, devotee, guruji)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{remedy_filename(document)}"'},
    )


# ── Stats ─────────────────────────────────────────────────────

@router.get("/stats")
async def remedy_stats(
    current_user: User = Depends(require_staff_or_guruji),
    db: AsyncSession = Depends(get_db),
):
    scope = []
    if current_user.role == UserRole.GURUJI:
        scope.append(RemedyDocument.prescribed_by_id == current_user.id)

    total = await db.scalar(select(func.count(RemedyDocument.id)).where(*scope))
    delivered = await db.scalar(
        select(func.count(RemedyDocument.id)).where(*scope, RemedyDocument.delivered_at.is_not(None))
    )
    by_type = await db.execute(
        select(RemedyTemplate.type, func.count(RemedyDocument.id))
        .join(RemedyTemplate, RemedyTemplate.id == RemedyDocument.template_id)
        .where(*scope)
        .group_by(RemedyTemplate.type)
    )
    count = func.count(RemedyDocument.id).label("count")
    top = await db.execute(
        select(RemedyTemplate.id, RemedyTemplate.name, count)
        .join(RemedyTemplate, RemedyTemplate.id == RemedyDocument.template_id)
        .where(*scope)
        .group_by(RemedyTemplate.id, RemedyTemplate.name)
        .order_by(desc("count"))
        .limit(5)
    )
    active_templates = await db.scalar(
        select(func.count(RemedyTemplate.id)).where(RemedyTemplate.is_active.is_(True))
    )
    return {
        "total_prescribed": total or 0,
        "delivered": delivered or 0,
        "pending_delivery": (total or 0) - (delivered or 0),
        "active_templates": active_templates or 0,
        "by_type": {t.value: c for t, c in by_type.all()},
        "top_templates": [
            {"template_id": str(tid), "name": name, "count": c} for tid, name, c in top.all()
        ],
    }
