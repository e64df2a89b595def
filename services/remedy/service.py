"""
services/remedy/service.py
Remedy document reads with joined names, and who may see them.
"""

from typing import Optional

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from services.appointment.service import family_link
from shared.middleware.auth import is_staff
from shared.models.models import RemedyDocument, RemedyTemplate, User, UserRole
from shared.schemas.schemas import RemedyDocumentResponse


def document_query() -> Select:
    """RemedyDocument rows joined with template, devotee and prescriber names."""
    devotee = aliased(User)
    prescriber = aliased(User)
    return (
        select(RemedyDocument, RemedyTemplate.name, RemedyTemplate.type, devotee.name, prescriber.name)
        .join(RemedyTemplate, RemedyTemplate.id == RemedyDocument.template_id)
        .join(devotee, devotee.id == RemedyDocument.user_id)
        .outerjoin(prescriber, prescriber.id == RemedyDocument.prescribed_by_id)
    )


def to_response(row) -> RemedyDocumentResponse:
    doc, template_name, template_type, user_name, prescriber_name = row
    return RemedyDocumentResponse.model_validate(doc).model_copy(update={
        "template_name": template_name,
        "template_type": template_type.value if template_type else None,
        "user_name": user_name,
        "prescribed_by_name": prescriber_name,
    })


async def document_responses(db: AsyncSession, *criteria) -> list[RemedyDocumentResponse]:
    result = await db.execute(
        document_query().where(*criteria).order_by(RemedyDocument.created_at.desc())
    )
    return [to_response(row) for row in result.all()]


async def document_response(db: AsyncSession, document: RemedyDocument) -> Optional[RemedyDocumentResponse]:
    rows = await document_responses(db, RemedyDocument.id == document.id)
    return rows[0] if rows else None


async def can_view_for(db: AsyncSession, viewer: User, user_id) -> bool:
    """Own remedies, or those of an elderly user whose family contact may view them."""
    if viewer.id == user_id:
        return True
    link = await family_link(db, viewer, user_id)
    return bool(link and link.can_view_remedies)


async def can_view_document(db: AsyncSession, viewer: User, document: RemedyDocument) -> bool:
    if is_staff(viewer):
        return True
    if viewer.role == UserRole.GURUJI and document.prescribed_by_id == viewer.id:
        return True
    return await can_view_for(db, viewer, document.user_id)
