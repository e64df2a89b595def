"""
services/user/router.py
User profile, guruji directory, and family contacts (relatives who book for,
follow, and receive updates about an elderly devotee).
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import (
    ACTIVE_QUEUE_STATUSES,
    ConsultationSession,
    FamilyContact,
    QueueEntry,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    FamilyContactCreate,
    FamilyContactResponse,
    FamilyContactUpdate,
    MessageResponse,
    UserResponse,
    UserUpdateRequest,
)

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the currently authenticated user's profile."""
    return UserResponse.model_validate(current_user)


@router.put("/me", response_model=UserResponse)
async def update_me(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Update profile fields. Only non-None fields in the request body are updated.
    """
    updates = data.model_dump(exclude_none=True)
    if not updates:
        return UserResponse.model_validate(current_user)

    # Phone uniqueness check
    if "phone" in updates:
        existing = await db.scalar(
            select(User.id).where(User.phone == updates["phone"], User.id != current_user.id)
        )
        if existing:
            raise HTTPException(status_code=409, detail="Phone number already in use")

    for field, value in updates.items():
        setattr(current_user, field, value)

    await db.commit()
    await db.refresh(current_user)
    return UserResponse.model_validate(current_user)


@router.get("/gurujis")
async def list_gurujis(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Active gurujis with their live queue length and whether they are in a consultation."""
    queue_length = (
        select(func.count(QueueEntry.id))
        .where(QueueEntry.guruji_id == User.id, QueueEntry.status.in_(ACTIVE_QUEUE_STATUSES))
        .correlate(User)
        .scalar_subquery()
    )
    in_session = (
        select(func.count(ConsultationSession.id))
        .where(ConsultationSession.guruji_id == User.id, ConsultationSession.end_time.is_(None))
        .correlate(User)
        .scalar_subquery()
    )
    result = await db.execute(
        select(User, queue_length, in_session)
        .where(User.role == UserRole.GURUJI, User.is_active.is_(True), User.deleted_at.is_(None))
        .order_by(User.name)
    )
    return [
        {
            "id": str(user.id),
            "name": user.name,
            "avatar_url": user.avatar_url,
            "preferred_language": user.preferred_language,
            "queue_length": waiting or 0,
            "in_consultation": bool(active),
        }
        for user, waiting, active in result.all()
    ]


# ── Family Contacts ────────────────────────────────────────────────────────────

def _contact_response(link: FamilyContact, contact_name=None, elderly_name=None) -> FamilyContactResponse:
    return FamilyContactResponse.model_validate(link).model_copy(
        update={"contact_name": contact_name, "elderly_name": elderly_name}
    )


async def _get_link_or_404(db: AsyncSession, link_id: UUID, user: User) -> FamilyContact:
    link = await db.scalar(
        select(FamilyContact).where(
            FamilyContact.id == link_id,
            or_(FamilyContact.elderly_user_id == user.id, FamilyContact.family_contact_id == user.id),
        )
    )
    if not link:
        raise HTTPException(status_code=404, detail="Family contact not found")
    return link


@router.get("/me/family-contacts")
async def get_family_contacts(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Relatives I have added, and the elderly devotees I look after."""
    elderly = aliased(User)
    contact = aliased(User)
    result = await db.execute(
        select(FamilyContact, contact.name, elderly.name)
        .join(contact, contact.id == FamilyContact.family_contact_id)
        .join(elderly, elderly.id == FamilyContact.elderly_user_id)
        .where(or_(
            FamilyContact.elderly_user_id == current_user.id,
            FamilyContact.family_contact_id == current_user.id,
        ))
        .order_by(FamilyContact.created_at.desc())
    )
    contacts, caring_for = [], []
    for link, contact_name, elderly_name in result.all():
        item = _contact_response(link, contact_name, elderly_name)
        if link.elderly_user_id == current_user.id:
            contacts.append(item)
        else:
            caring_for.append(item)
    return {"contacts": contacts, "caring_for": caring_for}


@router.post(
    "/me/family-contacts",
    response_model=FamilyContactResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_family_contact(
    data: FamilyContactCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Link an existing user (found by phone or email) as my family contact."""
    criteria = []
    if data.phone:
        criteria.append(User.phone == data.phone)
    if data.email:
        criteria.append(User.email == data.email.lower())
    relative = await db.scalar(
        select(User).where(or_(*criteria), User.deleted_at.is_(None)).limit(1)
    )
    if not relative:
        raise HTTPException(status_code=404, detail="No user found with that phone or email")
    if relative.id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot add yourself as a family contact")

    duplicate = await db.scalar(
        select(FamilyContact.id).where(
            FamilyContact.elderly_user_id == current_user.id,
            FamilyContact.family_contact_id == relative.id,
        )
    )
    if duplicate:
        raise HTTPException(status_code=409, detail="This family contact already exists")

    link = FamilyContact(
        elderly_user_id=current_user.id,
        family_contact_id=relative.id,
        relationship_label=data.relationship,
        can_book_appointments=data.can_book_appointments,
        can_view_remedies=data.can_view_remedies,
        can_receive_updates=data.can_receive_updates,
        notes=data.notes,
    )
    db.add(link)
    await db.commit()
    return _contact_response(link, relative.name, current_user.name)


@router.put("/me/family-contacts/{link_id}", response_model=FamilyContactResponse)
async def update_family_contact(
    link_id: UUID,
    data: FamilyContactUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Permissions are set by the elderly devotee, not by the relative."""
    link = await _get_link_or_404(db, link_id, current_user)
    if link.elderly_user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Only the devotee can change these permissions")

    updates = data.model_dump(exclude_none=True)
    if "relationship" in updates:
        link.relationship_label = updates.pop("relationship")
    for field, value in updates.items():
        setattr(link, field, value)
    await db.commit()

    relative = await db.get(User, link.family_contact_id)
    return _contact_response(link, relative.name if relative else None, current_user.name)


@router.delete("/me/family-contacts/{link_id}", response_model=MessageResponse)
async def remove_family_contact(
    link_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Either side of the link may remove it."""
    link = await _get_link_or_404(db, link_id, current_user)
    await db.delete(link)
    await db.commit()
    return MessageResponse(message="Family contact removed")
