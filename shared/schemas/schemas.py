"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import (
    AppointmentStatus,
    NotificationType,
    Priority,
    QueueStatus,
    RemedyType,
    SettingType,
    UserRole,
)

PHONE_PATTERN = r"^\+?[1-9]\d{9,14}$"


def _future(v: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if v.tzinfo is None:
        v = v.replace(tzinfo=timezone.utc)
    if v <= datetime.now(timezone.utc):
        raise ValueError("Start time must be in the future")
    return v


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=8, max_length=128)
    preferred_language: str = Field(default="en", max_length=10)

    @model_validator(mode="after")
    def require_contact(self):
        if not self.email and not self.phone:
            raise ValueError("Either email or phone is required")
        return self


class LoginRequest(BaseSchema):
    identifier: str = Field(..., min_length=3, description="Email or phone number")
    password: str = Field(..., min_length=1)


class PhoneOTPRequest(BaseSchema):
    phone: str = Field(..., pattern=PHONE_PATTERN)


class PhoneOTPVerifyRequest(PhoneOTPRequest):
    otp: str = Field(..., pattern=r"^\d{4,8}$")


class ChangePasswordRequest(BaseSchema):
    # Accounts created through Google have no password to confirm
    current_password: Optional[str] = None
    new_password: str = Field(..., min_length=8, max_length=128)
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.new_password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class AuthResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: "UserResponse"


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    role: UserRole
    preferred_language: str
    date_of_birth: Optional[date] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None
    is_active: bool
    created_at: datetime


class UserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    preferred_language: Optional[str] = Field(None, max_length=10)
    fcm_token: Optional[str] = None
    address: Optional[str] = Field(None, max_length=1000)
    emergency_contact: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    date_of_birth: Optional[date] = None
    preferences: Optional[Dict[str, Any]] = None


class FamilyContactCreate(BaseSchema):
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None
    relationship: str = Field(..., min_length=2, max_length=50)
    can_book_appointments: bool = True
    can_view_remedies: bool = True
    can_receive_updates: bool = True
    notes: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def require_contact(self):
        if not self.email and not self.phone:
            raise ValueError("Either email or phone is required")
        return self


class FamilyContactUpdate(BaseSchema):
    relationship: Optional[str] = Field(None, min_length=2, max_length=50)
    can_book_appointments: Optional[bool] = None
    can_view_remedies: Optional[bool] = None
    can_receive_updates: Optional[bool] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = Field(None, max_length=1000)


class FamilyContactResponse(BaseSchema):
    id: uuid.UUID
    elderly_user_id: uuid.UUID
    family_contact_id: uuid.UUID
    relationship: str = Field(validation_alias=AliasChoices("relationship_label", "relationship"))
    can_book_appointments: bool
    can_view_remedies: bool
    can_receive_updates: bool
    is_active: bool
    notes: Optional[str] = None
    created_at: datetime
    # Joined
    contact_name: Optional[str] = None
    elderly_name: Optional[str] = None


# ── Appointment ───────────────────────────────────────────────

class AppointmentCreateRequest(BaseSchema):
    guruji_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None  # Book on behalf of someone else
    start_time: datetime
    reason: Optional[str] = Field(None, max_length=1000)
    notes: Optional[str] = Field(None, max_length=2000)
    priority: Priority = Priority.NORMAL
    is_recurring: bool = False
    recurring_pattern: Optional[Dict[str, Any]] = None

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: datetime) -> datetime:
        return _future(v)


class AppointmentUpdateRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=1000)
    notes: Optional[str] = Field(None, max_length=2000)
    priority: Optional[Priority] = None
    guruji_id: Optional[uuid.UUID] = None  # Staff only


class AppointmentCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class AppointmentRescheduleRequest(BaseSchema):
    start_time: datetime

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: datetime) -> datetime:
        return _future(v)


class AppointmentStatusUpdate(BaseSchema):
    status: AppointmentStatus
    notes: Optional[str] = Field(None, max_length=2000)


class AppointmentResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    guruji_id: uuid.UUID
    booked_by_id: Optional[uuid.UUID] = None
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus
    priority: Priority
    reason: Optional[str] = None
    notes: Optional[str] = None
    is_recurring: bool
    recurring_pattern: Optional[Dict[str, Any]] = None
    qr_code: str
    checked_in_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    # Joined
    user_name: Optional[str] = None
    guruji_name: Optional[str] = None


# ── Queue ─────────────────────────────────────────────────────

class QueueJoinRequest(BaseSchema):
    guruji_id: Optional[uuid.UUID] = None
    reason: Optional[str] = Field(None, max_length=1000)
    priority: Priority = Priority.NORMAL


class QueueStatusUpdate(BaseSchema):
    status: QueueStatus
    notes: Optional[str] = Field(None, max_length=2000)


class QueueEntryResponse(BaseSchema):
    id: uuid.UUID
    appointment_id: uuid.UUID
    user_id: uuid.UUID
    guruji_id: Optional[uuid.UUID] = None
    position: int
    status: QueueStatus
    priority: Priority
    estimated_wait: Optional[int] = None
    checked_in_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None
    # Joined
    user_name: Optional[str] = None
    user_phone: Optional[str] = None
    guruji_name: Optional[str] = None
    people_ahead: Optional[int] = None


# ── Check-in ──────────────────────────────────────────────────

class QRCheckinRequest(BaseSchema):
    qr_code: str = Field(..., min_length=1, max_length=255)


class LocationCheckinRequest(BaseSchema):
    qr_data: str = Field(..., min_length=1, max_length=2000)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class ManualCheckinRequest(BaseSchema):
    appointment_id: uuid.UUID
    location_id: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=1000)


class CheckinResponse(BaseSchema):
    message: str
    appointment: AppointmentResponse
    queue_entry: QueueEntryResponse


# ── Consultation ──────────────────────────────────────────────

class ConsultationStartRequest(BaseSchema):
    queue_entry_id: uuid.UUID


class ConsultationUpdateRequest(BaseSchema):
    symptoms: Optional[str] = Field(None, max_length=5000)
    diagnosis: Optional[str] = Field(None, max_length=5000)
    notes: Optional[str] = Field(None, max_length=5000)
    recordings: Optional[Dict[str, Any]] = None


class ConsultationCompleteRequest(BaseSchema):
    diagnosis: Optional[str] = Field(None, max_length=5000)
    notes: Optional[str] = Field(None, max_length=5000)


# ── Remedy ────────────────────────────────────────────────────

class RemedyTemplateCreate(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    type: RemedyType
    category: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    instructions: str = Field(..., min_length=5, max_length=5000)
    dosage: Optional[str] = Field(None, max_length=255)
    duration: Optional[str] = Field(None, max_length=255)
    language: str = Field(default="en", max_length=10)
    tags: List[str] = Field(default_factory=list)


class RemedyTemplateUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    type: Optional[RemedyType] = None
    category: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    instructions: Optional[str] = Field(None, min_length=5, max_length=5000)
    dosage: Optional[str] = Field(None, max_length=255)
    duration: Optional[str] = Field(None, max_length=255)
    language: Optional[str] = Field(None, max_length=10)
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None


class RemedyTemplateResponse(BaseSchema):
    id: uuid.UUID
    name: str
    type: RemedyType
    category: str
    description: Optional[str] = None
    instructions: str
    dosage: Optional[str] = None
    duration: Optional[str] = None
    language: str
    is_active: bool
    tags: List[str] = []
    created_by_id: Optional[uuid.UUID] = None
    created_at: datetime


class PrescribeRequest(BaseSchema):
    template_id: uuid.UUID
    consultation_session_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None  # Direct prescription, no session
    custom_instructions: Optional[str] = Field(None, max_length=5000)
    custom_dosage: Optional[str] = Field(None, max_length=255)
    custom_duration: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def require_target(self):
        if not self.consultation_session_id and not self.user_id:
            raise ValueError("Either consultation_session_id or user_id is required")
        return self


class RemedyDocumentUpdate(BaseSchema):
    custom_instructions: Optional[str] = Field(None, max_length=5000)
    custom_dosage: Optional[str] = Field(None, max_length=255)
    custom_duration: Optional[str] = Field(None, max_length=255)


class RemedyDocumentResponse(BaseSchema):
    id: uuid.UUID
    consultation_session_id: Optional[uuid.UUID] = None
    template_id: uuid.UUID
    user_id: uuid.UUID
    prescribed_by_id: Optional[uuid.UUID] = None
    custom_instructions: Optional[str] = None
    custom_dosage: Optional[str] = None
    custom_duration: Optional[str] = None
    pdf_url: Optional[str] = None
    email_sent: bool
    sms_sent: bool
    delivered_at: Optional[datetime] = None
    created_at: datetime
    # Joined
    template_name: Optional[str] = None
    template_type: Optional[RemedyType] = None
    user_name: Optional[str] = None
    prescribed_by_name: Optional[str] = None


class ConsultationResponse(BaseSchema):
    id: uuid.UUID
    appointment_id: uuid.UUID
    devotee_id: uuid.UUID
    guruji_id: uuid.UUID
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    symptoms: Optional[str] = None
    diagnosis: Optional[str] = None
    notes: Optional[str] = None
    recordings: Optional[Dict[str, Any]] = None
    created_at: datetime
    # Joined
    devotee_name: Optional[str] = None
    guruji_name: Optional[str] = None
    remedies: List[RemedyDocumentResponse] = []


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: NotificationType
    title: str
    body: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime


class NotificationSendRequest(BaseSchema):
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1, max_length=2000)
    type: NotificationType = NotificationType.SYSTEM
    user_ids: Optional[List[uuid.UUID]] = None
    role: Optional[UserRole] = None
    data: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def require_audience(self):
        if not self.user_ids and not self.role:
            raise ValueError("Either user_ids or role is required")
        return self


# ── System Settings ───────────────────────────────────────────

class SettingUpdateRequest(BaseSchema):
    value: Union[bool, int, float, str, Dict[str, Any], List[Any]]
    type: Optional[SettingType] = None
    category: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)
    is_public: Optional[bool] = None


class SettingResponse(BaseSchema):
    key: str
    value: Any
    type: SettingType
    category: str
    description: Optional[str] = None
    is_public: bool
    updated_at: datetime


# ── Admin ─────────────────────────────────────────────────────

class AdminUserCreate(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=8, max_length=128)
    role: UserRole = UserRole.USER

    @model_validator(mode="after")
    def require_contact(self):
        if not self.email and not self.phone:
            raise ValueError("Either email or phone is required")
        return self


class AdminUserUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    preferred_language: Optional[str] = Field(None, max_length=10)
    address: Optional[str] = Field(None, max_length=1000)
    emergency_contact: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    date_of_birth: Optional[date] = None
    is_active: Optional[bool] = None


class RoleUpdateRequest(BaseSchema):
    role: UserRole


class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    action: str
    resource: str
    resource_id: Optional[str] = None
    old_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


# ── Reception ─────────────────────────────────────────────────

class QuickRegisterRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None
    date_of_birth: Optional[date] = None
    emergency_contact: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class PhoneBookingRequest(BaseSchema):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    email: Optional[EmailStr] = None
    guruji_id: Optional[uuid.UUID] = None
    start_time: datetime
    reason: Optional[str] = Field(None, max_length=1000)
    priority: Priority = Priority.NORMAL

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: datetime) -> datetime:
        return _future(v)


class EmergencyRequest(BaseSchema):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    nature: str = Field(..., min_length=3, max_length=500)
    guruji_id: Optional[uuid.UUID] = None
    priority: Priority = Priority.URGENT


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    request_id: Optional[str] = None


AuthResponse.model_rebuild()
