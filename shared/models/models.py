"""
shared/models/models.py
All SQLAlchemy ORM models for the Ashram Appointment & Queue Platform.
UUID primary keys throughout; column types stay portable between PostgreSQL and SQLite.
"""

import json
import uuid
from datetime import date, datetime, timezone
from enum import Enum as PyEnum
from typing import Any, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base, JSONType, UTCDateTime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    USER = "USER"
    COORDINATOR = "COORDINATOR"
    GURUJI = "GURUJI"
    ADMIN = "ADMIN"


class OAuthProvider(str, PyEnum):
    GOOGLE = "GOOGLE"


class AppointmentStatus(str, PyEnum):
    BOOKED = "BOOKED"
    CONFIRMED = "CONFIRMED"
    CHECKED_IN = "CHECKED_IN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class QueueStatus(str, PyEnum):
    WAITING = "WAITING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Priority(str, PyEnum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class RemedyType(str, PyEnum):
    HOMEOPATHIC = "HOMEOPATHIC"
    AYURVEDIC = "AYURVEDIC"
    SPIRITUAL = "SPIRITUAL"
    LIFESTYLE = "LIFESTYLE"
    DIETARY = "DIETARY"


class NotificationType(str, PyEnum):
    APPOINTMENT = "APPOINTMENT"
    QUEUE = "QUEUE"
    CONSULTATION = "CONSULTATION"
    REMEDY = "REMEDY"
    REMINDER = "REMINDER"
    SYSTEM = "SYSTEM"
    EMERGENCY = "EMERGENCY"


class SettingType(str, PyEnum):
    STRING = "STRING"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    JSON = "JSON"


# ── State Machines ────────────────────────────────────────────

APPOINTMENT_TRANSITIONS: dict[AppointmentStatus, set[AppointmentStatus]] = {
    AppointmentStatus.BOOKED: {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.CHECKED_IN: {
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.IN_PROGRESS: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    },
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.NO_SHOW: set(),
}

QUEUE_TRANSITIONS: dict[QueueStatus, set[QueueStatus]] = {
    QueueStatus.WAITING: {QueueStatus.IN_PROGRESS, QueueStatus.CANCELLED},
    QueueStatus.IN_PROGRESS: {QueueStatus.COMPLETED, QueueStatus.CANCELLED},
    QueueStatus.COMPLETED: set(),
    QueueStatus.CANCELLED: set(),
}

# Higher number is served first
PRIORITY_RANK = {
    Priority.URGENT: 3,
    Priority.HIGH: 2,
    Priority.NORMAL: 1,
    Priority.LOW: 0,
}

ACTIVE_QUEUE_STATUSES = (QueueStatus.WAITING, QueueStatus.IN_PROGRESS)
BOOKABLE_STATUSES = (AppointmentStatus.BOOKED, AppointmentStatus.CONFIRMED)


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


class SoftDeleteMixin:
    """Adds soft delete capability."""
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


def _uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, SoftDeleteMixin, Base):
    """
    Account for every role. Devotees registered at reception may have only a phone;
    Google sign-ins have no password.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, unique=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    oauth_provider: Mapped[Optional[OAuthProvider]] = mapped_column(
        Enum(OAuthProvider), nullable=True
    )
    oauth_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.USER
    )
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    emergency_contact: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    preferences: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    preferred_language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)
    fcm_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Push notification token
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    refresh_tokens: Mapped[List["RefreshToken"]] = relationship(back_populates="user")

    __table_args__ = (
        UniqueConstraint("oauth_provider", "oauth_id", name="uq_oauth_provider_id"),
        Index("ix_users_role", "role"),
    )

    def __repr__(self) -> str:
        return f"<User {self.email or self.phone} ({self.role})>"


class RefreshToken(Base):
    """Refresh tokens stored for rotation and revocation."""
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now()
    )
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    user: Mapped["User"] = relationship(back_populates="refresh_tokens")

    __table_args__ = (Index("ix_refresh_tokens_user_id", "user_id"),)


class FamilyContact(TimestampMixin, Base):
    """A relative who may book, view remedies, or receive updates for an elderly devotee."""
    __tablename__ = "family_contacts"

    id: Mapped[uuid.UUID] = _uuid_pk()
    elderly_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    family_contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    relationship_label: Mapped[str] = mapped_column("relationship", String(50), nullable=False)
    can_book_appointments: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_view_remedies: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_receive_updates: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("elderly_user_id", "family_contact_id", name="uq_family_contact_pair"),
        Index("ix_family_contacts_contact", "family_contact_id"),
    )


class Appointment(TimestampMixin, Base):
    """
    A devotee's visit with a guruji.
    Status transitions: BOOKED → CONFIRMED → CHECKED_IN → IN_PROGRESS → COMPLETED,
    with CANCELLED / NO_SHOW as exits (see APPOINTMENT_TRANSITIONS).
    """
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    guruji_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    booked_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus), nullable=False, default=AppointmentStatus.BOOKED
    )
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority), nullable=False, default=Priority.NORMAL
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_pattern: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    qr_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    checked_in_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    __table_args__ = (
        Index("ix_appointments_user_id", "user_id"),
        Index("ix_appointments_guruji_start", "guruji_id", "start_time"),
        Index("ix_appointments_status", "status"),
    )


class QueueEntry(TimestampMixin, Base):
    """Waiting-room ticket for a checked-in appointment. Position 1 is served next."""
    __tablename__ = "queue_entries"

    id: Mapped[uuid.UUID] = _uuid_pk()
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    guruji_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[QueueStatus] = mapped_column(
        Enum(QueueStatus), nullable=False, default=QueueStatus.WAITING
    )
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority), nullable=False, default=Priority.NORMAL
    )
    estimated_wait: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # minutes
    checked_in_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_queue_entries_guruji_status", "guruji_id", "status"),
        Index("ix_queue_entries_user_status", "user_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_QUEUE_STATUSES


class ConsultationSession(TimestampMixin, Base):
    """One sitting between a guruji and a devotee. Active while end_time is NULL."""
    __tablename__ = "consultation_sessions"

    id: Mapped[uuid.UUID] = _uuid_pk()
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    devotee_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    guruji_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # minutes
    symptoms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diagnosis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recordings: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_consultations_guruji_end", "guruji_id", "end_time"),
        Index("ix_consultations_devotee", "devotee_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.end_time is None


class RemedyTemplate(TimestampMixin, Base):
    """Reusable remedy a guruji can prescribe."""
    __tablename__ = "remedy_templates"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[RemedyType] = mapped_column(Enum(RemedyType), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    instructions: Mapped[str] = mapped_column(Text, nullable=False)
    dosage: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    duration: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    tags: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    __table_args__ = (Index("ix_remedy_templates_type", "type"),)


class RemedyDocument(TimestampMixin, Base):
    """A remedy issued to one devotee, optionally tied to the consultation it came from."""
    __tablename__ = "remedy_documents"

    id: Mapped[uuid.UUID] = _uuid_pk()
    consultation_session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("consultation_sessions.id", ondelete="SET NULL"), nullable=True
    )
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("remedy_templates.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    prescribed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    custom_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    custom_dosage: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    custom_duration: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pdf_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    email_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sms_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    # Set by resend; restarts the delivery window
    resend_requested_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    __table_args__ = (
        Index("ix_remedy_documents_user", "user_id"),
        Index("ix_remedy_documents_session", "consultation_session_id"),
    )


class Notification(TimestampMixin, Base):
    """In-app notification log. Also sent via FCM, SMS, or email when configured."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    sent_push: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sent_sms: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sent_email: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)


class SystemSetting(TimestampMixin, Base):
    """Runtime-tunable key/value configuration, editable by admins."""
    __tablename__ = "system_settings"

    id: Mapped[uuid.UUID] = _uuid_pk()
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[SettingType] = mapped_column(
        Enum(SettingType), nullable=False, default=SettingType.STRING
    )
    category: Mapped[str] = mapped_column(String(50), default="general", nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    @property
    def typed_value(self) -> Any:
        return parse_setting_value(self.value, self.type)


def parse_setting_value(raw: str, setting_type: SettingType) -> Any:
    """Decode a stored setting. Raises ValueError if the text does not match its type."""
    if setting_type == SettingType.NUMBER:
        number = float(raw)
        return int(number) if number.is_integer() else number
    if setting_type == SettingType.BOOLEAN:
        lowered = raw.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
        raise ValueError(f"Not a boolean: {raw!r}")
    if setting_type == SettingType.JSON:
        return json.loads(raw)
    return raw


class AuditLog(Base):
    """Immutable log of every significant action (admin, check-in, status changes, logins)."""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    old_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    new_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_audit_logs_user_id", "user_id"),
        Index("ix_audit_logs_action", "action"),
        Index("ix_audit_logs_created_at", "created_at"),
    )
