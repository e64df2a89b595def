"""
tasks/maintenance_tasks.py
Nightly housekeeping for appointments, the queue and the notification log.

All tasks are idempotent. Running twice has no extra effect.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select

from config.settings import settings
from shared.models.models import (
    Appointment,
    AppointmentStatus,
    AuditLog,
    BOOKABLE_STATUSES,
    Notification,
    QueueEntry,
    QueueStatus,
)
from shared.utils.timeutils import today_bounds
from tasks.celery_app import DatabaseTask, celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, base=DatabaseTask)
def mark_no_shows(self):
    """BOOKED/CONFIRMED appointments that ended more than the grace period ago become NO_SHOW."""
    db = self.get_session()
    try:
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=settings.NO_SHOW_GRACE_MINUTES)
        appointments = db.execute(
            select(Appointment).where(
                Appointment.status.in_(BOOKABLE_STATUSES),
                Appointment.end_time < cutoff,
            )
        ).scalars().all()

        for appointment in appointments:
            old_status = appointment.status.value
            appointment.status = AppointmentStatus.NO_SHOW
            waiting = db.execute(
                select(QueueEntry).where(
                    QueueEntry.appointment_id == appointment.id,
                    QueueEntry.status == QueueStatus.WAITING,
                )
            ).scalar_one_or_none()
            if waiting:
                waiting.status = QueueStatus.CANCELLED
                waiting.completed_at = now
            db.add(AuditLog(
                action="APPOINTMENT_NO_SHOW",
                resource="appointment",
                resource_id=str(appointment.id),
                old_data={"status": old_status},
                new_data={"status": AppointmentStatus.NO_SHOW.value},
            ))

        db.commit()
        logger.info(f"Marked {len(appointments)} appointments as no-show")
        return len(appointments)
    except Exception as e:
        db.rollback()
        logger.exception(f"mark_no_shows failed: {e}")
        raise
    finally:
        db.close()


@celery_app.task(bind=True, base=DatabaseTask)
def close_stale_queue_entries(self):
    """WAITING entries from previous ashram days are cancelled along with their appointments."""
    db = self.get_session()
    try:
        today_start, _ = today_bounds()
        now = datetime.now(timezone.utc)
        entries = db.execute(
            select(QueueEntry).where(
                QueueEntry.status == QueueStatus.WAITING,
                QueueEntry.checked_in_at < today_start,
            )
        ).scalars().all()

        for entry in entries:
            entry.status = QueueStatus.CANCELLED
            entry.completed_at = now
            entry.notes = "Closed at end of day"
            appointment = db.get(Appointment, entry.appointment_id)
            if appointment and appointment.status == AppointmentStatus.CHECKED_IN:
                appointment.status = AppointmentStatus.CANCELLED
                appointment.cancelled_at = now
            db.add(AuditLog(
                action="QUEUE_ENTRY_EXPIRED",
                resource="queue_entry",
                resource_id=str(entry.id),
                old_data={"status": QueueStatus.WAITING.value},
                new_data={"status": QueueStatus.CANCELLED.value},
            ))

        db.commit()
        logger.info(f"Closed {len(entries)} stale queue entries")
        return len(entries)
    except Exception as e:
        db.rollback()
        logger.exception(f"close_stale_queue_entries failed: {e}")
        raise
    finally:
        db.close()


@celery_app.task(bind=True, base=DatabaseTask)
def purge_old_notifications(self):
    """Delete read notifications past the retention period."""
    db = self.get_session()
    try:
        cutoff = datetime.now(timezone.utc) - timedelta(days=settings.NOTIFICATION_RETENTION_DAYS)
        result = db.execute(
            delete(Notification).where(
                Notification.is_read.is_(True),
                Notification.created_at < cutoff,
            )
        )
        db.commit()
        logger.info(f"Purged {result.rowcount} old notifications")
        return result.rowcount
    except Exception as e:
        db.rollback()
        logger.exception(f"purge_old_notifications failed: {e}")
        raise
    finally:
        db.close()
