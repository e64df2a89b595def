"""
tasks/notification_tasks.py
Celery tasks for multi-channel notification delivery.

Failures in one channel (e.g. FCM) never block other channels.

Usage from the API (see services/notification/router.py):
    send_sms.delay(str(notification.id), user.phone, body)
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, select, update

from services.notification import channels
from services.notification.templates import TEMPLATES, render
from services.remedy.pdf import build_remedy_pdf, remedy_filename
from config.settings import settings
from shared.models.models import (
    Appointment,
    BOOKABLE_STATUSES,
    Notification,
    RemedyDocument,
    RemedyTemplate,
    User,
)
from shared.utils.timeutils import format_local
from tasks.celery_app import DatabaseTask, celery_app

logger = logging.getLogger(__name__)

# Undelivered remedies older than this wait for a manual resend
REMEDY_DELIVERY_MAX_AGE = timedelta(days=7)
REMEDY_DELIVERY_BATCH = 50


def _mark_sent(db, notification_id: Optional[str], **flags) -> None:
    if not notification_id:
        return
    db.execute(
        update(Notification)
        .where(Notification.id == uuid.UUID(notification_id))
        .values(**flags)
    )
    db.commit()


# ── Individual Channel Tasks ───────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def send_push_notification(self, notification_id: Optional[str], fcm_token: str, title: str,
                           body: str, data: dict = None):
    """Send a single FCM push notification with retry on failure."""
    if not channels.send_push(fcm_token, title, body, data):
        raise self.retry(countdown=60 * (2 ** self.request.retries))
    db = self.get_session()
    try:
        _mark_sent(db, notification_id, sent_push=True)
    finally:
        db.close()


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=120)
def send_sms(self, notification_id: Optional[str], phone: str, body: str):
    """Send a single SMS via Twilio with retry on failure."""
    if not channels.send_sms(phone, body):
        raise self.retry(countdown=120 * (2 ** self.request.retries))
    db = self.get_session()
    try:
        _mark_sent(db, notification_id, sent_sms=True)
    finally:
        db.close()


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def send_email(self, notification_id: Optional[str], to_email: str, subject: str,
               html_body: str, to_name: str = None):
    """Send a transactional email via Resend with retry on failure."""
    if not channels.send_email(to_email, subject, html_body, to_name=to_name):
        raise self.retry(countdown=60 * (2 ** self.request.retries))
    db = self.get_session()
    try:
        _mark_sent(db, notification_id, sent_email=True)
    finally:
        db.close()


def fan_out(notification: Notification, user: User, template: dict, template_vars: dict) -> None:
    """Queue channel deliveries for a stored notification. Unconfigured channels are skipped."""
    notification_id = str(notification.id)
    if user.fcm_token and channels.push_configured():
        send_push_notification.delay(
            notification_id, user.fcm_token, notification.title, notification.body,
            {"notification_id": notification_id, "type": notification.type.value},
        )
    if template.get("sms") and user.phone and channels.sms_configured():
        send_sms.delay(notification_id, user.phone, render(template["sms"], **template_vars))
    if template.get("email_subject") and user.email and channels.email_configured():
        send_email.delay(
            notification_id,
            user.email,
            render(template["email_subject"], **template_vars),
            channels.render_email_html(notification.title, notification.body),
            user.name,
        )


# ── Periodic / Scheduled Tasks ────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask)
def send_appointment_reminders(self):
    """
    Beat task: runs every hour.
    Reminds devotees of appointments starting 24-25 hours from now.
    """
    db = self.get_session()
    try:
        now = datetime.now(timezone.utc)
        window_start = now + timedelta(hours=24)
        window_end = now + timedelta(hours=25)

        appointments = db.execute(
            select(Appointment).where(
                Appointment.status.in_(BOOKABLE_STATUSES),
                Appointment.start_time >= window_start,
                Appointment.start_time < window_end,
            )
        ).scalars().all()

        tmpl = TEMPLATES["APPOINTMENT_REMINDER"]
        reminded = []
        for appointment in appointments:
            user = db.get(User, appointment.user_id)
            guruji = db.get(User, appointment.guruji_id)
            if not user or not user.is_active:
                continue
            vars_ = {
                "guruji_name": guruji.name if guruji else "Guruji",
                "time": format_local(appointment.start_time, "%I:%M %p"),
                "ashram_name": settings.ASHRAM_NAME,
            }
            notif = Notification(
                user_id=user.id,
                type=tmpl["type"],
                title=render(tmpl["title"], **vars_),
                body=render(tmpl["body"], **vars_),
                data={"appointment_id": str(appointment.id)},
            )
            db.add(notif)
            reminded.append((notif, user, vars_))

        db.commit()
        for notif, user, vars_ in reminded:
            fan_out(notif, user, tmpl, vars_)
        logger.info(f"Sent {len(reminded)} appointment reminders")
        return len(reminded)
    except Exception as e:
        db.rollback()
        logger.exception(f"send_appointment_reminders failed: {e}")
        raise
    finally:
        db.close()


@celery_app.task(bind=True, base=DatabaseTask)
def deliver_remedy_documents(self):
    """
    Beat task: runs every 5 minutes.
    Emails each undelivered remedy as a PDF attachment and texts a short summary.
    A document counts as delivered once any channel succeeds.
    """
    db = self.get_session()
    try:
        cutoff = datetime.now(timezone.utc) - REMEDY_DELIVERY_MAX_AGE
        documents = db.execute(
            select(RemedyDocument)
            .where(
                RemedyDocument.delivered_at.is_(None),
                or_(
                    RemedyDocument.created_at >= cutoff,
                    RemedyDocument.resend_requested_at >= cutoff,
                ),
            )
            .order_by(RemedyDocument.created_at)
            .limit(REMEDY_DELIVERY_BATCH)
        ).scalars().all()

        delivered = 0
        tmpl = TEMPLATES["REMEDY_DELIVERY"]
        for document in documents:
            template = db.get(RemedyTemplate, document.template_id)
            devotee = db.get(User, document.user_id)
            if not template or not devotee:
                continue
            guruji = db.get(User, document.prescribed_by_id) if document.prescribed_by_id else None

            vars_ = {
                "remedy_name": template.name,
                "dosage": document.custom_dosage or template.dosage or "as advised",
                "duration": document.custom_duration or template.duration or "as advised",
                "ashram_name": settings.ASHRAM_NAME,
            }

            if devotee.email and not document.email_sent:
                pdf_bytes = build_remedy_pdf(document, template, devotee, guruji)
                document.email_sent = channels.send_email(
                    devotee.email,
                    render(tmpl["email_subject"], **vars_),
                    channels.render_email_html(
                        render(tmpl["title"], **vars_), render(tmpl["body"], **vars_)
                    ),
                    to_name=devotee.name,
                    attachments=[{"filename": remedy_filename(document), "content": list(pdf_bytes)}],
                )

            if devotee.phone and not document.sms_sent:
                document.sms_sent = channels.send_sms(devotee.phone, render(tmpl["sms"], **vars_))

            if document.email_sent or document.sms_sent:
                document.delivered_at = datetime.now(timezone.utc)
                delivered += 1

        db.commit()
        logger.info(f"Delivered {delivered} of {len(documents)} pending remedy documents")
        return delivered
    except Exception as e:
        db.rollback()
        logger.exception(f"deliver_remedy_documents failed: {e}")
        raise
    finally:
        db.close()
