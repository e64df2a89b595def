"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4 -Q default,notifications,remedies

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery, Task
from celery.schedules import crontab

from config.database import get_sync_session
from config.settings import settings

celery_app = Celery(
    "ashram_queue",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.maintenance_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.ASHRAM_TIMEZONE,
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Keep task results for 1 hour
    result_expires=3600,

    task_max_retries=3,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.send_push_notification": {"rate_limit": "30/s"},
        "tasks.notification_tasks.send_sms": {"rate_limit": "10/s"},
        "tasks.notification_tasks.send_email": {"rate_limit": "20/s"},
    },

    task_routes={
        "tasks.notification_tasks.deliver_remedy_documents": {"queue": "remedies"},
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.maintenance_tasks.*": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────
# Crontab hours are ashram-local (timezone above)

celery_app.conf.beat_schedule = {
    # Appointments starting 24-25 hours from now
    "send-appointment-reminders": {
        "task": "tasks.notification_tasks.send_appointment_reminders",
        "schedule": crontab(minute=0),  # top of every hour
    },

    # Email/SMS remedy documents that have not been delivered yet
    "deliver-remedy-documents": {
        "task": "tasks.notification_tasks.deliver_remedy_documents",
        "schedule": 300,  # every 5 minutes
    },

    "mark-no-shows": {
        "task": "tasks.maintenance_tasks.mark_no_shows",
        "schedule": crontab(hour=23, minute=30),
    },

    "close-stale-queue-entries": {
        "task": "tasks.maintenance_tasks.close_stale_queue_entries",
        "schedule": crontab(hour=0, minute=15),
    },

    "purge-old-notifications": {
        "task": "tasks.maintenance_tasks.purge_old_notifications",
        "schedule": crontab(hour=3, minute=0, day_of_week="sunday"),
    },
}


# ── Base Task with DB session ─────────────────────────────────────────────────

class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True

    def get_session(self):
        return get_sync_session()
