"""
services/notification/templates.py
Message templates shared by the API dispatcher and the Celery workers.
"""

from shared.models.models import NotificationType

# family: also copy the message to family contacts who opted in to updates
TEMPLATES = {
    "APPOINTMENT_BOOKED": {
        "type": NotificationType.APPOINTMENT,
        "title": "Appointment Booked 🙏",
        "body": "Your appointment with {guruji_name} is booked for {time}.",
        "sms": "{ashram_name}: Appointment with {guruji_name} booked for {time}.",
        "email_subject": "Appointment booked for {time}",
    },
    "APPOINTMENT_REQUEST": {
        "type": NotificationType.APPOINTMENT,
        "title": "New Appointment",
        "body": "{devotee_name} has an appointment with you at {time}.",
        "sms": None,
        "email_subject": None,
    },
    "APPOINTMENT_RESCHEDULED": {
        "type": NotificationType.APPOINTMENT,
        "title": "Appointment Rescheduled",
        "body": "Your appointment with {guruji_name} has moved to {time}.",
        "sms": "{ashram_name}: Your appointment is now at {time}.",
        "email_subject": "Appointment rescheduled to {time}",
    },
    "APPOINTMENT_CANCELLED": {
        "type": NotificationType.APPOINTMENT,
        "title": "Appointment Cancelled",
        "body": "Your appointment for {time} has been cancelled.",
        "sms": "{ashram_name}: Your appointment for {time} was cancelled.",
        "email_subject": "Appointment cancelled",
        "family": True,
    },
    "APPOINTMENT_STATUS": {
        "type": NotificationType.APPOINTMENT,
        "title": "Appointment Updated",
        "body": "Your appointment for {time} is now {status}.",
        "sms": None,
        "email_subject": None,
    },
    "APPOINTMENT_REMINDER": {
        "type": NotificationType.REMINDER,
        "title": "Reminder: Appointment Tomorrow 🕉️",
        "body": "Your appointment with {guruji_name} is tomorrow at {time}.",
        "sms": "{ashram_name}: Reminder, your appointment is tomorrow at {time}.",
        "email_subject": "Reminder: appointment tomorrow at {time}",
    },
    "CHECKED_IN": {
        "type": NotificationType.QUEUE,
        "title": "Checked In ✅",
        "body": "You are checked in. Position {position}, estimated wait {wait} minutes.",
        "sms": None,
        "email_subject": None,
        "family": True,
    },
    "QUEUE_JOINED": {
        "type": NotificationType.QUEUE,
        "title": "Devotee Waiting",
        "body": "{devotee_name} has joined your queue.",
        "sms": None,
        "email_subject": None,
    },
    "QUEUE_CANCELLED": {
        "type": NotificationType.QUEUE,
        "title": "Removed From Queue",
        "body": "Your place in the queue has been cancelled.",
        "sms": None,
        "email_subject": None,
        "family": True,
    },
    "YOUR_TURN_NEXT": {
        "type": NotificationType.QUEUE,
        "title": "You're Next 🙏",
        "body": "Please be ready, {guruji_name} will see you next.",
        "sms": "{ashram_name}: You are next in the queue. Please be ready.",
        "email_subject": None,
        "family": True,
    },
    "CONSULTATION_STARTED": {
        "type": NotificationType.CONSULTATION,
        "title": "Consultation Started",
        "body": "{guruji_name} is ready to see you now.",
        "sms": None,
        "email_subject": None,
        "family": True,
    },
    "CONSULTATION_COMPLETED": {
        "type": NotificationType.CONSULTATION,
        "title": "Consultation Completed ✨",
        "body": "Your consultation with {guruji_name} is complete. Your remedies will follow shortly.",
        "sms": None,
        "email_subject": "Your consultation summary",
        "family": True,
    },
    "REMEDY_PRESCRIBED": {
        "type": NotificationType.REMEDY,
        "title": "New Remedy Prescribed",
        "body": "{guruji_name} prescribed {remedy_name} for you.",
        "sms": None,
        "email_subject": None,
    },
    "REMEDY_RESENT": {
        "type": NotificationType.REMEDY,
        "title": "Remedy Sent Again",
        "body": "Your remedy {remedy_name} is being sent to you again.",
        "sms": None,
        "email_subject": None,
    },
    "REMEDY_DELIVERY": {
        "type": NotificationType.REMEDY,
        "title": "Your Remedy: {remedy_name}",
        "body": "Please find your remedy {remedy_name} attached.",
        "sms": "{ashram_name}: Remedy {remedy_name}. Dosage: {dosage}. Duration: {duration}.",
        "email_subject": "Your remedy from {ashram_name}: {remedy_name}",
    },
    "EMERGENCY_PATIENT": {
        "type": NotificationType.EMERGENCY,
        "title": "🚨 Emergency Devotee",
        "body": "{devotee_name} has arrived: {nature}.",
        "sms": "{ashram_name} EMERGENCY: {devotee_name}, {nature}.",
        "email_subject": None,
    },
    "ACCOUNT_CREATED": {
        "type": NotificationType.SYSTEM,
        "title": "Welcome to {ashram_name} 🕉️",
        "body": "Your account has been created at reception. You can now book appointments.",
        "sms": "Welcome to {ashram_name}. Your account is ready for appointments.",
        "email_subject": "Welcome to {ashram_name}",
    },
}


def render(template: str, **kwargs) -> str:
    """String template renderer that leaves unknown placeholders untouched."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template
