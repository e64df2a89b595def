"""
shared/utils/transitions.py
Guards for the appointment and queue state machines.
"""

from fastapi import HTTPException, status

from shared.models.models import (
    APPOINTMENT_TRANSITIONS,
    QUEUE_TRANSITIONS,
    Appointment,
    AppointmentStatus,
    QueueEntry,
    QueueStatus,
)


def can_transition_appointment(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in APPOINTMENT_TRANSITIONS.get(current, set())


def can_transition_queue(current: QueueStatus, target: QueueStatus) -> bool:
    return target in QUEUE_TRANSITIONS.get(current, set())


def ensure_appointment_transition(appointment: Appointment, target: AppointmentStatus) -> None:
    if not can_transition_appointment(appointment.status, target):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot change appointment from {appointment.status.value} to {target.value}",
        )


def ensure_queue_transition(entry: QueueEntry, target: QueueStatus) -> None:
    if not can_transition_queue(entry.status, target):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot change queue entry from {entry.status.value} to {target.value}",
        )
