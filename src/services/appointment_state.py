"""
Canonical appointment lifecycle.

    scheduled --payment_confirmed--> confirmed
    scheduled --payment_failed/expired/cancel--> cancelled
    confirmed --cancel--> cancelled
    confirmed --complete--> completed
    confirmed --no_show--> no-show

``completed``, ``cancelled`` and ``no-show`` are terminal. Writes are
compare-and-swap on the current status, so two racing actors (doctor
completing while the sweep marks no-show) cannot both win.
"""
import logging
from datetime import datetime, timedelta

import redis
from flask import current_app

from extensions import db
from src.models import Appointment
from src.models.appointments_db import (
    SCHEDULED, CONFIRMED, COMPLETED, CANCELLED, NO_SHOW, TERMINAL_STATUSES,
)
from src.services.db_context import db_context
from src.services.errors import InvalidTransitionError, NotFoundError, ValidationError
from src.services.notification_service import notify, other_party, BOTH

logger = logging.getLogger("appointment_state")

PAYMENT_CONFIRMED = "payment_confirmed"
PAYMENT_FAILED = "payment_failed"
EXPIRED = "expired"
CANCEL = "cancel"
COMPLETE = "complete"
MARK_NO_SHOW = "no_show"

TRANSITIONS = {
    (SCHEDULED, PAYMENT_CONFIRMED): CONFIRMED,
    (SCHEDULED, PAYMENT_FAILED): CANCELLED,
    (SCHEDULED, EXPIRED): CANCELLED,
    (SCHEDULED, CANCEL): CANCELLED,
    (CONFIRMED, CANCEL): CANCELLED,
    (CONFIRMED, COMPLETE): COMPLETED,
    (CONFIRMED, MARK_NO_SHOW): NO_SHOW,
}

# PATCH /status targets and the event each one means.
STATUS_EVENTS = {
    CANCELLED: CANCEL,
    COMPLETED: COMPLETE,
    NO_SHOW: MARK_NO_SHOW,
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def next_status(current: str, event: str) -> str | None:
    return TRANSITIONS.get((current, event))


def load_appointment(appointment_id: int) -> Appointment:
    appt = db.session.get(Appointment, appointment_id)
    if appt is None:
        raise NotFoundError(f"Appointment {appointment_id} not found", appointmentId=appointment_id)
    return appt


def apply_transition(appointment_id: int, event: str, changes: dict | None = None,
                     actor_role: str | None = None, expected_status: str | None = None) -> Appointment:
    """
    Move an appointment along ``event`` and persist ``changes`` in the same write.

    ``expected_status`` pins the source status (the caller already inspected the
    row); otherwise the currently stored status is used. Raises
    InvalidTransitionError when the edge does not exist or another writer
    changed the status first.
    """
    with db_context():
        appt = load_appointment(appointment_id)
        current = expected_status or appt.status
        target = next_status(current, event)
        if target is None or appt.status != current:
            logger.warning(
                f"[apply_transition] rejected appointment={appointment_id} status={appt.status} event={event}"
            )
            raise InvalidTransitionError(appointment_id, appt.status, event)

        values = dict(changes or {})
        values["status"] = target
        values["updated_at"] = datetime.utcnow()

        rows = (
            Appointment.query
            .filter(Appointment.id == appointment_id, Appointment.status == current)
            .update(values, synchronize_session=False)
        )
        db.session.commit()

        if rows == 0:
            db.session.expire_all()
            appt = load_appointment(appointment_id)
            logger.warning(
                f"[apply_transition] lost race appointment={appointment_id} expected={current} "
                f"now={appt.status} event={event}"
            )
            raise InvalidTransitionError(
                appointment_id, appt.status, event,
                message=f"Appointment {appointment_id} changed to '{appt.status}' concurrently",
            )

        db.session.expire_all()
        appt = load_appointment(appointment_id)
        logger.info(f"[apply_transition] appointment={appointment_id} {current} -> {target} event={event}")

        if target == COMPLETED:
            _close_video(appointment_id)

        recipients = other_party(actor_role) if event in (CANCEL, COMPLETE) else BOTH
        notify(appt, f"appointment_{target.replace('-', '_')}", recipients=recipients, event=event)
        return appt


def _close_video(appointment_id: int):
    # Local import to avoid a cycle (video_service reads appointments through this module).
    from src.services.video_service import close_session

    try:
        close_session(appointment_id)
    except redis.RedisError as e:
        logger.error(f"[apply_transition] could not close video session appointment={appointment_id}: {e}")


def _check_no_show_due(appointment_id: int, now: datetime):
    appt = load_appointment(appointment_id)
    grace = timedelta(minutes=current_app.config["NO_SHOW_GRACE_MINUTES"])
    due_at = appt.appointment_date + grace
    if appt.call_started_at is not None or now < due_at:
        raise InvalidTransitionError(
            appointment_id, appt.status, MARK_NO_SHOW,
            message=f"Appointment {appointment_id} cannot be marked no-show before "
                    f"{due_at.isoformat()}Z or after its call started",
        )


def change_status(appointment_id: int, status, actor_role: str | None = None,
                  reason=None, now: datetime | None = None) -> Appointment:
    """Explicit status change requested by a patient or doctor."""
    if not isinstance(status, str):
        raise ValidationError("status must be a string.", field="status")
    if reason is not None and not isinstance(reason, str):
        raise ValidationError("reason must be a string.", field="reason")

    event = STATUS_EVENTS.get(status)
    if event is None:
        raise ValidationError(
            f"Status must be one of {sorted(STATUS_EVENTS)}; '{status}' cannot be set directly.",
            field="status",
        )

    if event == MARK_NO_SHOW:
        with db_context():
            _check_no_show_due(appointment_id, now or datetime.utcnow())

    changes = {}
    if event == CANCEL and reason:
        changes["cancellation_reason"] = reason[:255]
    return apply_transition(appointment_id, event, changes=changes, actor_role=actor_role)


def cancel_appointment(appointment_id: int, actor_role: str | None = None, reason: str | None = None):
    return change_status(appointment_id, CANCELLED, actor_role=actor_role, reason=reason)


def complete_appointment(appointment_id: int, actor_role: str = "doctor"):
    return change_status(appointment_id, COMPLETED, actor_role=actor_role)
