import logging
from datetime import datetime, timedelta

from flask import current_app

from extensions import db
from src.models import Appointment
from src.models.appointments_db import SCHEDULED, CONFIRMED, PAYMENT_PENDING
from src.services.appointment_state import apply_transition, EXPIRED, MARK_NO_SHOW
from src.services.db_context import db_context
from src.services.errors import InvalidTransitionError
from src.services.notification_service import notify

logger = logging.getLogger("reconciler")


def expire_stale_bookings(now: datetime) -> int:
    """Cancel provisional bookings that never received a payment result."""
    ttl = timedelta(minutes=current_app.config["BOOKING_TTL_MINUTES"])
    stale_ids = [
        a.id for a in Appointment.query
        .filter(Appointment.status == SCHEDULED)
        .filter(Appointment.payment_status == PAYMENT_PENDING)
        .filter(Appointment.created_at <= now - ttl)
        .all()
    ]

    expired = 0
    for appointment_id in stale_ids:
        try:
            apply_transition(
                appointment_id,
                EXPIRED,
                changes={"cancellation_reason": "payment not received in time"},
                expected_status=SCHEDULED,
            )
            expired += 1
        except InvalidTransitionError as e:
            logger.info(f"[reconcile] skip expire appointment={appointment_id}: {e}")
    return expired


def mark_no_shows(now: datetime) -> int:
    """Confirmed appointments whose grace window passed with no call started by the doctor."""
    grace = timedelta(minutes=current_app.config["NO_SHOW_GRACE_MINUTES"])
    elapsed_ids = [
        a.id for a in Appointment.query
        .filter(Appointment.status == CONFIRMED)
        .filter(Appointment.appointment_date <= now - grace)
        .filter(Appointment.call_started_at.is_(None))
        .all()
    ]

    marked = 0
    for appointment_id in elapsed_ids:
        try:
            apply_transition(appointment_id, MARK_NO_SHOW, expected_status=CONFIRMED)
            marked += 1
        except InvalidTransitionError as e:
            logger.info(f"[reconcile] skip no-show appointment={appointment_id}: {e}")
    return marked


def find_unresolved_calls(now: datetime) -> list:
    """
    Confirmed appointments whose call started but which nobody completed or
    cancelled once the grace window passed. They are reported, never moved.
    """
    grace = timedelta(minutes=current_app.config["NO_SHOW_GRACE_MINUTES"])
    stuck_ids = [
        a.id for a in Appointment.query
        .filter(Appointment.status == CONFIRMED)
        .filter(Appointment.appointment_date <= now - grace)
        .filter(Appointment.call_started_at.isnot(None))
        .order_by(Appointment.appointment_date)
        .all()
    ]
    if stuck_ids:
        logger.warning(f"[reconcile] unresolved calls appointments={stuck_ids}")
    return stuck_ids


def send_reminders(now: datetime) -> int:
    lead = timedelta(hours=current_app.config["REMINDER_LEAD_HOURS"])
    due = (
        Appointment.query
        .filter(Appointment.status == CONFIRMED)
        .filter(Appointment.appointment_date > now)
        .filter(Appointment.appointment_date <= now + lead)
        .filter(Appointment.reminder_sent_at.is_(None))
        .all()
    )
    for appt in due:
        notify(appt, "appointment_reminder")
        appt.reminder_sent_at = now
    db.session.commit()
    return len(due)


def reconcile(now: datetime | None = None) -> dict:
    """One sweep; meant to be run periodically by an external scheduler."""
    now = now or datetime.utcnow()
    with db_context():
        summary = {
            "expired": expire_stale_bookings(now),
            "noShow": mark_no_shows(now),
            "reminded": send_reminders(now),
            "unresolvedCalls": find_unresolved_calls(now),
        }
    logger.info(f"[reconcile] at={now.isoformat()} summary={summary}")
    return summary
