import logging
from datetime import datetime, timedelta

from flask import current_app

from extensions import db
from src.models import Appointment
from src.models.appointments_db import CONFIRMED
from src.services import redis_service
from src.services.redis_service import VideoSession, ENDED, NOT_STARTED
from src.services.appointment_state import load_appointment
from src.services.db_context import db_context
from src.services.errors import AdmissionError
from src.services.notification_service import notify, DOCTOR

logger = logging.getLogger("video_service")

HOST_ROLE = DOCTOR

TOO_EARLY = "too-early"
TOO_LATE = "too-late"
NOT_CONFIRMED = "not-confirmed"
NOT_VIDEO = "not-video"
NOT_HOST = "not-host"
NO_ACTIVE_SESSION = "no-active-session"


def admission_window(appointment: Appointment):
    cfg = current_app.config
    opens = appointment.appointment_date - timedelta(minutes=cfg["VIDEO_JOIN_EARLY_MINUTES"])
    closes = appointment.appointment_date + timedelta(minutes=cfg["VIDEO_JOIN_LATE_MINUTES"])
    return opens, closes


def admission_reason(appointment: Appointment, now: datetime, participant_role: str | None = None):
    """None when the participant may join; otherwise the denial reason."""
    if appointment.consultation_type != "video":
        return NOT_VIDEO
    if appointment.status != CONFIRMED:
        return NOT_CONFIRMED
    opens, closes = admission_window(appointment)
    if now < opens:
        return TOO_EARLY
    if now > closes:
        return TOO_LATE
    return None


def can_join(appointment: Appointment, now: datetime, participant_role: str | None = None) -> bool:
    return admission_reason(appointment, now, participant_role) is None


def _deny(appointment: Appointment, reason: str, role: str | None):
    opens, closes = admission_window(appointment)
    logger.info(f"[video] denied appointment={appointment.id} role={role} reason={reason}")
    raise AdmissionError(
        reason,
        appointmentId=appointment.id,
        opensAt=opens.isoformat() + "Z",
        closesAt=closes.isoformat() + "Z",
    )


def _check_admission(appointment: Appointment, now: datetime, role: str | None):
    reason = admission_reason(appointment, now, role)
    if reason:
        _deny(appointment, reason, role)


def start_call(appointment_id: int, host_role: str, host_participant_id: str | None = None,
               now: datetime | None = None) -> VideoSession:
    """
    Start (or re-join) the call for a confirmed video appointment.
    Idempotent: while a session is active every start returns it.
    """
    now = now or datetime.utcnow()
    with db_context():
        appt = load_appointment(appointment_id)
        if host_role != HOST_ROLE:
            _deny(appt, NOT_HOST, host_role)
        _check_admission(appt, now, host_role)

        host_id = host_participant_id or f"doctor:{appt.doctor_id}"
        ttl = current_app.config["VIDEO_MAX_DURATION_MINUTES"] * 60

        for _ in range(2):
            candidate = VideoSession.start(appointment_id, host_id, now)
            if redis_service.claim_active_session(candidate, ttl):
                redis_service.add_participant(appointment_id, host_id)
                candidate.participants = [host_id]
                if appt.call_started_at is None:
                    appt.call_started_at = now
                    db.session.commit()
                logger.info(f"[start_call] appointment={appointment_id} session={candidate.id}")
                return candidate

            existing = redis_service.load_active_session(appointment_id)
            if existing:
                logger.info(f"[start_call] reuse appointment={appointment_id} session={existing.id}")
                return existing
            # Active key expired between SET NX and GET; claim again.

        raise AdmissionError(NO_ACTIVE_SESSION, f"Could not start a session for appointment {appointment_id}")


def join_call(appointment_id: int, role: str, participant_id: str, now: datetime | None = None) -> VideoSession:
    now = now or datetime.utcnow()
    with db_context():
        appt = load_appointment(appointment_id)
        _check_admission(appt, now, role)
        session = redis_service.load_active_session(appointment_id)
        if session is None:
            _deny(appt, NO_ACTIVE_SESSION, role)
        redis_service.add_participant(appointment_id, participant_id)
        session.participants = sorted(set(session.participants) | {participant_id})
        logger.info(f"[join_call] appointment={appointment_id} participant={participant_id} role={role}")
        return session


def leave_call(appointment_id: int, participant_id: str) -> VideoSession | None:
    """Drop one participant; the session stays active until the host ends it."""
    removed = redis_service.remove_participant(appointment_id, participant_id)
    logger.info(f"[leave_call] appointment={appointment_id} participant={participant_id} removed={removed}")
    return redis_service.load_active_session(appointment_id)


def close_session(appointment_id: int, now: datetime | None = None) -> VideoSession | None:
    """End the active session without a host check. None when nothing was active."""
    now = now or datetime.utcnow()
    session = redis_service.pop_active_session(appointment_id)
    if session is None:
        return None
    session.state = ENDED
    session.ended_at = now.isoformat()
    redis_service.save_ended_session(session)
    logger.info(f"[close_session] appointment={appointment_id} session={session.id}")
    return session


def end_call(appointment_id: int, role: str, now: datetime | None = None) -> VideoSession:
    """
    Host-only. Ends the session and records the fact on the appointment, but
    does not complete it: the doctor marks completion separately.
    """
    now = now or datetime.utcnow()
    with db_context():
        appt = load_appointment(appointment_id)
        if role != HOST_ROLE:
            _deny(appt, NOT_HOST, role)

        session = close_session(appointment_id, now)
        if session is None:
            _deny(appt, NO_ACTIVE_SESSION, role)

        appt.call_ended_at = now
        db.session.commit()
        notify(appt, "video_call_ended", recipients=(DOCTOR,), sessionId=session.id)
        return session


def get_session(appointment_id: int) -> VideoSession:
    return (
        redis_service.load_active_session(appointment_id)
        or redis_service.load_ended_session(appointment_id)
        or VideoSession(appointment_id=appointment_id, state=NOT_STARTED)
    )
