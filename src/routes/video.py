from datetime import datetime

from flask import Blueprint, request

from src.routes.appointments import ok, json_body
from src.services.errors import ValidationError


video_bp = Blueprint("video", __name__, url_prefix="/api")


def _role(body: dict) -> str:
    role = body.get("role") or request.args.get("role")
    if role not in ("patient", "doctor"):
        raise ValidationError("role must be 'patient' or 'doctor'.", field="role")
    return role


@video_bp.route("/appointments/<int:appointment_id>/video", methods=["GET"])
def session_state(appointment_id: int):
    from src.services.video_service import get_session

    return ok(get_session(appointment_id).to_dict())


@video_bp.route("/appointments/<int:appointment_id>/video/admission", methods=["GET"])
def admission(appointment_id: int):
    """Whether the caller may join right now, plus the window for a countdown."""
    from src.services.booking_service import get_appointment
    from src.services.video_service import admission_reason, admission_window

    role = _role({})
    appt = get_appointment(appointment_id)
    reason = admission_reason(appt, datetime.utcnow(), role)
    opens, closes = admission_window(appt)
    return ok({
        "appointmentId": appointment_id,
        "canJoin": reason is None,
        "reason": reason,
        "opensAt": opens.isoformat() + "Z",
        "closesAt": closes.isoformat() + "Z",
    })


@video_bp.route("/appointments/<int:appointment_id>/video/start", methods=["POST"])
def start(appointment_id: int):
    from src.services.video_service import start_call

    body = json_body()
    session = start_call(appointment_id, _role(body), host_participant_id=body.get("participantId"))
    return ok(session.to_dict(), 201)


@video_bp.route("/appointments/<int:appointment_id>/video/join", methods=["POST"])
def join(appointment_id: int):
    from src.services.video_service import join_call

    body = json_body()
    participant_id = body.get("participantId")
    if not participant_id:
        raise ValidationError("participantId is required.", field="participantId")
    return ok(join_call(appointment_id, _role(body), participant_id).to_dict())


@video_bp.route("/appointments/<int:appointment_id>/video/leave", methods=["POST"])
def leave(appointment_id: int):
    from src.services.video_service import leave_call

    body = json_body()
    participant_id = body.get("participantId")
    if not participant_id:
        raise ValidationError("participantId is required.", field="participantId")
    session = leave_call(appointment_id, participant_id)
    return ok(session.to_dict() if session else None)


@video_bp.route("/appointments/<int:appointment_id>/video/end", methods=["POST"])
def end(appointment_id: int):
    from src.services.video_service import end_call

    body = json_body()
    return ok(end_call(appointment_id, _role(body)).to_dict())


@video_bp.route("/video/sessions", methods=["GET"])
def live_sessions():
    from src.services.redis_service import list_active_sessions

    return ok(list_active_sessions())
