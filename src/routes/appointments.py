from datetime import datetime

from flask import Blueprint, jsonify, request

from src.services.errors import ValidationError


appointments_bp = Blueprint("appointments", __name__, url_prefix="/api")


def ok(data, status: int = 200):
    return jsonify({"success": True, "data": data}), status


def json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    return body


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer.", field=name)


def _str_field(body: dict, name: str, required: bool = True) -> str | None:
    value = body.get(name)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{name} is required.", field=name)
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string.", field=name)
    return value.strip()


@appointments_bp.route("/appointments/availability/<int:doctor_id>/<date>", methods=["GET"])
def availability(doctor_id: int, date: str):
    """Open 30-minute slots for a doctor on a clinic-local date (YYYY-MM-DD)."""
    from src.services.availability_service import get_available_slots  # local import to avoid cycles

    try:
        day = datetime.strptime(date, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("Date must be in format YYYY-MM-DD.", field="date")

    slots = get_available_slots(doctor_id, day)
    return ok({
        "doctorId": doctor_id,
        "date": day.isoformat(),
        "slots": [s.to_dict() for s in slots],
        "availableSlots": [s.startTime for s in slots],
    })


@appointments_bp.route("/appointments", methods=["POST"])
def create_appointment_route():
    from src.services.booking_service import create_appointment

    appt = create_appointment(json_body())
    return ok(appt.to_dict(), 201)


@appointments_bp.route("/appointments", methods=["GET"])
def list_appointments_route():
    from src.services.booking_service import list_appointments

    filters = {
        "patient_id": request.args.get("patientId"),
        "doctor_id": request.args.get("doctorId"),
        "status": request.args.get("status"),
        "consultation_type": request.args.get("consultationType"),
        "date_from": request.args.get("dateFrom"),
        "date_to": request.args.get("dateTo"),
    }
    return ok(list_appointments(filters, page=_int_arg("page", 1), limit=_int_arg("limit", 10)))


@appointments_bp.route("/appointments/stats", methods=["GET"])
def appointment_stats_route():
    from src.services.booking_service import appointment_stats

    role = request.args.get("role", "")
    user_id = _int_arg("userId", 0)
    if not user_id:
        raise ValidationError("userId is required.", field="userId")
    return ok(appointment_stats(role, user_id))


@appointments_bp.route("/appointments/<int:appointment_id>", methods=["GET"])
def get_appointment_route(appointment_id: int):
    from src.services.booking_service import get_appointment

    return ok(get_appointment(appointment_id).to_dict())


@appointments_bp.route("/appointments/<int:appointment_id>/status", methods=["PATCH"])
def change_status_route(appointment_id: int):
    from src.services.appointment_state import change_status

    body = json_body()
    status = _str_field(body, "status")
    appt = change_status(appointment_id, status, actor_role=body.get("role"), reason=body.get("reason"))
    return ok(appt.to_dict())


@appointments_bp.route("/appointments/<int:appointment_id>/notes", methods=["PATCH"])
def update_notes_route(appointment_id: int):
    from src.services.booking_service import update_clinical_notes

    body = json_body()
    appt = update_clinical_notes(
        appointment_id,
        notes=_str_field(body, "notes", required=False),
        diagnosis=_str_field(body, "diagnosis", required=False),
        prescription_ref=_str_field(body, "prescriptionRef", required=False),
    )
    return ok(appt.to_dict())


@appointments_bp.route("/appointments/<int:appointment_id>/rating", methods=["POST"])
def add_rating_route(appointment_id: int):
    from src.services.booking_service import add_rating

    body = json_body()
    appt = add_rating(appointment_id, body.get("role"), body.get("rating"), review=body.get("review"))
    return ok(appt.to_dict())


# -------------------------------
# 💳 PAYMENTS
# -------------------------------

@appointments_bp.route("/appointments/<int:appointment_id>/payments", methods=["POST"])
def create_payment_route(appointment_id: int):
    from src.services.payment_gate import create_payment_intent

    body = json_body()
    gateway = _str_field(body, "gateway")
    intent = create_payment_intent(appointment_id, gateway, currency=_str_field(body, "currency", required=False))
    return ok(intent.to_dict(), 201)


@appointments_bp.route("/payments/<intent_id>/process", methods=["POST"])
def process_payment_route(intent_id: str):
    from src.services.payment_gate import process_payment

    return ok(process_payment(intent_id).to_dict())


@appointments_bp.route("/appointments/<int:appointment_id>/payment-confirm", methods=["POST"])
def payment_confirm_route(appointment_id: int):
    """Webhook-style confirmation carrying an already-processed gateway outcome."""
    from src.services.payment_gate import confirm_payment

    return ok(confirm_payment(appointment_id, json_body()).to_dict())


@appointments_bp.route("/payments", methods=["GET"])
def list_payments_route():
    from src.services.payment_gate import list_payments

    filters = {
        "appointment_id": request.args.get("appointmentId"),
        "patient_id": request.args.get("patientId"),
        "doctor_id": request.args.get("doctorId"),
        "status": request.args.get("status"),
        "gateway": request.args.get("gateway"),
        "date_from": request.args.get("dateFrom"),
        "date_to": request.args.get("dateTo"),
        "amount_from": request.args.get("amountFrom"),
        "amount_to": request.args.get("amountTo"),
    }
    return ok(list_payments(filters, page=_int_arg("page", 1), limit=_int_arg("limit", 10)))


@appointments_bp.route("/payments/<intent_id>", methods=["GET"])
def get_payment_route(intent_id: str):
    from src.services.payment_gate import get_payment

    return ok(get_payment(intent_id).to_dict())
