from flask import Blueprint, request

from src.routes.appointments import ok
from src.services.errors import ValidationError


doctors_bp = Blueprint("doctors", __name__, url_prefix="/api/doctors")


@doctors_bp.route("/<int:doctor_id>/availability", methods=["GET"])
def get_availability_template(doctor_id: int):
    from src.services.availability_service import get_template

    return ok({"doctorId": doctor_id, "availability": get_template(doctor_id)})


@doctors_bp.route("/<int:doctor_id>/availability", methods=["PUT"])
def put_availability_template(doctor_id: int):
    """Replace the doctor's weekly template (body: {"availability": [...]})."""
    from src.services.availability_service import set_template

    body = request.get_json(silent=True)
    if not isinstance(body, dict) or "availability" not in body:
        raise ValidationError("Body must be an object with an 'availability' list.", field="availability")
    return ok({"doctorId": doctor_id, "availability": set_template(doctor_id, body["availability"])})
