from datetime import datetime, timedelta, date
import logging

import pytz
from flask import current_app
from pydantic import BaseModel, ConfigDict, Field, field_validator, ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError

from extensions import db
from src.models import Patient, Doctor, Appointment
from src.models.appointments_db import (
    SCHEDULED, CONFIRMED, COMPLETED, CANCELLED, PAYMENT_PENDING, CONSULTATION_TYPES,
    APPOINTMENT_STATUSES,
)
from src.services.availability_service import (
    compute_available_slots, booked_intervals, clinic_tz, utc_to_local,
)
from src.services.appointment_state import load_appointment
from src.services.db_context import db_context
from src.services.errors import ConflictError, NotFoundError, ValidationError, InvalidTransitionError
from src.services.notification_service import notify, PATIENT


logger = logging.getLogger("booking_service")


class BookingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    patient_id: int = Field(..., alias="patientId")
    doctor_id: int = Field(..., alias="doctorId")
    appointment_date: datetime = Field(..., alias="appointmentDate")
    consultation_type: str = Field(..., alias="consultationType")
    symptoms: str

    @field_validator("appointment_date")
    @classmethod
    def to_naive_utc(cls, v):
        if v.tzinfo is not None:
            v = v.astimezone(pytz.UTC).replace(tzinfo=None)
        return v

    @field_validator("consultation_type")
    @classmethod
    def validate_type(cls, v):
        if v not in CONSULTATION_TYPES:
            raise ValueError(f"consultationType must be one of {', '.join(CONSULTATION_TYPES)}.")
        return v

    @field_validator("symptoms")
    @classmethod
    def strip_symptoms(cls, v):
        return v.strip()


def parse_booking_request(payload) -> BookingRequest:
    """Validate raw input, turning pydantic errors into a field-level ValidationError."""
    if isinstance(payload, BookingRequest):
        return payload
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    try:
        return BookingRequest(**payload)
    except PydanticValidationError as e:
        err = e.errors()[0]
        loc = err["loc"][0] if err["loc"] else None
        alias = BookingRequest.model_fields[loc].alias if loc in BookingRequest.model_fields else loc
        raise ValidationError(err["msg"], field=alias)


def _check_business_rules(req: BookingRequest, now: datetime):
    cfg = current_app.config
    if req.appointment_date <= now:
        raise ValidationError("Appointment date must be in the future.", field="appointmentDate")
    if len(req.symptoms) < cfg["MIN_SYMPTOMS_LENGTH"]:
        raise ValidationError(
            f"Symptoms must be at least {cfg['MIN_SYMPTOMS_LENGTH']} characters long.", field="symptoms"
        )
    if len(req.symptoms) > cfg["MAX_SYMPTOMS_LENGTH"]:
        raise ValidationError(
            f"Symptoms must be less than {cfg['MAX_SYMPTOMS_LENGTH']} characters.", field="symptoms"
        )


def _slot_is_open(doctor: Doctor, instant: datetime) -> bool:
    tz = clinic_tz()
    local = utc_to_local(instant, tz)
    day = local.date()
    slots = compute_available_slots(
        doctor.availability,
        booked_intervals(doctor.id, day, tz),
        day,
        tz=tz,
        slot_minutes=current_app.config["SLOT_MINUTES"],
    )
    start = local.strftime("%H:%M")
    return local.second == 0 and local.microsecond == 0 and any(s.startTime == start for s in slots)


# -------------------------------
# 📅 BOOKING
# -------------------------------

def create_appointment(request, now: datetime | None = None) -> Appointment:
    """
    Book a provisional appointment (scheduled / payment pending).

    Availability is re-checked against the store at write time; the partial
    unique index on (doctor_id, appointment_date) settles the remaining race.
    """
    now = now or datetime.utcnow()
    req = parse_booking_request(request)
    _check_business_rules(req, now)

    with db_context():
        patient = db.session.get(Patient, req.patient_id)
        if patient is None:
            raise ValidationError(f"Unknown patient {req.patient_id}.", field="patientId")
        doctor = db.session.get(Doctor, req.doctor_id)
        if doctor is None:
            raise NotFoundError(f"Doctor {req.doctor_id} not found", doctorId=req.doctor_id)

        if not _slot_is_open(doctor, req.appointment_date):
            logger.info(
                f"[create_appointment] slot unavailable doctor={doctor.id} at={req.appointment_date.isoformat()}"
            )
            raise ConflictError(
                "The requested time is not available; please pick another slot.",
                doctorId=doctor.id,
                appointmentDate=req.appointment_date.isoformat() + "Z",
            )

        appt = Appointment(
            patient_id=patient.id,
            doctor_id=doctor.id,
            appointment_date=req.appointment_date,
            duration_minutes=current_app.config["APPOINTMENT_DURATION_MINUTES"],
            consultation_type=req.consultation_type,
            symptoms=req.symptoms,
            specialization=doctor.specialization,
            fee=doctor.consultation_fee,
            status=SCHEDULED,
            payment_status=PAYMENT_PENDING,
            created_at=now,
        )
        db.session.add(appt)
        try:
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            logger.info(f"[create_appointment] lost slot race doctor={doctor.id} at={req.appointment_date}: {e.orig}")
            raise ConflictError(
                "The requested time was just booked by someone else; please pick another slot.",
                doctorId=doctor.id,
                appointmentDate=req.appointment_date.isoformat() + "Z",
            )

        logger.info(
            f"[create_appointment] appointment={appt.id} patient={patient.id} doctor={doctor.id} "
            f"at={appt.appointment_date.isoformat()} fee={appt.fee}"
        )
        notify(appt, "appointment_scheduled")
        return appt


# -------------------------------
# 🔎 READS
# -------------------------------

def get_appointment(appointment_id: int) -> Appointment:
    with db_context():
        return load_appointment(appointment_id)


def parse_day(value, field):
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("Dates must be in YYYY-MM-DD format.", field=field)


def list_appointments(filters: dict | None = None, page: int = 1, limit: int = 10) -> dict:
    """Filtered, paginated listing (newest appointment first)."""
    filters = filters or {}
    if page < 1 or not 1 <= limit <= 100:
        raise ValidationError("page must be >= 1 and limit between 1 and 100.", field="limit")

    with db_context():
        query = Appointment.query

        for key, column, field in (("patient_id", Appointment.patient_id, "patientId"),
                                   ("doctor_id", Appointment.doctor_id, "doctorId")):
            if filters.get(key):
                try:
                    query = query.filter(column == int(filters[key]))
                except (TypeError, ValueError):
                    raise ValidationError(f"{field} must be an integer.", field=field)

        statuses = filters.get("status")
        if statuses:
            if isinstance(statuses, str):
                statuses = [s.strip() for s in statuses.split(",") if s.strip()]
            unknown = [s for s in statuses if s not in APPOINTMENT_STATUSES]
            if unknown:
                raise ValidationError(f"Unknown status: {', '.join(unknown)}", field="status")
            query = query.filter(Appointment.status.in_(statuses))

        if filters.get("consultation_type"):
            query = query.filter(Appointment.consultation_type == filters["consultation_type"])

        date_from = parse_day(filters.get("date_from"), "dateFrom")
        date_to = parse_day(filters.get("date_to"), "dateTo")
        if date_from:
            query = query.filter(Appointment.appointment_date >= datetime.combine(date_from, datetime.min.time()))
        if date_to:
            query = query.filter(
                Appointment.appointment_date < datetime.combine(date_to + timedelta(days=1), datetime.min.time())
            )

        total = query.count()
        rows = (
            query.order_by(Appointment.appointment_date.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "appointments": [a.to_dict() for a in rows],
            "totalCount": total,
            "totalPages": (total + limit - 1) // limit,
            "currentPage": page,
        }


def appointment_stats(role: str, user_id: int) -> dict:
    if role not in ("patient", "doctor"):
        raise ValidationError("role must be 'patient' or 'doctor'.", field="role")
    with db_context():
        column = Appointment.patient_id if role == "patient" else Appointment.doctor_id
        base = Appointment.query.filter(column == user_id)
        return {
            "total": base.count(),
            "upcoming": base.filter(Appointment.status.in_([SCHEDULED, CONFIRMED])).count(),
            "completed": base.filter(Appointment.status == COMPLETED).count(),
            "cancelled": base.filter(Appointment.status == CANCELLED).count(),
        }


# -------------------------------
# 🩺 DOCTOR NOTES
# -------------------------------

def update_clinical_notes(appointment_id: int, notes: str | None = None, diagnosis: str | None = None,
                          prescription_ref: str | None = None) -> Appointment:
    """Record the doctor's notes/diagnosis/prescription reference on a live or completed visit."""
    with db_context():
        appt = load_appointment(appointment_id)
        if appt.status not in (CONFIRMED, COMPLETED):
            raise InvalidTransitionError(
                appointment_id, appt.status, "update_notes",
                message=f"Notes can only be added to confirmed or completed appointments (is '{appt.status}')",
            )
        if notes is not None:
            appt.notes = notes
        if diagnosis is not None:
            appt.diagnosis = diagnosis
        if prescription_ref is not None:
            appt.prescription_ref = prescription_ref
        db.session.commit()
        logger.info(f"[update_clinical_notes] appointment={appointment_id}")
        notify(appt, "appointment_notes_updated", recipients=(PATIENT,))
        return appt


# -------------------------------
# ⭐ RATINGS
# -------------------------------

class RatingIn(BaseModel):
    role: str
    rating: int = Field(..., ge=1, le=5, strict=True)
    review: str | None = Field(None, max_length=1000)

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        if v not in ("patient", "doctor"):
            raise ValueError("role must be 'patient' or 'doctor'.")
        return v


def add_rating(appointment_id: int, role, rating, review=None) -> Appointment:
    """Store the patient's or the doctor's rating of a completed visit (one per side, last write wins)."""
    try:
        data = RatingIn(role=role, rating=rating, review=review)
    except PydanticValidationError as e:
        err = e.errors()[0]
        raise ValidationError(err["msg"], field=str(err["loc"][0]) if err["loc"] else None)

    with db_context():
        appt = load_appointment(appointment_id)
        if appt.status != COMPLETED:
            raise InvalidTransitionError(
                appointment_id, appt.status, "rate",
                message=f"Only completed appointments can be rated (is '{appt.status}')",
            )
        review_text = data.review.strip() if data.review else None
        if data.role == "patient":
            appt.patient_rating = data.rating
            appt.patient_review = review_text
        else:
            appt.doctor_rating = data.rating
            appt.doctor_review = review_text
        db.session.commit()
        logger.info(f"[add_rating] appointment={appointment_id} role={data.role} rating={data.rating}")
        return appt
