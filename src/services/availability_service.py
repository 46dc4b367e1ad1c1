import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, time, timedelta

import pytz
from flask import current_app
from pydantic import BaseModel, ConfigDict, Field, field_validator, ValidationError as PydanticValidationError

from extensions import db
from src.models import Doctor, AvailabilityEntry, Appointment
from src.models.appointments_db import CANCELLED
from src.services.db_context import db_context
from src.services.errors import NotFoundError, ValidationError

logger = logging.getLogger("availability_service")

TIME_FORMAT = "%H:%M"


@dataclass(frozen=True)
class Slot:
    date: str        # YYYY-MM-DD, clinic-local
    startTime: str   # HH:MM, clinic-local
    endTime: str

    def to_dict(self):
        return asdict(self)


def day_of_week(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def parse_hhmm(value: str) -> time:
    return datetime.strptime(value, TIME_FORMAT).time()


def clinic_tz():
    return pytz.timezone(current_app.config.get("CLINIC_TIMEZONE", "UTC"))


def slot_start_utc(day: date, start_time: str, tz) -> datetime:
    """Local wall-clock slot start -> naive UTC instant, as stored on Appointment."""
    local = tz.localize(datetime.combine(day, parse_hhmm(start_time)))
    return local.astimezone(pytz.UTC).replace(tzinfo=None)


def utc_to_local(instant: datetime, tz) -> datetime:
    return pytz.UTC.localize(instant).astimezone(tz)


def compute_available_slots(entries, appointments, day: date, tz=pytz.UTC, slot_minutes: int = 30):
    """
    Open slots for one doctor on ``day``.

    ``entries`` is the doctor's weekly template and ``appointments`` are
    (start_utc, duration_minutes) pairs for bookings that still hold a slot.
    Past days are not filtered; callers reject past bookings themselves.
    """
    entry = next((e for e in entries if e.day_of_week == day_of_week(day)), None)
    if entry is None or not entry.is_available:
        return []

    step = timedelta(minutes=slot_minutes)
    cursor = datetime.combine(day, parse_hhmm(entry.start_time))
    end = datetime.combine(day, parse_hhmm(entry.end_time))

    busy = [(start, start + timedelta(minutes=duration)) for start, duration in appointments]

    slots = []
    while cursor + step <= end:
        start_utc = slot_start_utc(day, cursor.strftime(TIME_FORMAT), tz)
        end_utc = start_utc + step
        if not any(start_utc < b_end and b_start < end_utc for b_start, b_end in busy):
            slots.append(Slot(
                date=day.isoformat(),
                startTime=cursor.strftime(TIME_FORMAT),
                endTime=(cursor + step).strftime(TIME_FORMAT),
            ))
        cursor += step

    return slots


def _load_doctor(doctor_id: int) -> Doctor:
    doctor = db.session.get(Doctor, doctor_id)
    if doctor is None:
        raise NotFoundError(f"Doctor {doctor_id} not found", doctorId=doctor_id)
    return doctor


def booked_intervals(doctor_id: int, day: date, tz):
    """(start_utc, duration) for the doctor's non-cancelled appointments on a local day."""
    day_start = slot_start_utc(day, "00:00", tz)
    # Pad by one day so bookings straddling midnight are still seen.
    rows = (
        Appointment.query
        .filter(Appointment.doctor_id == doctor_id)
        .filter(Appointment.status != CANCELLED)
        .filter(Appointment.appointment_date >= day_start - timedelta(days=1))
        .filter(Appointment.appointment_date < day_start + timedelta(days=2))
        .all()
    )
    return [(a.appointment_date, a.duration_minutes) for a in rows]


def get_available_slots(doctor_id: int, day: date):
    """Fresh availability for a doctor/date, read from the store."""
    with db_context():
        doctor = _load_doctor(doctor_id)
        tz = clinic_tz()
        slots = compute_available_slots(
            doctor.availability,
            booked_intervals(doctor_id, day, tz),
            day,
            tz=tz,
            slot_minutes=current_app.config["SLOT_MINUTES"],
        )
        logger.info(f"[get_available_slots] doctor={doctor_id} date={day} open={len(slots)}")
        return slots


# -------------------------------
# 🗓️ TEMPLATE MAINTENANCE
# -------------------------------

class AvailabilityEntryIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    day_of_week: int = Field(..., ge=0, le=6, alias="dayOfWeek")
    start_time: str = Field(..., alias="startTime")
    end_time: str = Field(..., alias="endTime")
    is_available: bool = Field(True, alias="isAvailable")

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_hhmm(cls, v):
        try:
            parse_hhmm(v)
        except ValueError:
            raise ValueError("Time must be in 'HH:MM' format.")
        return v


def _validate_template(raw_entries) -> list[AvailabilityEntryIn]:
    if not isinstance(raw_entries, list):
        raise ValidationError("Availability must be a list of weekday entries.", field="availability")
    if len(raw_entries) > 7:
        raise ValidationError("At most 7 availability entries are allowed.", field="availability")

    entries = []
    for i, raw in enumerate(raw_entries):
        try:
            entry = AvailabilityEntryIn(**raw)
        except PydanticValidationError as e:
            err = e.errors()[0]
            loc = ".".join(str(p) for p in err["loc"])
            raise ValidationError(err["msg"], field=f"availability[{i}].{loc}")
        except TypeError:
            raise ValidationError("Each availability entry must be an object.", field=f"availability[{i}]")
        if entry.is_available and parse_hhmm(entry.start_time) >= parse_hhmm(entry.end_time):
            raise ValidationError("startTime must be before endTime.", field=f"availability[{i}].startTime")
        entries.append(entry)

    days = [e.day_of_week for e in entries]
    if len(days) != len(set(days)):
        raise ValidationError("Only one entry per dayOfWeek is allowed.", field="availability")
    return entries


def get_template(doctor_id: int):
    with db_context():
        return [e.to_dict() for e in _load_doctor(doctor_id).availability]


def set_template(doctor_id: int, raw_entries):
    """Replace the doctor's weekly template."""
    entries = _validate_template(raw_entries)
    with db_context():
        doctor = _load_doctor(doctor_id)
        doctor.availability.clear()
        db.session.flush()
        for e in sorted(entries, key=lambda x: x.day_of_week):
            doctor.availability.append(AvailabilityEntry(
                day_of_week=e.day_of_week,
                start_time=e.start_time,
                end_time=e.end_time,
                is_available=e.is_available,
            ))
        db.session.commit()
        logger.info(f"[set_template] doctor={doctor_id} days={[e.day_of_week for e in entries]}")
        return [e.to_dict() for e in doctor.availability]
