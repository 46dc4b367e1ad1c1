import threading
from datetime import datetime, timedelta

import pytest
from flask import Flask

from extensions import db
from src.models import Appointment, Doctor
from src.services.booking_service import (
    create_appointment, list_appointments, appointment_stats, update_clinical_notes, add_rating,
)
from src.services.appointment_state import complete_appointment
from src.services.errors import ConflictError, ValidationError, NotFoundError, InvalidTransitionError

from conftest import at, book, booking_payload, confirm


def test_books_scheduled_pending_appointment(app, doctor, patient, monday, sink):
    appt = book(doctor, patient, at(monday, "09:30"))

    assert appt.status == "scheduled"
    assert appt.payment_status == "pending"
    assert appt.payment_id is None
    assert appt.fee == 500.0
    assert appt.duration_minutes == 30
    assert appt.specialization == "Cardiology"
    assert appt.appointment_date == at(monday, "09:30")
    assert sink.kinds() == ["appointment_scheduled", "appointment_scheduled"]
    assert {e["recipientRole"] for e in sink.events} == {"patient", "doctor"}


def test_fee_is_snapshotted_at_booking(app, doctor, patient, monday):
    appt = book(doctor, patient, at(monday, "10:00"))

    doc = db.session.get(Doctor, doctor.id)
    doc.consultation_fee = 900.0
    db.session.commit()

    assert db.session.get(Appointment, appt.id).fee == 500.0


def test_symptoms_are_trimmed_and_length_checked(app, doctor, patient, monday):
    payload = booking_payload(doctor, patient, at(monday, "09:00"), symptoms="   headache    ")
    with pytest.raises(ValidationError) as exc:
        create_appointment(payload)
    assert exc.value.field == "symptoms"


def test_rejects_unknown_consultation_type(app, doctor, patient, monday):
    payload = booking_payload(doctor, patient, at(monday, "09:00"), consultation_type="chat")
    with pytest.raises(ValidationError) as exc:
        create_appointment(payload)
    assert exc.value.field == "consultationType"


def test_rejects_past_dates(app, doctor, patient, monday):
    payload = booking_payload(doctor, patient, at(monday, "09:00"))
    with pytest.raises(ValidationError) as exc:
        create_appointment(payload, now=at(monday, "09:00") + timedelta(minutes=1))
    assert exc.value.field == "appointmentDate"


def test_rejects_missing_fields(app):
    with pytest.raises(ValidationError) as exc:
        create_appointment({"doctorId": 1})
    assert exc.value.field in ("patientId", "appointmentDate", "consultationType", "symptoms")


def test_unknown_doctor_and_patient(app, doctor, patient, monday):
    payload = booking_payload(doctor, patient, at(monday, "09:00"))
    with pytest.raises(NotFoundError):
        create_appointment({**payload, "doctorId": 404})
    with pytest.raises(ValidationError) as exc:
        create_appointment({**payload, "patientId": 404})
    assert exc.value.field == "patientId"


def test_time_outside_template_conflicts(app, doctor, patient, monday):
    with pytest.raises(ConflictError):
        book(doctor, patient, at(monday, "12:00"))
    with pytest.raises(ConflictError):
        book(doctor, patient, at(monday, "09:15"))
    # Tuesday has no template entry.
    with pytest.raises(ConflictError):
        book(doctor, patient, at(monday + timedelta(days=1), "09:00"))


def test_taken_slot_conflicts(app, doctor, patient, second_patient, monday):
    book(doctor, patient, at(monday, "09:30"))
    with pytest.raises(ConflictError):
        book(doctor, second_patient, at(monday, "09:30"))


def test_slot_can_be_rebooked_after_cancel(app, doctor, patient, second_patient, monday):
    from src.services.appointment_state import cancel_appointment

    first = book(doctor, patient, at(monday, "09:30"))
    cancel_appointment(first.id, actor_role="patient")

    second = book(doctor, second_patient, at(monday, "09:30"))
    assert second.status == "scheduled"
    assert Appointment.query.count() == 2


def test_unique_index_blocks_stale_double_insert(app, doctor, patient, second_patient, monday):
    """Even if the availability re-check is bypassed, the store refuses a second live row."""
    from sqlalchemy.exc import IntegrityError

    book(doctor, patient, at(monday, "09:30"))
    db.session.add(Appointment(
        patient_id=second_patient.id, doctor_id=doctor.id, appointment_date=at(monday, "09:30"),
        consultation_type="video", symptoms="Persistent dry cough", fee=500.0,
    ))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_concurrent_bookings_yield_one_winner(app: Flask, doctor, patient, second_patient, monday):
    payloads = [
        booking_payload(doctor, patient, at(monday, "10:00")),
        booking_payload(doctor, second_patient, at(monday, "10:00")),
    ]
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt(payload):
        with app.app_context():
            barrier.wait()
            try:
                appt = create_appointment(payload)
                outcomes.append(("ok", appt.id))
            except ConflictError as e:
                outcomes.append(("conflict", e.kind))
            finally:
                db.session.remove()

    threads = [threading.Thread(target=attempt, args=(p,)) for p in payloads]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(o[0] for o in outcomes) == ["conflict", "ok"]
    db.session.expire_all()
    live = Appointment.query.filter(Appointment.status == "scheduled").all()
    assert len(live) == 1


def test_list_and_stats(app, doctor, patient, second_patient, monday):
    from src.services.appointment_state import cancel_appointment

    a1 = book(doctor, patient, at(monday, "09:00"))
    book(doctor, second_patient, at(monday, "09:30"), consultation_type="phone")
    a3 = book(doctor, patient, at(monday, "10:00"), consultation_type="in-person")
    cancel_appointment(a3.id, actor_role="patient")

    page = list_appointments({"patient_id": patient.id})
    assert page["totalCount"] == 2
    assert [a["id"] for a in page["appointments"]] == [a3.id, a1.id]

    scheduled = list_appointments({"doctor_id": doctor.id, "status": "scheduled"}, limit=1)
    assert scheduled["totalCount"] == 2
    assert scheduled["totalPages"] == 2
    assert len(scheduled["appointments"]) == 1

    phone = list_appointments({"consultation_type": "phone", "date_from": monday.isoformat(),
                               "date_to": monday.isoformat()})
    assert phone["totalCount"] == 1

    with pytest.raises(ValidationError):
        list_appointments({"status": "archived"})

    assert appointment_stats("doctor", doctor.id) == {"total": 3, "upcoming": 2, "completed": 0, "cancelled": 1}
    assert appointment_stats("patient", patient.id)["cancelled"] == 1


def test_clinical_notes_require_confirmed_visit(app, doctor, patient, monday, sink):
    appt = book(doctor, patient, at(monday, "09:00"))
    with pytest.raises(InvalidTransitionError):
        update_clinical_notes(appt.id, notes="BP 140/90")

    confirm(appt.id)
    updated = update_clinical_notes(appt.id, notes="BP 140/90", diagnosis="Hypertension", prescription_ref="rx_77")

    assert updated.notes == "BP 140/90"
    assert updated.diagnosis == "Hypertension"
    assert updated.prescription_ref == "rx_77"
    assert sink.events[-1] == {"appointmentId": appt.id, "kind": "appointment_notes_updated",
                               "recipientRole": "patient"}


def test_ratings_only_on_completed_visits(app, doctor, patient, monday):
    appt = confirm(book(doctor, patient, at(monday, "09:00")).id)
    with pytest.raises(InvalidTransitionError):
        add_rating(appt.id, "patient", 5)

    complete_appointment(appt.id)
    add_rating(appt.id, "patient", 4, review="  Clear explanation  ")
    rated = add_rating(appt.id, "doctor", 5)

    assert rated.to_dict()["rating"] == {
        "patientRating": 4,
        "patientReview": "Clear explanation",
        "doctorRating": 5,
        "doctorReview": None,
    }


@pytest.mark.parametrize("role, rating, field", [
    ("patient", 0, "rating"),
    ("patient", 6, "rating"),
    ("patient", "5", "rating"),
    ("patient", True, "rating"),
    ("nurse", 3, "role"),
])
def test_rating_input_validation(app, doctor, patient, monday, role, rating, field):
    appt = confirm(book(doctor, patient, at(monday, "09:00")).id)
    complete_appointment(appt.id)

    with pytest.raises(ValidationError) as exc:
        add_rating(appt.id, role, rating)
    assert exc.value.field == field
