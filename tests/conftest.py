from datetime import date, datetime, timedelta

import fakeredis
import pytest
from flask import Flask

from config import TestConfig
from extensions import db
from src.app_factory import create_app
from src.models import Patient, Doctor, AvailabilityEntry
from src.services import redis_service
from src.services import db_context as dbc
from src.services.notification_service import NotificationSink

MONDAY = 1  # dayOfWeek, 0 = Sunday


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events = []

    def emit(self, event: dict) -> None:
        self.events.append(event)

    def kinds(self):
        return [e["kind"] for e in self.events]


@pytest.fixture
def app(tmp_path, monkeypatch) -> Flask:
    # File-backed sqlite so concurrent tests get real per-thread connections.
    app = create_app(TestConfig, {"SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test_telehealth.db'}"})
    monkeypatch.setattr(redis_service, "r", fakeredis.FakeRedis(decode_responses=True))
    monkeypatch.setattr(dbc, "flask_app", app)
    app.extensions["notification_sink"] = RecordingSink()
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app: Flask):
    return app.test_client()


@pytest.fixture
def sink(app: Flask) -> RecordingSink:
    return app.extensions["notification_sink"]


@pytest.fixture
def doctor(app: Flask) -> Doctor:
    """Dr. with a Monday 09:00-11:00 template and a 500 INR fee."""
    doc = Doctor(name="Dr. Meera Rao", specialization="Cardiology", consultation_fee=500.0, currency="INR")
    doc.availability.append(
        AvailabilityEntry(day_of_week=MONDAY, start_time="09:00", end_time="11:00", is_available=True)
    )
    db.session.add(doc)
    db.session.commit()
    return doc


@pytest.fixture
def patient(app: Flask) -> Patient:
    p = Patient(name="Ali Khan", phone="15551234567", email="ali@example.com")
    db.session.add(p)
    db.session.commit()
    return p


@pytest.fixture
def second_patient(app: Flask) -> Patient:
    p = Patient(name="Sara Malik", phone="15557654321")
    db.session.add(p)
    db.session.commit()
    return p


def next_monday(today: date | None = None) -> date:
    today = today or datetime.utcnow().date()
    days_ahead = (0 - today.weekday()) % 7 or 7
    return today + timedelta(days=days_ahead)


@pytest.fixture
def monday() -> date:
    return next_monday()


def at(day: date, hhmm: str) -> datetime:
    return datetime.combine(day, datetime.strptime(hhmm, "%H:%M").time())


def booking_payload(doctor, patient, when: datetime, consultation_type="video",
                    symptoms="Chest pain after climbing stairs"):
    return {
        "patientId": patient.id,
        "doctorId": doctor.id,
        "appointmentDate": when.isoformat() + "Z",
        "consultationType": consultation_type,
        "symptoms": symptoms,
    }


def book(doctor, patient, when: datetime, consultation_type="video", now: datetime | None = None):
    from src.services.booking_service import create_appointment

    return create_appointment(booking_payload(doctor, patient, when, consultation_type), now=now)


def confirm(appointment_id: int, transaction_id="txn_123"):
    from src.services.payment_gate import confirm_payment

    return confirm_payment(appointment_id, {"status": "completed", "transactionId": transaction_id})
