from extensions import db
from datetime import datetime, timedelta

# Appointment.status
SCHEDULED = "scheduled"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "no-show"

APPOINTMENT_STATUSES = (SCHEDULED, CONFIRMED, COMPLETED, CANCELLED, NO_SHOW)
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED, NO_SHOW})

# Appointment.payment_status
PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"

CONSULTATION_TYPES = ("video", "phone", "in-person")


def _iso(value):
    return value.isoformat() + "Z" if value else None


class Appointment(db.Model):
    __tablename__ = "appointments"
    __table_args__ = (
        # One live booking per doctor and instant; cancelled rows free the slot.
        db.Index(
            "uq_appointment_doctor_slot_active",
            "doctor_id",
            "appointment_date",
            unique=True,
            sqlite_where=db.text("status != 'cancelled'"),
            postgresql_where=db.text("status != 'cancelled'"),
        ),
        db.Index("ix_appointment_patient_date", "patient_id", "appointment_date"),
        db.Index("ix_appointment_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.Integer, db.ForeignKey('patients.id'), nullable=False)
    doctor_id = db.Column(db.Integer, db.ForeignKey('doctors.id'), nullable=False)
    appointment_date = db.Column(db.DateTime, nullable=False)  # naive UTC
    duration_minutes = db.Column(db.Integer, nullable=False, default=30)
    consultation_type = db.Column(db.String(20), nullable=False)
    symptoms = db.Column(db.Text, nullable=False)
    specialization = db.Column(db.String(100))
    fee = db.Column(db.Float, nullable=False)

    status = db.Column(db.String(20), nullable=False, default=SCHEDULED)
    payment_status = db.Column(db.String(20), nullable=False, default=PAYMENT_PENDING)
    payment_id = db.Column(db.String(64))
    transaction_id = db.Column(db.String(128))
    cancellation_reason = db.Column(db.String(255))

    notes = db.Column(db.Text)
    diagnosis = db.Column(db.Text)
    prescription_ref = db.Column(db.String(128))

    patient_rating = db.Column(db.Integer)
    patient_review = db.Column(db.Text)
    doctor_rating = db.Column(db.Integer)
    doctor_review = db.Column(db.Text)

    call_started_at = db.Column(db.DateTime)
    call_ended_at = db.Column(db.DateTime)
    reminder_sent_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    patient = db.relationship('Patient', backref=db.backref('appointments', lazy=True))
    doctor = db.relationship('Doctor', backref=db.backref('appointments', lazy=True))

    @property
    def ends_at(self):
        return self.appointment_date + timedelta(minutes=self.duration_minutes)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "doctorId": self.doctor_id,
            "appointmentDate": _iso(self.appointment_date),
            "durationMinutes": self.duration_minutes,
            "consultationType": self.consultation_type,
            "symptoms": self.symptoms,
            "specialization": self.specialization,
            "fee": self.fee,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "paymentId": self.payment_id,
            "transactionId": self.transaction_id,
            "cancellationReason": self.cancellation_reason,
            "notes": self.notes,
            "diagnosis": self.diagnosis,
            "prescriptionRef": self.prescription_ref,
            "rating": {
                "patientRating": self.patient_rating,
                "patientReview": self.patient_review,
                "doctorRating": self.doctor_rating,
                "doctorReview": self.doctor_review,
            },
            "callStartedAt": _iso(self.call_started_at),
            "callEndedAt": _iso(self.call_ended_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
