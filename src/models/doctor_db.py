from extensions import db
from datetime import datetime


class Doctor(db.Model):
    __tablename__ = "doctors"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    specialization = db.Column(db.String(100), nullable=False, default="General Medicine")
    # Current rate; appointments snapshot it at booking time.
    consultation_fee = db.Column(db.Float, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="INR")
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    availability = db.relationship(
        "AvailabilityEntry",
        backref="doctor",
        lazy=True,
        order_by="AvailabilityEntry.day_of_week",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "specialization": self.specialization,
            "consultationFee": self.consultation_fee,
            "currency": self.currency,
        }


class AvailabilityEntry(db.Model):
    """One weekday of a doctor's weekly template (0 = Sunday ... 6 = Saturday)."""
    __tablename__ = "doctor_availability"
    __table_args__ = (
        db.UniqueConstraint("doctor_id", "day_of_week", name="uq_availability_doctor_day"),
    )

    id = db.Column(db.Integer, primary_key=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey("doctors.id"), nullable=False)
    day_of_week = db.Column(db.Integer, nullable=False)
    start_time = db.Column(db.String(5), nullable=False)  # HH:MM, clinic-local
    end_time = db.Column(db.String(5), nullable=False)
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            "dayOfWeek": self.day_of_week,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "isAvailable": self.is_available,
        }
