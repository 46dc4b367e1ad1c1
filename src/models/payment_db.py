import uuid
from datetime import datetime

from extensions import db

INTENT_CREATED = "created"
INTENT_PROCESSING = "processing"
INTENT_COMPLETED = "completed"
INTENT_FAILED = "failed"


def _intent_id() -> str:
    return f"pay_{uuid.uuid4().hex[:16]}"


class PaymentIntent(db.Model):
    __tablename__ = "payment_intents"

    id = db.Column(db.String(64), primary_key=True, default=_intent_id)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.id"), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    gateway = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=INTENT_CREATED)
    transaction_id = db.Column(db.String(128))
    failure_reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    appointment = db.relationship("Appointment", backref=db.backref("payment_intents", lazy=True))

    def to_dict(self):
        return {
            "id": self.id,
            "appointmentId": self.appointment_id,
            "amount": self.amount,
            "currency": self.currency,
            "gateway": self.gateway,
            "status": self.status,
            "transactionId": self.transaction_id,
            "failureReason": self.failure_reason,
        }
