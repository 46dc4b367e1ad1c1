"""
Bridge between the booking and the external payment collaborator.

Gateways (Stripe, Razorpay, PayPal, cash desk, ...) are variants of
``PaymentProcessor`` registered in ``app.extensions["payment_processors"]``;
the gate never special-cases one. It never issues refunds: a payment that
lands on a dead booking is reported as ``StaleBookingError``.
"""
import logging
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from flask import current_app
from pydantic import BaseModel, ConfigDict, Field, field_validator, ValidationError as PydanticValidationError

from extensions import db
from src.models import Appointment, PaymentIntent
from src.models.appointments_db import (
    SCHEDULED, CONFIRMED, PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_FAILED,
)
from src.models.payment_db import (
    INTENT_CREATED, INTENT_PROCESSING, INTENT_COMPLETED, INTENT_FAILED,
)
from src.services.appointment_state import (
    apply_transition, load_appointment, PAYMENT_CONFIRMED, PAYMENT_FAILED as EVENT_PAYMENT_FAILED,
)
from src.services.booking_service import parse_day
from src.services.db_context import db_context
from src.services.errors import (
    ValidationError, NotFoundError, StaleBookingError, PaymentGatewayError, InvalidTransitionError,
)

logger = logging.getLogger("payment_gate")

RESULT_COMPLETED = "completed"
RESULT_FAILED = "failed"

# -------------------------------
# 💳 GATEWAY CAPABILITY
# -------------------------------

class PaymentProcessor(ABC):
    """Gateway-specific confirmation, already abstracted from the engine."""

    name = "abstract"

    @abstractmethod
    def confirm(self, payment_id: str) -> dict:
        """Return {"status": "completed" | "failed", "transactionId": str | None}."""

class MockPaymentProcessor(PaymentProcessor):
    """Development gateway: every payment succeeds."""

    name = "mock"

    def confirm(self, payment_id: str) -> dict:
        return {"status": RESULT_COMPLETED, "transactionId": f"mock_txn_{uuid.uuid4().hex[:12]}"}

class CashPaymentProcessor(PaymentProcessor):
    """Cash at the desk: recorded as completed with a local receipt number."""

    name = "cash"

    def confirm(self, payment_id: str) -> dict:
        return {"status": RESULT_COMPLETED, "transactionId": f"cash_{payment_id}"}

def default_processors() -> dict:
    return {p.name: p for p in (MockPaymentProcessor(), CashPaymentProcessor())}

def get_processor(gateway: str) -> PaymentProcessor:
    processors = current_app.extensions.setdefault("payment_processors", default_processors())
    processor = processors.get(gateway)
    if processor is None:
        raise ValidationError(
            f"Unsupported payment gateway '{gateway}'. Available: {', '.join(sorted(processors))}",
            field="gateway",
        )
    return processor

class PaymentResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    transaction_id: str | None = Field(None, alias="transactionId")
    payment_id: str | None = Field(None, alias="paymentId")
    failure_reason: str | None = Field(None, alias="failureReason")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in (RESULT_COMPLETED, RESULT_FAILED):
            raise ValueError("status must be 'completed' or 'failed'.")
        return v

def parse_payment_result(payload) -> PaymentResult:
    if isinstance(payload, PaymentResult):
        return payload
    if not isinstance(payload, dict):
        raise ValidationError("Payment result must be a JSON object.")
    try:
        return PaymentResult(**payload)
    except PydanticValidationError as e:
        err = e.errors()[0]
        raise ValidationError(err["msg"], field=str(err["loc"][0]) if err["loc"] else None)

# -------------------------------
# 🧾 INTENTS
# -------------------------------

def create_payment_intent(appointment_id: int, gateway: str, currency: str | None = None) -> PaymentIntent:
    """Open (or reuse) the single payment intent of a provisional booking."""
    with db_context():
        get_processor(gateway)
        appt = load_appointment(appointment_id)
        if appt.status != SCHEDULED or appt.payment_status != PAYMENT_PENDING:
            raise InvalidTransitionError(
                appointment_id, appt.status, "create_payment",
                message=f"Appointment {appointment_id} is not awaiting payment "
                        f"(status={appt.status}, payment={appt.payment_status})",
            )

        intent = (
            PaymentIntent.query
            .filter(PaymentIntent.appointment_id == appointment_id)
            .filter(PaymentIntent.status.in_([INTENT_CREATED, INTENT_PROCESSING]))
            .first()
        )
        if intent is not None:
            logger.info(f"[create_payment_intent] reuse intent={intent.id} appointment={appointment_id}")
            return intent

        intent = PaymentIntent(
            appointment_id=appointment_id,
            amount=appt.fee,
            currency=(currency or current_app.config["DEFAULT_CURRENCY"]).upper(),
            gateway=gateway,
            status=INTENT_CREATED,
        )
        db.session.add(intent)
        db.session.flush()
        appt.payment_id = intent.id
        db.session.commit()
        logger.info(
            f"[create_payment_intent] intent={intent.id} appointment={appointment_id} "
            f"amount={intent.amount} {intent.currency} gateway={gateway}"
        )
        return intent

def _record_intent_outcome(result: PaymentResult):
    """Settle an open intent; a completed or failed intent is never rewritten."""
    if not result.payment_id:
        return
    intent = db.session.get(PaymentIntent, result.payment_id)
    if intent is None or intent.status not in (INTENT_CREATED, INTENT_PROCESSING):
        return
    intent.status = INTENT_COMPLETED if result.status == RESULT_COMPLETED else INTENT_FAILED
    intent.transaction_id = result.transaction_id
    intent.failure_reason = result.failure_reason
    db.session.commit()

# -------------------------------
# ✅ CONFIRMATION HANDSHAKE
# -------------------------------

def confirm_payment(appointment_id: int, payment_result):
    """Apply an already-processed gateway outcome to the appointment."""
    result = parse_payment_result(payment_result)

    with db_context():
        appt = load_appointment(appointment_id)
        payment_id = result.payment_id or appt.payment_id
        if payment_id and result.payment_id is None:
            result.payment_id = payment_id

        if result.payment_id:
            intent = db.session.get(PaymentIntent, result.payment_id)
            if intent is not None and intent.appointment_id != appointment_id:
                raise ValidationError(
                    f"Payment {result.payment_id} belongs to another appointment.", field="paymentId"
                )

        if result.status == RESULT_FAILED:
            logger.warning(
                f"[confirm_payment] payment failed appointment={appointment_id} reason={result.failure_reason}"
            )
            try:
                appt = apply_transition(
                    appointment_id,
                    EVENT_PAYMENT_FAILED,
                    changes={
                        "payment_status": PAYMENT_FAILED,
                        "payment_id": payment_id,
                        "cancellation_reason": "payment failed",
                    },
                )
            finally:
                _record_intent_outcome(result)
            return appt

        # Duplicate delivery of the same successful payment.
        if (appt.status == CONFIRMED and appt.payment_status == PAYMENT_PAID
                and appt.payment_id == payment_id and payment_id is not None):
            logger.info(f"[confirm_payment] duplicate confirmation appointment={appointment_id}")
            return appt

        paid = {
            "payment_status": PAYMENT_PAID,
            "payment_id": payment_id,
            "transaction_id": result.transaction_id,
        }

        if appt.status == SCHEDULED:
            try:
                appt = apply_transition(
                    appointment_id, PAYMENT_CONFIRMED, changes=paid, expected_status=SCHEDULED
                )
                _record_intent_outcome(result)
                logger.info(f"[confirm_payment] appointment={appointment_id} confirmed payment={payment_id}")
                return appt
            except InvalidTransitionError:
                # Cancelled (or expired) between our read and the write.
                db.session.expire_all()
                appt = load_appointment(appointment_id)

        _record_intent_outcome(result)
        prior_status = appt.status
        if appt.payment_status == PAYMENT_PAID and appt.payment_id and appt.payment_id != payment_id:
            # The row already names the payment that settled it; this one is the refund.
            logger.error(
                f"[confirm_payment] second payment appointment={appointment_id} status={prior_status} "
                f"kept={appt.payment_id} refund={payment_id} txn={result.transaction_id}"
            )
            raise StaleBookingError(appointment_id, prior_status, payment_id, result.transaction_id)

        # Money was captured: keep that fact on the row for the refund workflow.
        appt.payment_status = PAYMENT_PAID
        appt.payment_id = payment_id
        appt.transaction_id = result.transaction_id
        appt.updated_at = datetime.utcnow()
        db.session.commit()
        logger.error(
            f"[confirm_payment] stale booking appointment={appointment_id} status={prior_status} "
            f"payment={payment_id} txn={result.transaction_id}"
        )
        raise StaleBookingError(appointment_id, prior_status, payment_id, result.transaction_id)

def process_payment(intent_id: str):
    """
    Ask the intent's gateway to confirm, retrying transient failures with
    exponential backoff, then hand the outcome to ``confirm_payment``.
    """
    with db_context():
        intent = db.session.get(PaymentIntent, intent_id)
        if intent is None:
            raise NotFoundError(f"Payment {intent_id} not found", paymentId=intent_id)
        if intent.status not in (INTENT_CREATED, INTENT_PROCESSING):
            raise ValidationError(f"Payment {intent_id} is already {intent.status}.", field="paymentId")

        processor = get_processor(intent.gateway)
        appointment_id = intent.appointment_id
        intent.status = INTENT_PROCESSING
        db.session.commit()

        cfg = current_app.config
        max_attempts = max(1, int(cfg["PAYMENT_MAX_ATTEMPTS"]))
        backoff = float(cfg["PAYMENT_RETRY_BACKOFF_SECONDS"])

        outcome = None
        last_error = None
        for attempt in range(1, max_attempts + 1):
            try:
                outcome = processor.confirm(intent_id)
                break
            except Exception as e:
                last_error = e
                logger.warning(
                    f"[process_payment] gateway={processor.name} intent={intent_id} "
                    f"attempt={attempt}/{max_attempts} failed: {e}"
                )
                if attempt < max_attempts and backoff > 0:
                    time.sleep(backoff * (2 ** (attempt - 1)))

        if outcome is None:
            # Leave the booking pending so a later retry is still possible.
            intent = db.session.get(PaymentIntent, intent_id)
            intent.status = INTENT_CREATED
            intent.failure_reason = str(last_error)[:255] if last_error else None
            db.session.commit()
            logger.error(f"[process_payment] giving up intent={intent_id} after {max_attempts} attempts")
            raise PaymentGatewayError(
                f"Payment gateway '{processor.name}' unavailable after {max_attempts} attempts",
                attempts=max_attempts,
                payment_id=intent_id,
            )

        result = dict(outcome)
        result["paymentId"] = intent_id
        return confirm_payment(appointment_id, result)


# -------------------------------
# 🔎 READS
# -------------------------------

INTENT_STATUSES = (INTENT_CREATED, INTENT_PROCESSING, INTENT_COMPLETED, INTENT_FAILED)


def get_payment(intent_id: str) -> PaymentIntent:
    with db_context():
        intent = db.session.get(PaymentIntent, intent_id)
        if intent is None:
            raise NotFoundError(f"Payment {intent_id} not found", paymentId=intent_id)
        return intent


def _float_filter(value, field):
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number.", field=field)


def list_payments(filters: dict | None = None, page: int = 1, limit: int = 10) -> dict:
    """Filtered, paginated payment intents, newest first."""
    filters = filters or {}
    if page < 1 or not 1 <= limit <= 100:
        raise ValidationError("page must be >= 1 and limit between 1 and 100.", field="limit")

    with db_context():
        query = PaymentIntent.query.join(Appointment, PaymentIntent.appointment_id == Appointment.id)

        for key, column, field in (("appointment_id", PaymentIntent.appointment_id, "appointmentId"),
                                   ("patient_id", Appointment.patient_id, "patientId"),
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
            unknown = [s for s in statuses if s not in INTENT_STATUSES]
            if unknown:
                raise ValidationError(f"Unknown payment status: {', '.join(unknown)}", field="status")
            query = query.filter(PaymentIntent.status.in_(statuses))

        if filters.get("gateway"):
            query = query.filter(PaymentIntent.gateway == filters["gateway"])

        date_from = parse_day(filters.get("date_from"), "dateFrom")
        date_to = parse_day(filters.get("date_to"), "dateTo")
        if date_from:
            query = query.filter(PaymentIntent.created_at >= datetime.combine(date_from, datetime.min.time()))
        if date_to:
            query = query.filter(
                PaymentIntent.created_at < datetime.combine(date_to + timedelta(days=1), datetime.min.time())
            )

        if filters.get("amount_from") not in (None, ""):
            query = query.filter(PaymentIntent.amount >= _float_filter(filters["amount_from"], "amountFrom"))
        if filters.get("amount_to") not in (None, ""):
            query = query.filter(PaymentIntent.amount <= _float_filter(filters["amount_to"], "amountTo"))

        total = query.count()
        rows = (
            query.order_by(PaymentIntent.created_at.desc(), PaymentIntent.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "payments": [p.to_dict() for p in rows],
            "totalCount": total,
            "totalPages": (total + limit - 1) // limit,
            "currentPage": page,
        }
