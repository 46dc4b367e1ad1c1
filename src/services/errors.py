"""
Typed failures raised by the appointment engine.

Each error carries a stable ``kind`` string and the HTTP status the API answers
with, so routes never have to translate them one by one.
"""


class EngineError(Exception):
    kind = "engine-error"
    http_status = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"success": False, "kind": self.kind, "error": self.message}
        payload.update({k: v for k, v in self.details.items() if v is not None})
        return payload


class ValidationError(EngineError):
    """Malformed or under-constrained input."""
    kind = "validation-error"
    http_status = 400

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, field=field)
        self.field = field


class NotFoundError(EngineError):
    kind = "not-found"
    http_status = 404


class ConflictError(EngineError):
    """The requested slot was taken; re-fetch availability and retry."""
    kind = "conflict"
    http_status = 409


class InvalidTransitionError(EngineError):
    kind = "invalid-transition"
    http_status = 409

    def __init__(self, appointment_id: int, from_status: str, event: str, message: str | None = None):
        super().__init__(
            message or f"Cannot apply '{event}' to appointment {appointment_id} in status '{from_status}'",
            appointmentId=appointment_id,
            fromStatus=from_status,
            event=event,
        )
        self.appointment_id = appointment_id
        self.from_status = from_status
        self.event = event


class StaleBookingError(EngineError):
    """Payment completed for a booking that is no longer live; a refund is needed."""
    kind = "stale-booking"
    http_status = 409

    def __init__(self, appointment_id: int, prior_status: str, payment_id: str | None = None,
                 transaction_id: str | None = None):
        super().__init__(
            f"Payment landed on appointment {appointment_id} in status '{prior_status}'; refund required",
            appointmentId=appointment_id,
            priorStatus=prior_status,
            paymentId=payment_id,
            transactionId=transaction_id,
        )
        self.appointment_id = appointment_id
        self.prior_status = prior_status
        self.payment_id = payment_id
        self.transaction_id = transaction_id


class AdmissionError(EngineError):
    kind = "admission-denied"
    http_status = 403

    def __init__(self, reason: str, message: str | None = None, **details):
        super().__init__(message or f"Video admission denied: {reason}", reason=reason, **details)
        self.reason = reason


class PaymentGatewayError(EngineError):
    kind = "payment-gateway-error"
    http_status = 502

    def __init__(self, message: str, attempts: int, payment_id: str | None = None):
        super().__init__(message, attempts=attempts, paymentId=payment_id)
        self.attempts = attempts
        self.payment_id = payment_id
