import logging
from abc import ABC, abstractmethod

from flask import current_app

logger = logging.getLogger("notification_service")

PATIENT = "patient"
DOCTOR = "doctor"
BOTH = (PATIENT, DOCTOR)


class NotificationSink(ABC):
    """Best-effort delivery collaborator (email/push/in-app live outside this engine)."""

    @abstractmethod
    def emit(self, event: dict) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    """Default sink: records lifecycle events in the log stream."""

    def emit(self, event: dict) -> None:
        logger.info(
            f"[notify] kind={event['kind']} appointment={event['appointmentId']} "
            f"recipient={event['recipientRole']}"
        )


def get_sink() -> NotificationSink:
    sink = current_app.extensions.get("notification_sink")
    if sink is None:
        sink = LoggingNotificationSink()
        current_app.extensions["notification_sink"] = sink
    return sink


def notify(appointment, kind: str, recipients=BOTH, **data) -> int:
    """
    Emit one event per recipient role. Sink failures are logged and swallowed
    so they never reach the state machine. Returns the number delivered.
    """
    sink = get_sink()
    delivered = 0
    for role in recipients:
        event = {"appointmentId": appointment.id, "kind": kind, "recipientRole": role}
        if data:
            event["data"] = data
        try:
            sink.emit(event)
            delivered += 1
        except Exception as e:
            logger.exception(
                f"[notify] sink failed kind={kind} appointment={appointment.id} recipient={role}: {e}"
            )
    return delivered


def other_party(actor_role: str | None):
    """Recipients for an action: the counterpart of the actor, or both when unknown."""
    if actor_role == DOCTOR:
        return (PATIENT,)
    if actor_role == PATIENT:
        return (DOCTOR,)
    return BOTH
