from src.models.patient_db import Patient
from src.models.doctor_db import Doctor, AvailabilityEntry
from src.models.appointments_db import Appointment
from src.models.payment_db import PaymentIntent

__all__ = ["Patient", "Doctor", "AvailabilityEntry", "Appointment", "PaymentIntent"]
