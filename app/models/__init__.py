from .patient import Patient
from .doctor import Doctor
from .appointment import Appointment, AppointmentStatus, ACTIVE_STATUSES
from .counter import SequenceCounter
from .block import DoctorPatientBlock

__all__ = [
    "Patient",
    "Doctor",
    "Appointment",
    "AppointmentStatus",
    "ACTIVE_STATUSES",
    "SequenceCounter",
    "DoctorPatientBlock",
]
