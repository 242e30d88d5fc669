from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, Text, JSON, Index, text, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

# Statuses that hold a slot
ACTIVE_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)

ALLOWED_TRANSITIONS = {
    AppointmentStatus.PENDING: {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED},
    AppointmentStatus.CONFIRMED: {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED},
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
}

ACTIVE_SLOT_INDEX = "uq_appointments_active_slot"

_active_slot_predicate = text(
    "doctor_id IS NOT NULL AND status IN ('pending', 'confirmed')"
)

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # Last line of defence against double booking a doctor's slot
        Index(
            ACTIVE_SLOT_INDEX,
            "doctor_id", "appointment_date_iso", "appointment_time_value",
            unique=True,
            postgresql_where=_active_slot_predicate,
            sqlite_where=_active_slot_predicate,
        ),
        Index("ix_appointments_patient_doctor_date", "patient_id", "doctor_id", "appointment_date_iso"),
        Index("ix_appointments_doctor_created", "doctor_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Relationships
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=True)

    # Doctor identity as it was at booking time
    doctor_name = Column(String(150), nullable=False)
    doctor_role = Column(String(100), nullable=False)
    specialty = Column(String(100), nullable=False)
    specialty_slug = Column(String(100), nullable=False, index=True)

    # Appointment details
    appointment_date = Column(String(50), nullable=False)
    appointment_date_iso = Column(String(10), nullable=False)
    appointment_time = Column(String(50), nullable=False)
    appointment_time_value = Column(String(5), nullable=False)
    status = Column(
        SQLEnum(
            AppointmentStatus,
            values_callable=lambda statuses: [s.value for s in statuses],
            native_enum=False,
            length=20,
        ),
        nullable=False,
        default=AppointmentStatus.PENDING,
    )
    notes = Column(Text, nullable=False, default="")
    doctor_note = Column(Text, nullable=False, default="")
    doctor_prescriptions = Column(JSON, nullable=False, default=list)
    created_by_doctor = Column(Boolean, nullable=False, default=False)

    # Numbering
    booking_number = Column(String(32), nullable=True, unique=True)
    doctor_queue_number = Column(Integer, nullable=True, index=True)

    # QR confirmation cache
    qr_payload = Column(Text, nullable=True)
    qr_code = Column(Text, nullable=True)

    # Tracking
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    patient = relationship("Patient", back_populates="appointments")
    doctor = relationship("Doctor", back_populates="appointments")

    @property
    def displayed_booking_number(self) -> str:
        """The number the doctor calls out: queue number when assigned."""
        if self.doctor_queue_number is not None:
            return str(self.doctor_queue_number)
        return self.booking_number or ""

    def can_transition_to(self, target: AppointmentStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[AppointmentStatus(self.status)]

    def clear_qr(self):
        self.qr_payload = None
        self.qr_code = None

    def __repr__(self):
        return (
            f"<Appointment(id={self.id}, doctor_id={self.doctor_id}, "
            f"date='{self.appointment_date_iso}', time='{self.appointment_time_value}', "
            f"booking_number='{self.booking_number}', queue={self.doctor_queue_number})>"
        )
