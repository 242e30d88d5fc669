from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime
from typing import List, Literal, Optional

from ..models.appointment import AppointmentStatus

class AppointmentCreate(BaseModel):
    """Patient-initiated booking, against a doctor or a specialty queue."""

    patient_id: int
    doctor_id: Optional[int] = None

    # Required when booking a specialty queue rather than a doctor
    doctor_name: Optional[str] = None
    doctor_role: Optional[str] = None
    specialty: Optional[str] = None
    specialty_slug: Optional[str] = None

    appointment_date: str = Field(..., min_length=1)
    appointment_time: str = Field(..., min_length=1)
    appointment_date_iso: Optional[str] = None
    appointment_time_value: Optional[str] = None
    notes: str = ""

    @model_validator(mode="after")
    def check_doctor_fields(self):
        if self.doctor_id is None:
            missing = [
                name for name in ("doctor_name", "doctor_role", "specialty", "specialty_slug")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"Missing fields for a specialty booking: {', '.join(missing)}")
        return self

class ManualAppointmentCreate(BaseModel):
    """Booking entered by a doctor on behalf of a patient."""

    patient_id: int
    appointment_date: str = Field(..., min_length=1)
    appointment_time: str = Field(..., min_length=1)
    appointment_date_iso: Optional[str] = None
    appointment_time_value: Optional[str] = None
    notes: str = ""
    status: Literal["pending", "confirmed"] = "confirmed"

class AcceptAppointment(BaseModel):
    doctor_id: Optional[int] = None

class DoctorNoteUpdate(BaseModel):
    doctor_note: str = ""
    doctor_prescriptions: List[str] = []

class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    doctor_id: Optional[int] = None
    doctor_name: str
    doctor_role: str
    specialty: str
    specialty_slug: str
    appointment_date: str
    appointment_date_iso: str
    appointment_time: str
    appointment_time_value: str
    status: AppointmentStatus
    notes: str
    doctor_note: str
    doctor_prescriptions: List[str]
    created_by_doctor: bool
    booking_number: Optional[str] = None
    doctor_queue_number: Optional[int] = None
    displayed_booking_number: str
    qr_payload: Optional[str] = None
    qr_code: Optional[str] = None
    created_at: Optional[datetime] = None

class DoctorQueueEntry(AppointmentResponse):
    # 1-based position in the listing
    doctor_index: int

class RenumberResponse(BaseModel):
    max_booking_number: int

class BackfillResponse(BaseModel):
    doctor_id: int
    renumbered: int

class BookingBlockUpdate(BaseModel):
    block_booking: bool

class BookingBlockResponse(BaseModel):
    doctor_id: int
    patient_id: int
    block_booking: bool = False
