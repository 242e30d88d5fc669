from fastapi import APIRouter, Depends, status
from typing import List

from ...api.deps import get_booking_service
from ...schemas.appointment import AppointmentCreate, AppointmentResponse
from ...services.booking_service import BookingService

router = APIRouter(prefix="/appointments", tags=["Appointments"])

@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def create_appointment(
    booking: AppointmentCreate,
    service: BookingService = Depends(get_booking_service)
):
    """Book an appointment for a patient."""
    appointment = service.create_booking(booking)
    return AppointmentResponse.model_validate(appointment)

@router.get("", response_model=List[AppointmentResponse])
async def list_patient_appointments(
    patient_id: int,
    service: BookingService = Depends(get_booking_service)
):
    """List a patient's bookings, newest first, without QR data."""
    appointments = service.list_patient_appointments(patient_id)
    return [
        AppointmentResponse.model_validate(appointment).model_copy(
            update={"qr_payload": None, "qr_code": None}
        )
        for appointment in appointments
    ]

@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: int,
    service: BookingService = Depends(get_booking_service)
):
    """Get one booking including its QR confirmation."""
    return AppointmentResponse.model_validate(service.get_appointment(appointment_id))

@router.patch("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    service: BookingService = Depends(get_booking_service)
):
    """Cancel a booking. Its booking number is kept and never reused."""
    return AppointmentResponse.model_validate(service.cancel_booking(appointment_id))
