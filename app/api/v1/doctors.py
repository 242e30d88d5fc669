from fastapi import APIRouter, Depends, status
from typing import List

from ...api.deps import get_booking_service
from ...schemas.appointment import (
    AcceptAppointment, AppointmentResponse, BookingBlockResponse, BookingBlockUpdate,
    DoctorNoteUpdate, DoctorQueueEntry, ManualAppointmentCreate,
)
from ...services.booking_service import BookingService

router = APIRouter(prefix="/doctors", tags=["Doctors"])

@router.get("/{doctor_id}/appointments", response_model=List[DoctorQueueEntry])
async def list_doctor_appointments(
    doctor_id: int,
    service: BookingService = Depends(get_booking_service)
):
    """The doctor's queue, ordered by queue number."""
    appointments = service.list_doctor_appointments(doctor_id)
    return [
        DoctorQueueEntry(
            **AppointmentResponse.model_validate(appointment).model_dump(),
            doctor_index=index,
        )
        for index, appointment in enumerate(appointments, start=1)
    ]

@router.post(
    "/{doctor_id}/appointments/manual",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_manual_appointment(
    doctor_id: int,
    booking: ManualAppointmentCreate,
    service: BookingService = Depends(get_booking_service)
):
    """Create a booking from the doctor's side."""
    appointment = service.create_manual_booking(doctor_id, booking)
    return AppointmentResponse.model_validate(appointment)

@router.patch("/appointments/{appointment_id}/accept", response_model=AppointmentResponse)
async def accept_appointment(
    appointment_id: int,
    payload: AcceptAppointment,
    service: BookingService = Depends(get_booking_service)
):
    """Accept a pending request, claiming it for the doctor if unassigned."""
    appointment = service.accept_pending_booking(appointment_id, payload.doctor_id)
    return AppointmentResponse.model_validate(appointment)

@router.patch("/appointments/{appointment_id}/reject", response_model=AppointmentResponse)
async def reject_appointment(
    appointment_id: int,
    service: BookingService = Depends(get_booking_service)
):
    """Turn down a pending request."""
    return AppointmentResponse.model_validate(service.reject_pending_booking(appointment_id))

@router.patch("/appointments/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    service: BookingService = Depends(get_booking_service)
):
    return AppointmentResponse.model_validate(service.cancel_booking(appointment_id))

@router.patch("/appointments/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_id: int,
    service: BookingService = Depends(get_booking_service)
):
    return AppointmentResponse.model_validate(service.complete_booking(appointment_id))

@router.patch("/appointments/{appointment_id}/note", response_model=AppointmentResponse)
async def save_doctor_note(
    appointment_id: int,
    payload: DoctorNoteUpdate,
    service: BookingService = Depends(get_booking_service)
):
    """Save the doctor's note and prescriptions."""
    appointment = service.record_doctor_note(
        appointment_id, payload.doctor_note, payload.doctor_prescriptions
    )
    return AppointmentResponse.model_validate(appointment)

@router.put("/{doctor_id}/blocks/{patient_id}", response_model=BookingBlockResponse)
async def set_booking_block(
    doctor_id: int,
    patient_id: int,
    payload: BookingBlockUpdate,
    service: BookingService = Depends(get_booking_service)
):
    """Stop (or allow again) a patient booking with this doctor."""
    block = service.set_booking_block(doctor_id, patient_id, payload.block_booking)
    return BookingBlockResponse(
        doctor_id=block.doctor_id,
        patient_id=block.patient_id,
        block_booking=block.block_booking,
    )

@router.get("/{doctor_id}/blocks/{patient_id}", response_model=BookingBlockResponse)
async def get_booking_block(
    doctor_id: int,
    patient_id: int,
    service: BookingService = Depends(get_booking_service)
):
    """Block status for a patient; unblocked when none was set."""
    block = service.get_block(doctor_id, patient_id)
    return BookingBlockResponse(
        doctor_id=doctor_id,
        patient_id=patient_id,
        block_booking=bool(block and block.block_booking),
    )
