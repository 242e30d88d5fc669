from fastapi import APIRouter, Depends
import logging

from ...api.deps import get_booking_service
from ...schemas.appointment import BackfillResponse, RenumberResponse
from ...services.booking_service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Maintenance"])

@router.post("/booking-numbers/renumber", response_model=RenumberResponse)
async def renumber_booking_numbers(
    service: BookingService = Depends(get_booking_service)
):
    """Renumber every booking 1..N by creation order. Pause bookings first."""
    logger.warning("Renumbering all booking numbers")
    return RenumberResponse(max_booking_number=service.renumber_all_booking_numbers())

@router.post("/booking-numbers/resync", response_model=RenumberResponse)
async def resync_booking_counter(
    service: BookingService = Depends(get_booking_service)
):
    """Point the booking number counter at the highest number in use."""
    return RenumberResponse(max_booking_number=service.sync_booking_counter())

@router.post("/doctors/{doctor_id}/queue/backfill", response_model=BackfillResponse)
async def backfill_doctor_queue(
    doctor_id: int,
    service: BookingService = Depends(get_booking_service)
):
    """Re-densify a doctor's queue numbers."""
    return BackfillResponse(
        doctor_id=doctor_id,
        renumbered=service.ensure_doctor_queue_backfill(doctor_id),
    )

@router.delete("/appointments/{appointment_id}")
async def delete_appointment(
    appointment_id: int,
    service: BookingService = Depends(get_booking_service)
):
    """Hard-delete a booking. Its booking number is retired, not released."""
    service.delete_booking(appointment_id)
    return {"message": "Appointment deleted"}
