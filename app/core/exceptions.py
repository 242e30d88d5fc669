from fastapi import status
from typing import Optional

class BookingError(Exception):
    """Base class for booking outcomes reported back to the caller."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    error: str = "Booking Error"
    default_detail: str = "The booking request could not be processed"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

class SlotConflict(BookingError):
    status_code = status.HTTP_409_CONFLICT
    error = "Slot Conflict"
    default_detail = "This slot is already booked, please choose another time"

class DuplicateDailyBooking(BookingError):
    status_code = status.HTTP_409_CONFLICT
    error = "Duplicate Booking"
    default_detail = "You already have a booking with this doctor on the same day"

class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not Found"
    default_detail = "The requested resource was not found"

class AppointmentNotFound(NotFound):
    default_detail = "Appointment not found"

class DoctorNotFound(NotFound):
    default_detail = "Doctor not found"

class PatientNotFound(NotFound):
    default_detail = "Patient not found"

class InvalidStatusTransition(BookingError):
    status_code = status.HTTP_409_CONFLICT
    error = "Invalid Status Transition"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move appointment from '{current}' to '{target}'")

class AppointmentAlreadyAssigned(BookingError):
    status_code = status.HTTP_409_CONFLICT
    error = "Already Assigned"
    default_detail = "Appointment already assigned to another doctor"

class DoctorUnavailable(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Doctor Unavailable"
    default_detail = "This doctor is not accepting bookings"

class PatientBlocked(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Booking Blocked"
    default_detail = "You cannot book with this doctor"

class InvalidSlot(BookingError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error = "Invalid Slot"
    default_detail = "A valid date and time must be selected"

class SequenceStorageError(BookingError):
    """The atomic counter increment failed at the storage layer.

    The increment either fully happened or fully didn't, so retrying the
    whole operation is safe.
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "Sequence Storage Error"

    def __init__(self, key: str, detail: Optional[str] = None):
        self.key = key
        super().__init__(detail or f"Could not advance sequence '{key}'")
