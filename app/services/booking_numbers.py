from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Optional
import logging
import re

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import SequenceStorageError
from ..models.appointment import Appointment
from .sequence_allocator import SequenceAllocator

logger = logging.getLogger(__name__)

_NUMERIC_RE = re.compile(r"^[0-9]+$")

def is_valid_booking_number(value) -> bool:
    return isinstance(value, str) and bool(_NUMERIC_RE.match(value.strip()))

def is_booking_number_violation(error: IntegrityError) -> bool:
    """Whether an integrity error comes from the unique booking number column."""
    return "booking_number" in str(error.orig)

class BookingNumberManager:
    """System booking numbers: global, monotonic, assigned once, never reused."""

    def __init__(self, db: Session, allocator: SequenceAllocator, config: Settings = default_settings):
        self.db = db
        self.allocator = allocator
        self.key = config.BOOKING_NUMBER_KEY

    def allocate(self) -> Optional[str]:
        """Take the next global number, or None when the counter store fails."""
        try:
            return str(self.allocator.next_value(self.key))
        except SequenceStorageError:
            logger.error("Booking number allocation failed; appointment left without a number")
            return None

    def reallocate(self) -> Optional[str]:
        """Draw again after a collision, first moving the counter past the numbers in use.

        The counter is only ever raised here, never rewound.
        """
        try:
            highest = self.max_in_use()
            if self.allocator.current_value(self.key) < highest:
                self.allocator.resync(self.key, highest)
        except SequenceStorageError:
            logger.error("Booking number counter could not be advanced past the numbers in use")
            return None
        return self.allocate()

    def assign(self, appointment: Appointment) -> Appointment:
        """Give the appointment a number unless it already carries a valid one."""
        if is_valid_booking_number(appointment.booking_number):
            return appointment
        number = self.allocate()
        if number is not None:
            appointment.booking_number = number
        return appointment

    def ensure(self, appointment: Appointment) -> Appointment:
        """Idempotent ``assign`` that persists; safe to call on every read."""
        if appointment is None or is_valid_booking_number(appointment.booking_number):
            return appointment
        self.assign(appointment)
        if not is_valid_booking_number(appointment.booking_number):
            return appointment

        appointment.clear_qr()
        try:
            self.db.commit()
        except IntegrityError as e:
            # Counter behind the numbers in use; retried on next access
            self.db.rollback()
            logger.error(f"Booking number save failed for appointment {appointment.id}: {str(e.orig)}")
            return appointment
        self.db.refresh(appointment)
        logger.info(f"Backfilled booking number {appointment.booking_number} for appointment {appointment.id}")
        return appointment

    def renumber_all(self) -> int:
        """Reassign 1..N to every appointment by creation order.

        Maintenance only: run with booking traffic paused.
        """
        appointments = self.db.execute(
            select(Appointment).order_by(Appointment.created_at.asc(), Appointment.id.asc())
        ).scalars().all()
        previous = {appt.id: appt.booking_number for appt in appointments}

        # Clear first so intermediate states never collide on the unique column
        self.db.execute(
            update(Appointment)
            .values(booking_number=None)
            .execution_options(synchronize_session="evaluate")
        )

        seq = 0
        for appt in appointments:
            seq += 1
            appt.booking_number = str(seq)
            if previous[appt.id] != appt.booking_number:
                appt.clear_qr()
        self.db.commit()

        self.allocator.resync(self.key, seq)
        logger.info(f"Booking numbers renumbered 1..{seq}")
        return seq

    def max_in_use(self) -> int:
        numbers = self.db.execute(
            select(Appointment.booking_number).where(Appointment.booking_number.is_not(None))
        ).scalars().all()
        return max((int(n) for n in numbers if is_valid_booking_number(n)), default=0)

    def sync_counter_to_max(self) -> int:
        """Point the global counter at the highest numeric booking number in use."""
        highest = self.max_in_use()
        self.allocator.resync(self.key, highest)
        return highest
