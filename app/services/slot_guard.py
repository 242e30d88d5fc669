from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from contextlib import contextmanager
from datetime import date, datetime, time
from typing import Iterator, Optional, Union
import logging
import re

from ..core.exceptions import InvalidSlot, SlotConflict
from ..models.appointment import Appointment, ACTIVE_STATUSES, ACTIVE_SLOT_INDEX

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\s*(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})(?:$|[T\s])")
_TIME_RE = re.compile(
    r"^\s*(\d{1,2})(?::(\d{2}))?(?::\d{2}(?:\.\d+)?)?\s*([aApP]\.?[mM]\.?)?\s*$"
)

def canonical_date(value: Union[str, date, datetime]) -> str:
    """Normalize a calendar date to ``YYYY-MM-DD``.

    The date is taken as written: a datetime or an ISO timestamp with an
    offset keeps its own calendar day and is never shifted to UTC.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        raise InvalidSlot(f"Unsupported date value: {value!r}")

    match = _DATE_RE.match(value)
    if not match:
        raise InvalidSlot(f"Invalid appointment date: {value!r}")
    try:
        parsed = date(*(int(part) for part in match.groups()))
    except ValueError:
        raise InvalidSlot(f"Invalid appointment date: {value!r}")
    return parsed.isoformat()

def canonical_time(value: Union[str, time, datetime]) -> str:
    """Normalize a time of day to zero-padded 24-hour ``HH:MM``."""
    if isinstance(value, datetime):
        value = value.time()
    if isinstance(value, time):
        return f"{value.hour:02d}:{value.minute:02d}"
    if not isinstance(value, str):
        raise InvalidSlot(f"Unsupported time value: {value!r}")

    match = _TIME_RE.match(value)
    if not match:
        raise InvalidSlot(f"Invalid appointment time: {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2) or 0)
    meridiem = (match.group(3) or "").replace(".", "").lower()

    if meridiem:
        if not 1 <= hour <= 12:
            raise InvalidSlot(f"Invalid appointment time: {value!r}")
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    if hour > 23 or minute > 59:
        raise InvalidSlot(f"Invalid appointment time: {value!r}")
    return f"{hour:02d}:{minute:02d}"

def is_slot_violation(error: IntegrityError) -> bool:
    """Whether an integrity error comes from the active-slot unique index."""
    message = str(error.orig)
    return (
        ACTIVE_SLOT_INDEX in message
        or "appointments.appointment_time_value" in message
    )

class SlotConflictGuard:
    """Keeps a doctor's (date, time) slot to one pending or confirmed booking.

    ``try_reserve_slot`` is a fast pre-check that yields a friendly error.
    The partial unique index on the appointments table is what actually
    guarantees exclusivity; ``enforce`` turns its violation into
    ``SlotConflict``.
    """

    def __init__(self, db: Session):
        self.db = db

    def find_conflict(
        self,
        doctor_id: int,
        date_iso: str,
        time_value: str,
        exclude_id: Optional[int] = None,
    ) -> Optional[Appointment]:
        stmt = select(Appointment).where(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date_iso == date_iso,
            Appointment.appointment_time_value == time_value,
            Appointment.status.in_(ACTIVE_STATUSES),
        )
        if exclude_id is not None:
            stmt = stmt.where(Appointment.id != exclude_id)
        return self.db.execute(stmt.limit(1)).scalars().first()

    def try_reserve_slot(
        self,
        doctor_id: int,
        date_iso: str,
        time_value: str,
        exclude_id: Optional[int] = None,
    ) -> None:
        conflict = self.find_conflict(doctor_id, date_iso, time_value, exclude_id)
        if conflict is not None:
            logger.info(
                f"Slot taken: doctor={doctor_id} date={date_iso} time={time_value} "
                f"by appointment {conflict.id} ({conflict.status.value})"
            )
            raise SlotConflict()

    @contextmanager
    def enforce(self) -> Iterator[None]:
        """Commit inside this block; a lost race surfaces as ``SlotConflict``."""
        try:
            yield
        except IntegrityError as e:
            self.db.rollback()
            if is_slot_violation(e):
                logger.info(f"Slot race lost at write time: {str(e.orig)}")
                raise SlotConflict() from e
            raise
