from sqlalchemy import select, func
from sqlalchemy.orm import Session
from dataclasses import dataclass
from typing import List, Optional
import logging

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import SequenceStorageError
from ..models.appointment import Appointment
from .sequence_allocator import SequenceAllocator

logger = logging.getLogger(__name__)

@dataclass
class QueueDriftReport:
    doctor_id: int
    date_iso: Optional[str]
    total: int
    assigned: int
    distinct: int
    min_number: Optional[int]
    max_number: Optional[int]

    @property
    def has_drift(self) -> bool:
        if not self.total:
            return False
        return (
            self.assigned != self.total
            or self.distinct != self.total
            or self.max_number != self.total
            or self.min_number != 1
        )

class DoctorQueueManager:
    """Per-doctor "turn" numbers and their backfill to a dense 1..N.

    Queue numbers are advisory display ordering. They are not protected by a
    storage constraint, so a backfill racing a booking for the same doctor
    can leave drift behind; the next backfill corrects it.
    """

    def __init__(self, db: Session, allocator: SequenceAllocator, config: Settings = default_settings):
        self.db = db
        self.allocator = allocator
        self.prefix = config.DOCTOR_QUEUE_KEY_PREFIX
        self.date_scoped = config.QUEUE_NUMBER_SCOPE == "doctor_date"

    def counter_key(self, doctor_id: int, date_iso: Optional[str] = None) -> str:
        if self.date_scoped:
            return f"{self.prefix}:{doctor_id}:{date_iso}"
        return f"{self.prefix}:{doctor_id}"

    def assign_queue_number(self, doctor_id: int, date_iso: Optional[str] = None) -> Optional[int]:
        """Next queue number for the doctor's scope, or None when the store fails."""
        key = self.counter_key(doctor_id, date_iso)
        try:
            return self.allocator.next_value(key)
        except SequenceStorageError:
            logger.error(f"Queue number allocation failed for '{key}'; left for backfill")
            return None

    def _scope_filter(self, doctor_id: int, date_iso: Optional[str]):
        criteria = [Appointment.doctor_id == doctor_id]
        if self.date_scoped:
            criteria.append(Appointment.appointment_date_iso == date_iso)
        return criteria

    def _scopes(self, doctor_id: int) -> List[Optional[str]]:
        if not self.date_scoped:
            return [None]
        return list(self.db.execute(
            select(Appointment.appointment_date_iso)
            .where(Appointment.doctor_id == doctor_id)
            .distinct()
            .order_by(Appointment.appointment_date_iso)
        ).scalars())

    def detect_drift(self, doctor_id: int, date_iso: Optional[str] = None) -> QueueDriftReport:
        total, assigned, distinct, lowest, highest = self.db.execute(
            select(
                func.count(Appointment.id),
                func.count(Appointment.doctor_queue_number),
                # Duplicates like [1, 3, 3] pass the min/max/count checks
                func.count(Appointment.doctor_queue_number.distinct()),
                func.min(Appointment.doctor_queue_number),
                func.max(Appointment.doctor_queue_number),
            ).where(*self._scope_filter(doctor_id, date_iso))
        ).one()
        return QueueDriftReport(
            doctor_id=doctor_id,
            date_iso=date_iso,
            total=total,
            assigned=assigned,
            distinct=distinct,
            min_number=lowest,
            max_number=highest,
        )

    def renumber(self, doctor_id: int, date_iso: Optional[str] = None) -> int:
        """Reassign 1..N in creation order; returns how many rows changed."""
        appointments = self.db.execute(
            select(Appointment)
            .where(*self._scope_filter(doctor_id, date_iso))
            .order_by(Appointment.created_at.asc(), Appointment.id.asc())
        ).scalars().all()

        changed = 0
        for seq, appt in enumerate(appointments, start=1):
            if appt.doctor_queue_number != seq:
                appt.doctor_queue_number = seq
                # Regenerated lazily with the new number
                appt.clear_qr()
                changed += 1
        self.db.commit()

        self.allocator.resync(self.counter_key(doctor_id, date_iso), len(appointments))
        return changed

    def ensure_backfill(self, doctor_id: int) -> int:
        """Re-densify the doctor's queue numbers wherever drift is detected."""
        if doctor_id is None:
            return 0

        changed = 0
        for date_iso in self._scopes(doctor_id):
            report = self.detect_drift(doctor_id, date_iso)
            if not report.has_drift:
                continue
            logger.info(
                f"Queue drift for doctor {doctor_id}"
                f"{f' on {date_iso}' if date_iso else ''}: total={report.total} "
                f"assigned={report.assigned} distinct={report.distinct} min={report.min_number} max={report.max_number}"
            )
            changed += self.renumber(doctor_id, date_iso)
        return changed
