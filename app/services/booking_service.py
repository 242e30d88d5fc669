from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Callable, List, Optional
import logging

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    AppointmentAlreadyAssigned, AppointmentNotFound, DoctorNotFound,
    DoctorUnavailable, DuplicateDailyBooking, InvalidSlot,
    InvalidStatusTransition, PatientBlocked, PatientNotFound,
)
from ..models.appointment import Appointment, AppointmentStatus
from ..models.block import DoctorPatientBlock
from ..models.doctor import Doctor
from ..models.patient import Patient
from ..schemas.appointment import AppointmentCreate, ManualAppointmentCreate
from .booking_numbers import BookingNumberManager, is_booking_number_violation, is_valid_booking_number
from .doctor_queue import DoctorQueueManager
from .qr_service import QrCodeService
from .sequence_allocator import SequenceAllocator
from .slot_guard import SlotConflictGuard, canonical_date, canonical_time

logger = logging.getLogger(__name__)

class BookingService:
    def __init__(self, db: Session, allocator: SequenceAllocator, config: Settings = default_settings):
        self.db = db
        self.config = config
        self.guard = SlotConflictGuard(db)
        self.booking_numbers = BookingNumberManager(db, allocator, config)
        self.queue = DoctorQueueManager(db, allocator, config)
        self.qr = QrCodeService(db, config)

    # Lookups

    def get_appointment_or_404(self, appointment_id: int) -> Appointment:
        appointment = self.db.get(Appointment, appointment_id)
        if appointment is None:
            raise AppointmentNotFound()
        return appointment

    def _get_doctor(self, doctor_id: int) -> Doctor:
        doctor = self.db.get(Doctor, doctor_id)
        if doctor is None:
            raise DoctorNotFound()
        return doctor

    def _get_patient(self, patient_id: int) -> Patient:
        patient = self.db.get(Patient, patient_id)
        if patient is None:
            raise PatientNotFound()
        return patient

    # Blocks

    def get_block(self, doctor_id: int, patient_id: int) -> Optional[DoctorPatientBlock]:
        return self.db.execute(
            select(DoctorPatientBlock).where(
                DoctorPatientBlock.doctor_id == doctor_id,
                DoctorPatientBlock.patient_id == patient_id,
            )
        ).scalars().first()

    def is_booking_blocked(self, doctor_id: int, patient_id: int) -> bool:
        block = self.get_block(doctor_id, patient_id)
        return bool(block and block.block_booking)

    def set_booking_block(self, doctor_id: int, patient_id: int, block_booking: bool) -> DoctorPatientBlock:
        """Create or update the doctor's block on a patient."""
        self._get_doctor(doctor_id)
        self._get_patient(patient_id)

        block = self.get_block(doctor_id, patient_id)
        if block is None:
            block = DoctorPatientBlock(doctor_id=doctor_id, patient_id=patient_id)
            self.db.add(block)
        block.block_booking = block_booking
        self.db.commit()
        self.db.refresh(block)

        logger.info(f"Doctor {doctor_id} {'blocked' if block_booking else 'unblocked'} bookings from patient {patient_id}")
        return block

    # Creation

    def create_booking(self, booking: AppointmentCreate) -> Appointment:
        """Book for a patient, either against a doctor or a specialty queue."""
        self._get_patient(booking.patient_id)

        doctor = None
        if booking.doctor_id is not None:
            doctor = self._get_doctor(booking.doctor_id)
            if self.is_booking_blocked(doctor.id, booking.patient_id):
                raise PatientBlocked()
            if not doctor.accepts_bookings():
                raise DoctorUnavailable()

        if doctor is not None and doctor.auto_confirm_bookings:
            status = AppointmentStatus.CONFIRMED
        else:
            status = AppointmentStatus.PENDING

        return self._create(
            patient_id=booking.patient_id,
            doctor=doctor,
            doctor_name=booking.doctor_name or (doctor.display_name if doctor else None),
            doctor_role=booking.doctor_role or (doctor.role_label if doctor else None),
            specialty=booking.specialty or (doctor.specialty if doctor else None),
            specialty_slug=booking.specialty_slug or (doctor.specialty_slug if doctor else None),
            appointment_date=booking.appointment_date,
            appointment_time=booking.appointment_time,
            date_value=booking.appointment_date_iso or booking.appointment_date,
            time_value=booking.appointment_time_value or booking.appointment_time,
            notes=booking.notes,
            status=status,
            created_by_doctor=False,
        )

    def create_manual_booking(self, doctor_id: int, booking: ManualAppointmentCreate) -> Appointment:
        """Booking entered by the doctor; skips the pending stage by default."""
        doctor = self._get_doctor(doctor_id)
        self._get_patient(booking.patient_id)

        return self._create(
            patient_id=booking.patient_id,
            doctor=doctor,
            doctor_name=doctor.display_name,
            doctor_role=doctor.role_label,
            specialty=doctor.specialty,
            specialty_slug=doctor.specialty_slug,
            appointment_date=booking.appointment_date,
            appointment_time=booking.appointment_time,
            date_value=booking.appointment_date_iso or booking.appointment_date,
            time_value=booking.appointment_time_value or booking.appointment_time,
            notes=booking.notes,
            status=AppointmentStatus(booking.status),
            created_by_doctor=True,
        )

    def _create(
        self,
        patient_id: int,
        doctor: Optional[Doctor],
        doctor_name: Optional[str],
        doctor_role: Optional[str],
        specialty: Optional[str],
        specialty_slug: Optional[str],
        appointment_date: str,
        appointment_time: str,
        date_value: str,
        time_value: str,
        notes: str,
        status: AppointmentStatus,
        created_by_doctor: bool,
    ) -> Appointment:
        if not (doctor_name and doctor_role and specialty and specialty_slug):
            raise InvalidSlot("Doctor name, role and specialty are required")

        date_iso = canonical_date(date_value)
        time_canonical = canonical_time(time_value)
        doctor_id = doctor.id if doctor else None

        if doctor_id is not None:
            self.guard.try_reserve_slot(doctor_id, date_iso, time_canonical)
        self._check_daily_duplicate(patient_id, doctor_id, specialty_slug, date_iso)

        # Numbers are drawn before the insert; a lost race leaves a gap, never a reuse
        booking_number = self.booking_numbers.allocate()
        queue_number = None
        if doctor_id is not None:
            queue_number = self.queue.assign_queue_number(doctor_id, date_iso)

        appointment = Appointment(
            patient_id=patient_id,
            doctor_id=doctor_id,
            doctor_name=doctor_name,
            doctor_role=doctor_role,
            specialty=specialty,
            specialty_slug=specialty_slug,
            appointment_date=appointment_date,
            appointment_date_iso=date_iso,
            appointment_time=appointment_time,
            appointment_time_value=time_canonical,
            status=status,
            notes=notes or "",
            doctor_note="",
            doctor_prescriptions=[],
            created_by_doctor=created_by_doctor,
            doctor_queue_number=queue_number,
        )

        def apply(number: Optional[str]) -> None:
            appointment.booking_number = number

        self._save(appointment, apply, booking_number)
        self.db.refresh(appointment)

        logger.info(
            f"Appointment {appointment.id} booked: doctor={doctor_id} "
            f"slot={date_iso} {time_canonical} booking_number={appointment.booking_number} "
            f"queue={queue_number} status={status.value}"
        )
        return self.qr.ensure(appointment)

    def _save(
        self,
        appointment: Appointment,
        apply: Callable[[Optional[str]], None],
        booking_number: Optional[str],
    ) -> None:
        """Apply the changes and commit them under the slot guard.

        A rollback discards the applied changes, so ``apply`` runs again on
        every attempt. A booking number that is already taken (counter behind
        legacy rows) is drawn once more, then dropped and left for
        ``ensure_booking_number``.
        """
        fallbacks = [self.booking_numbers.reallocate, lambda: None]
        while True:
            apply(booking_number)
            self.db.add(appointment)
            try:
                with self.guard.enforce():
                    self.db.commit()
                return
            except IntegrityError as e:
                if booking_number is None or not is_booking_number_violation(e):
                    raise
                logger.error(f"Booking number {booking_number} already in use: {str(e.orig)}")
                booking_number = fallbacks.pop(0)()

    def _check_daily_duplicate(
        self,
        patient_id: int,
        doctor_id: Optional[int],
        specialty_slug: str,
        date_iso: str,
        exclude_id: Optional[int] = None,
    ) -> None:
        stmt = select(Appointment.id).where(
            Appointment.patient_id == patient_id,
            Appointment.appointment_date_iso == date_iso,
            Appointment.status != AppointmentStatus.CANCELLED,
        )
        if exclude_id is not None:
            stmt = stmt.where(Appointment.id != exclude_id)
        if doctor_id is not None:
            stmt = stmt.where(Appointment.doctor_id == doctor_id)
        else:
            stmt = stmt.where(
                Appointment.doctor_id.is_(None),
                Appointment.specialty_slug == specialty_slug,
            )
        if self.db.execute(stmt.limit(1)).first() is not None:
            raise DuplicateDailyBooking()

    # Lifecycle

    def _transition(self, appointment: Appointment, target: AppointmentStatus) -> None:
        if not appointment.can_transition_to(target):
            raise InvalidStatusTransition(AppointmentStatus(appointment.status).value, target.value)
        appointment.status = target

    def accept_pending_booking(self, appointment_id: int, doctor_id: Optional[int] = None) -> Appointment:
        """Doctor accepts a pending request; the slot is checked again first."""
        appointment = self.get_appointment_or_404(appointment_id)
        if not appointment.can_transition_to(AppointmentStatus.CONFIRMED):
            raise InvalidStatusTransition(
                AppointmentStatus(appointment.status).value, AppointmentStatus.CONFIRMED.value
            )

        if appointment.doctor_id is not None:
            if doctor_id is not None and doctor_id != appointment.doctor_id:
                raise AppointmentAlreadyAssigned()
            doctor = self._get_doctor(appointment.doctor_id)
        elif doctor_id is not None:
            doctor = self._get_doctor(doctor_id)
            if doctor.specialty_slug != appointment.specialty_slug:
                raise AppointmentNotFound("Appointment not found or not in your specialty")
        else:
            raise InvalidSlot("A doctor must accept a specialty queue booking")

        self._check_daily_duplicate(
            appointment.patient_id,
            doctor.id,
            appointment.specialty_slug,
            appointment.appointment_date_iso,
            exclude_id=appointment.id,
        )
        self.guard.try_reserve_slot(
            doctor.id,
            appointment.appointment_date_iso,
            appointment.appointment_time_value,
            exclude_id=appointment.id,
        )

        # Draw any missing numbers before this session holds write locks
        booking_number = None
        if not is_valid_booking_number(appointment.booking_number):
            booking_number = self.booking_numbers.allocate()
        queue_number = None
        if appointment.doctor_queue_number is None:
            queue_number = self.queue.assign_queue_number(doctor.id, appointment.appointment_date_iso)
        link_doctor = appointment.doctor_id is None

        def apply(number: Optional[str]) -> None:
            if link_doctor:
                appointment.doctor_id = doctor.id
                appointment.doctor_name = doctor.display_name
                appointment.doctor_role = doctor.role_label
            if number is not None:
                appointment.booking_number = number
            if queue_number is not None:
                appointment.doctor_queue_number = queue_number
            appointment.status = AppointmentStatus.CONFIRMED
            appointment.clear_qr()

        self._save(appointment, apply, booking_number)
        self.db.refresh(appointment)

        logger.info(f"Appointment {appointment.id} accepted by doctor {doctor.id}")
        return self.qr.ensure(appointment)

    def _finish(self, appointment_id: int, target: AppointmentStatus) -> Appointment:
        appointment = self.get_appointment_or_404(appointment_id)
        self._transition(appointment, target)
        # Numbers stay with the record; only the QR cache goes
        appointment.clear_qr()
        self.db.commit()
        self.db.refresh(appointment)
        logger.info(f"Appointment {appointment.id} is now {target.value}")
        return appointment

    def cancel_booking(self, appointment_id: int) -> Appointment:
        return self._finish(appointment_id, AppointmentStatus.CANCELLED)

    def reject_pending_booking(self, appointment_id: int) -> Appointment:
        appointment = self.get_appointment_or_404(appointment_id)
        if appointment.status != AppointmentStatus.PENDING:
            raise InvalidStatusTransition(
                AppointmentStatus(appointment.status).value, AppointmentStatus.CANCELLED.value
            )
        return self._finish(appointment_id, AppointmentStatus.CANCELLED)

    def complete_booking(self, appointment_id: int) -> Appointment:
        return self._finish(appointment_id, AppointmentStatus.COMPLETED)

    def record_doctor_note(self, appointment_id: int, note: str, prescriptions: List[str]) -> Appointment:
        appointment = self.get_appointment_or_404(appointment_id)
        appointment.doctor_note = (note or "").strip()
        appointment.doctor_prescriptions = [p.strip() for p in prescriptions if p and p.strip()]
        self.db.commit()
        self.db.refresh(appointment)
        return appointment

    def delete_booking(self, appointment_id: int) -> None:
        """Hard removal; the booking number is not released for reuse."""
        appointment = self.get_appointment_or_404(appointment_id)
        booking_number = appointment.booking_number
        self.db.delete(appointment)
        self.db.commit()
        logger.info(f"Appointment {appointment_id} deleted (booking number {booking_number} retired)")

    # Reads

    def ensure_booking_number(self, appointment: Appointment) -> Appointment:
        return self.booking_numbers.ensure(appointment)

    def ensure_doctor_queue_backfill(self, doctor_id: int) -> int:
        return self.queue.ensure_backfill(doctor_id)

    def get_appointment(self, appointment_id: int) -> Appointment:
        appointment = self.get_appointment_or_404(appointment_id)
        self.ensure_booking_number(appointment)
        if appointment.status == AppointmentStatus.CANCELLED:
            return appointment
        return self.qr.ensure(appointment)

    def list_patient_appointments(self, patient_id: int) -> List[Appointment]:
        appointments = self.db.execute(
            select(Appointment)
            .where(Appointment.patient_id == patient_id)
            .order_by(Appointment.created_at.desc(), Appointment.id.desc())
        ).scalars().all()
        for appointment in appointments:
            self.ensure_booking_number(appointment)
        return list(appointments)

    def list_doctor_appointments(self, doctor_id: int) -> List[Appointment]:
        """The doctor's queue plus pending requests waiting in their specialty."""
        doctor = self._get_doctor(doctor_id)
        if self.config.QUEUE_BACKFILL_ON_READ:
            self.ensure_doctor_queue_backfill(doctor.id)

        appointments = self.db.execute(
            select(Appointment)
            .where(or_(
                Appointment.doctor_id == doctor.id,
                (Appointment.doctor_id.is_(None))
                & (Appointment.specialty_slug == doctor.specialty_slug)
                & (Appointment.status == AppointmentStatus.PENDING),
            ))
            .order_by(
                Appointment.doctor_queue_number.is_(None),
                Appointment.doctor_queue_number.asc(),
                Appointment.created_at.asc(),
                Appointment.id.asc(),
            )
        ).scalars().all()
        for appointment in appointments:
            self.ensure_booking_number(appointment)
        return list(appointments)

    # Maintenance

    def renumber_all_booking_numbers(self) -> int:
        return self.booking_numbers.renumber_all()

    def sync_booking_counter(self) -> int:
        return self.booking_numbers.sync_counter_to_max()
