from sqlalchemy.orm import Session
from io import BytesIO
from typing import Any, Dict, Optional
import base64
import json
import logging
import qrcode
from qrcode import constants as qr_constants

from ..core.config import Settings, settings as default_settings
from ..models.appointment import Appointment

logger = logging.getLogger(__name__)

_ERROR_CORRECTION = {
    "L": qr_constants.ERROR_CORRECT_L,
    "M": qr_constants.ERROR_CORRECT_M,
    "Q": qr_constants.ERROR_CORRECT_Q,
    "H": qr_constants.ERROR_CORRECT_H,
}

def build_qr_payload(appointment: Appointment, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fields encoded in the confirmation QR code."""
    patient = appointment.patient
    status = appointment.status
    payload = {
        "appointmentId": appointment.id,
        # What the doctor sees (per-doctor queue number when assigned)
        "bookingNumber": appointment.displayed_booking_number,
        "doctorQueueNumber": appointment.doctor_queue_number,
        "systemBookingNumber": appointment.booking_number or "",
        "patientId": appointment.patient_id,
        "patientName": patient.full_name if patient else None,
        "patientPhone": patient.phone_number if patient else None,
        "patientAge": patient.age() if patient else None,
        "doctorName": appointment.doctor_name,
        "appointmentDate": appointment.appointment_date,
        "appointmentTime": appointment.appointment_time,
        "status": status.value if hasattr(status, "value") else status,
    }
    if extra:
        payload.update(extra)
    return payload

def render_qr_data_url(data: str, error_correction: str = "M") -> str:
    """Render ``data`` as a PNG QR code encoded in a data URL."""
    qr = qrcode.QRCode(error_correction=_ERROR_CORRECTION[error_correction])
    qr.add_data(data)
    qr.make(fit=True)

    buffer = BytesIO()
    qr.make_image().save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"

class QrCodeService:
    """Keeps the cached QR confirmation in step with the appointment."""

    def __init__(self, db: Session, config: Settings = default_settings):
        self.db = db
        self.error_correction = config.QR_ERROR_CORRECTION

    def is_stale(self, appointment: Appointment, payload: Dict[str, Any]) -> bool:
        if not appointment.qr_code or not appointment.qr_payload:
            return True
        try:
            return json.loads(appointment.qr_payload) != payload
        except ValueError:
            return True

    def ensure(self, appointment: Appointment, extra: Optional[Dict[str, Any]] = None) -> Appointment:
        """Regenerate the QR cache when missing or out of date; best effort."""
        if appointment is None:
            return appointment

        payload = build_qr_payload(appointment, extra)
        if not self.is_stale(appointment, payload):
            return appointment

        try:
            qr_payload = json.dumps(payload, ensure_ascii=False)
            appointment.qr_code = render_qr_data_url(qr_payload, self.error_correction)
            appointment.qr_payload = qr_payload
            self.db.commit()
            self.db.refresh(appointment)
        except Exception as e:
            self.db.rollback()
            logger.error(f"QR generation failed for appointment {appointment.id}: {str(e)}")
        return appointment
