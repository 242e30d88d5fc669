import pytest
import fakeredis
from fastapi.testclient import TestClient

from app.main import app
from app.core.database import get_db, get_redis, get_session_factory

@pytest.fixture
def client(session_factory):
    def override_get_db():
        try:
            db = session_factory()
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_redis] = lambda: fakeredis.FakeRedis(decode_responses=True)
    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()

def booking_payload(patient, doctor=None, date="2025-06-01", time="09:00"):
    payload = {
        "patient_id": patient.id,
        "appointment_date": date,
        "appointment_time": time,
    }
    if doctor is not None:
        payload["doctor_id"] = doctor.id
    else:
        payload.update({
            "doctor_name": "Cardiology queue",
            "doctor_role": "Cardiologist",
            "specialty": "cardiology",
            "specialty_slug": "cardiology",
        })
    return payload

class TestAppointments:

    def test_create_appointment(self, client, doctor, make_patient):
        """Test booking a doctor's slot."""
        response = client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor))
        assert response.status_code == 201

        data = response.json()
        assert data["booking_number"] == "1"
        assert data["doctor_queue_number"] == 1
        assert data["displayed_booking_number"] == "1"
        assert data["status"] == "pending"
        assert data["qr_code"].startswith("data:image/png;base64,")

    def test_slot_conflict(self, client, doctor, make_patient):
        """Test the second booking of a slot is refused."""
        client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor))

        response = client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor))
        assert response.status_code == 409

        data = response.json()
        assert data["error"] == "Slot Conflict"
        assert "already booked" in data["message"]

    def test_duplicate_daily_booking(self, client, doctor, make_patient):
        patient = make_patient()
        client.post("/api/v1/appointments", json=booking_payload(patient, doctor, time="09:00"))

        response = client.post("/api/v1/appointments", json=booking_payload(patient, doctor, time="10:00"))
        assert response.status_code == 409
        assert response.json()["error"] == "Duplicate Booking"

    def test_invalid_slot(self, client, doctor, make_patient):
        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(make_patient(), doctor, time="31:00"),
        )
        assert response.status_code == 422
        assert response.json()["error"] == "Invalid Slot"

    def test_missing_specialty_fields(self, client, make_patient):
        payload = {"patient_id": make_patient().id, "appointment_date": "2025-06-01", "appointment_time": "09:00"}
        response = client.post("/api/v1/appointments", json=payload)
        assert response.status_code == 422

    def test_unavailable_doctor(self, client, make_doctor, make_patient):
        doctor = make_doctor(is_available=False)
        response = client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor))
        assert response.status_code == 403

    def test_cancel_then_rebook(self, client, doctor, make_patient):
        """Test a cancelled slot can be booked again with a new number."""
        first = client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor)).json()

        response = client.patch(f"/api/v1/appointments/{first['id']}/cancel")
        assert response.status_code == 200
        cancelled = response.json()
        assert cancelled["status"] == "cancelled"
        assert cancelled["booking_number"] == "1"
        assert cancelled["qr_code"] is None

        second = client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor))
        assert second.status_code == 201
        assert second.json()["booking_number"] == "2"

    def test_get_appointment(self, client, doctor, make_patient):
        created = client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor)).json()

        response = client.get(f"/api/v1/appointments/{created['id']}")
        assert response.status_code == 200
        assert response.json()["qr_payload"] == created["qr_payload"]

    def test_get_missing_appointment(self, client):
        response = client.get("/api/v1/appointments/999")
        assert response.status_code == 404
        assert response.json()["error"] == "Not Found"

    def test_list_patient_appointments(self, client, make_doctor, make_patient):
        patient = make_patient()
        for name in ("Dr. A", "Dr. B"):
            client.post("/api/v1/appointments", json=booking_payload(patient, make_doctor(display_name=name)))

        response = client.get("/api/v1/appointments", params={"patient_id": patient.id})
        assert response.status_code == 200

        data = response.json()
        assert len(data) == 2
        assert all(item["qr_code"] is None for item in data)
        assert [item["doctor_name"] for item in data] == ["Dr. B", "Dr. A"]

class TestDoctorQueue:

    def test_list_doctor_queue(self, client, doctor, make_patient):
        for time in ("09:00", "10:00"):
            client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor, time=time))
        client.post("/api/v1/appointments", json=booking_payload(make_patient(), time="11:00"))

        response = client.get(f"/api/v1/doctors/{doctor.id}/appointments")
        assert response.status_code == 200

        data = response.json()
        assert [item["doctor_index"] for item in data] == [1, 2, 3]
        assert [item["doctor_queue_number"] for item in data] == [1, 2, None]

    def test_accept_specialty_request(self, client, doctor, make_patient):
        created = client.post("/api/v1/appointments", json=booking_payload(make_patient())).json()

        response = client.patch(
            f"/api/v1/doctors/appointments/{created['id']}/accept",
            json={"doctor_id": doctor.id},
        )
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "confirmed"
        assert data["doctor_id"] == doctor.id
        assert data["doctor_queue_number"] == 1

    def test_accept_conflicting_request(self, client, doctor, make_patient):
        queued = client.post("/api/v1/appointments", json=booking_payload(make_patient())).json()
        client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor))

        response = client.patch(
            f"/api/v1/doctors/appointments/{queued['id']}/accept",
            json={"doctor_id": doctor.id},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "Slot Conflict"

    def test_manual_booking(self, client, doctor, make_patient):
        response = client.post(
            f"/api/v1/doctors/{doctor.id}/appointments/manual",
            json={
                "patient_id": make_patient().id,
                "appointment_date": "2025-06-01",
                "appointment_time": "10:00",
            },
        )
        assert response.status_code == 201
        assert response.json()["status"] == "confirmed"
        assert response.json()["created_by_doctor"] is True

    def test_complete_pending_is_refused(self, client, doctor, make_patient):
        created = client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor)).json()

        response = client.patch(f"/api/v1/doctors/appointments/{created['id']}/complete")
        assert response.status_code == 409
        assert response.json()["error"] == "Invalid Status Transition"

    def test_reject_and_note(self, client, doctor, make_patient):
        created = client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor)).json()

        response = client.patch(
            f"/api/v1/doctors/appointments/{created['id']}/note",
            json={"doctor_note": "Follow up", "doctor_prescriptions": ["Aspirin"]},
        )
        assert response.json()["doctor_prescriptions"] == ["Aspirin"]

        response = client.patch(f"/api/v1/doctors/appointments/{created['id']}/reject")
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

class TestBookingBlocks:

    def test_block_then_book(self, client, doctor, make_patient):
        """Test a blocked patient gets 403 when booking the doctor."""
        patient = make_patient()

        response = client.get(f"/api/v1/doctors/{doctor.id}/blocks/{patient.id}")
        assert response.json()["block_booking"] is False

        response = client.put(
            f"/api/v1/doctors/{doctor.id}/blocks/{patient.id}",
            json={"block_booking": True},
        )
        assert response.status_code == 200
        assert response.json()["block_booking"] is True

        response = client.post("/api/v1/appointments", json=booking_payload(patient, doctor))
        assert response.status_code == 403
        assert response.json()["error"] == "Booking Blocked"

class TestAdmin:

    def test_renumber_booking_numbers(self, client, db, doctor, make_patient):
        from app.models import Appointment

        for time in ("09:00", "10:00"):
            client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor, time=time))
        db.query(Appointment).update({Appointment.booking_number: None})
        db.commit()

        response = client.post("/api/v1/admin/booking-numbers/renumber")
        assert response.status_code == 200
        assert response.json() == {"max_booking_number": 2}

    def test_resync_counter(self, client, doctor, make_patient):
        client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor))

        response = client.post("/api/v1/admin/booking-numbers/resync")
        assert response.json() == {"max_booking_number": 1}

    def test_backfill_doctor_queue(self, client, db, doctor, make_patient):
        from app.models import Appointment

        for time in ("09:00", "10:00"):
            client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor, time=time))
        db.query(Appointment).update({Appointment.doctor_queue_number: 2})
        db.commit()

        response = client.post(f"/api/v1/admin/doctors/{doctor.id}/queue/backfill")
        assert response.status_code == 200
        assert response.json() == {"doctor_id": doctor.id, "renumbered": 1}

    def test_delete_appointment(self, client, doctor, make_patient):
        created = client.post("/api/v1/appointments", json=booking_payload(make_patient(), doctor)).json()

        response = client.delete(f"/api/v1/admin/appointments/{created['id']}")
        assert response.status_code == 200
        assert client.get(f"/api/v1/appointments/{created['id']}").status_code == 404

class TestHealth:

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_unknown_route(self, client):
        response = client.get("/api/v1/nowhere")
        assert response.status_code == 404
        assert response.json()["path"] == "/api/v1/nowhere"
