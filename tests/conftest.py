import os

# Set testing environment before the app reads its settings
os.environ["TESTING"] = "1"
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///./test.db")

import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.core.database import init_db
from app.models import Doctor, Patient
from app.schemas.appointment import AppointmentCreate
from app.services.booking_service import BookingService
from app.services.sequence_allocator import SqlSequenceAllocator

def utcnow():
    """Naive UTC now, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

@pytest.fixture
def engine(tmp_path):
    # File database so worker threads share it
    engine = create_engine(
        f"sqlite:///{tmp_path / 'booking.db'}",
        connect_args={"check_same_thread": False},
    )
    init_db(engine)
    yield engine
    engine.dispose()

@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def allocator(session_factory):
    return SqlSequenceAllocator(session_factory)

@pytest.fixture
def config():
    return Settings(TESTING=True, QUEUE_NUMBER_SCOPE="doctor", QUEUE_BACKFILL_ON_READ=True)

@pytest.fixture
def service(db, allocator, config):
    return BookingService(db, allocator, config)

@pytest.fixture
def make_doctor(db):
    def _make_doctor(**overrides):
        fields = {
            "display_name": "Dr. Salma Haddad",
            "specialty": "cardiology",
            "specialty_label": "Cardiologist",
            "specialty_slug": "cardiology",
            "is_available": True,
            "subscription_ends_at": utcnow() + timedelta(days=30),
        }
        fields.update(overrides)
        doctor = Doctor(**fields)
        db.add(doctor)
        db.commit()
        db.refresh(doctor)
        return doctor
    return _make_doctor

@pytest.fixture
def make_patient(db):
    counter = {"n": 0}

    def _make_patient(**overrides):
        counter["n"] += 1
        fields = {
            "first_name": f"Patient{counter['n']}",
            "last_name": "Test",
            "phone_number": f"+9647700000{counter['n']:03d}",
            "date_of_birth": datetime(1990, 5, 17),
        }
        fields.update(overrides)
        patient = Patient(**fields)
        db.add(patient)
        db.commit()
        db.refresh(patient)
        return patient
    return _make_patient

@pytest.fixture
def doctor(make_doctor):
    return make_doctor()

def booking_for(patient, doctor=None, date="2025-06-01", time="09:00", **extra):
    """Build a patient booking request for ``doctor`` (or a specialty queue)."""
    fields = {
        "patient_id": patient.id,
        "doctor_id": doctor.id if doctor else None,
        "appointment_date": date,
        "appointment_time": time,
    }
    if doctor is None:
        fields.update(
            doctor_name="Cardiology queue",
            doctor_role="Cardiologist",
            specialty="cardiology",
            specialty_slug="cardiology",
        )
    fields.update(extra)
    return AppointmentCreate(**fields)
