import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CLINIC_TIMEZONE", "UTC")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")
os.environ.setdefault("AUTO_MEETING_LINKS", "false")

from datetime import date  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from caresync import models, models_calendar  # noqa: E402, F401
from caresync.database import Base  # noqa: E402
from caresync.domain.calendar_sync.credentials import CredentialManager, doctor_owner  # noqa: E402
from caresync.models import SLOT_AVAILABLE, Doctor, Patient, TimeSlot  # noqa: E402

from .fakes import FakeGoogleCalendar, RecordingNotifier  # noqa: E402

# A Monday
MONDAY = date(2030, 1, 7)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
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
def doctor(db) -> Doctor:
    doctor = Doctor(full_name="Ada Moreau", email="ada.moreau@clinic.test", license_number="LIC-1001", clinic_id=1)
    db.add(doctor)
    db.commit()
    db.refresh(doctor)
    return doctor


@pytest.fixture
def patient(db) -> Patient:
    patient = Patient(full_name="Sam Patel", email="sam.patel@example.test", phone="+15550100")
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient


@pytest.fixture
def make_slot(db, doctor):
    def factory(start_time="09:00", end_time="09:30", day=MONDAY, status=SLOT_AVAILABLE, **extra) -> TimeSlot:
        slot = TimeSlot(
            doctor_id=extra.pop("doctor_id", doctor.id),
            date=day,
            start_time=start_time,
            end_time=end_time,
            status=status,
            **extra,
        )
        db.add(slot)
        db.commit()
        db.refresh(slot)
        return slot

    return factory


@pytest.fixture
def google() -> FakeGoogleCalendar:
    return FakeGoogleCalendar()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def credentials(db, google) -> CredentialManager:
    return CredentialManager(db, transport=google.transport, timeout=2)


@pytest.fixture
def connected_doctor(doctor, credentials) -> Doctor:
    """Doctor with a stored refresh token for their own calendar"""
    credentials.store_credential(doctor_owner(doctor.id), "refresh-token-1", account_email="ada@gmail.test")
    return doctor
