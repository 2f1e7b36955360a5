from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Slot lifecycle
SLOT_AVAILABLE = "available"
SLOT_BOOKED = "booked"
SLOT_BLOCKED = "blocked"
SLOT_STATUSES = (SLOT_AVAILABLE, SLOT_BOOKED, SLOT_BLOCKED)
# Statuses that take part in the per-doctor non-overlap rule
ACTIVE_SLOT_STATUSES = (SLOT_AVAILABLE, SLOT_BOOKED)

# Appointment lifecycle
APPOINTMENT_SCHEDULED = "scheduled"
APPOINTMENT_CHECKED_IN = "checked-in"
APPOINTMENT_IN_PROGRESS = "in-progress"
APPOINTMENT_COMPLETED = "completed"
APPOINTMENT_CANCELLED = "cancelled"
APPOINTMENT_NO_SHOW = "no-show"
APPOINTMENT_STATUSES = (
    APPOINTMENT_SCHEDULED,
    APPOINTMENT_CHECKED_IN,
    APPOINTMENT_IN_PROGRESS,
    APPOINTMENT_COMPLETED,
    APPOINTMENT_CANCELLED,
    APPOINTMENT_NO_SHOW,
)
APPOINTMENT_TYPES = ("initial", "follow-up", "virtual", "in-person")


class Doctor(Base):
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    license_number = Column(String(100), unique=True, index=True, nullable=True)
    clinic_id = Column(Integer, nullable=True, index=True)

    created_at = Column(DateTime, server_default=func.now())

    time_slots = relationship("TimeSlot", back_populates="doctor")


class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)

    created_at = Column(DateTime, server_default=func.now())


class TimeSlot(Base):
    __tablename__ = "time_slots"

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    date = Column(Date, nullable=False)  # clinic-local calendar day
    start_time = Column(String(5), nullable=False)  # HH:MM format
    end_time = Column(String(5), nullable=False)
    status = Column(String(20), nullable=False, default=SLOT_AVAILABLE)  # available, booked, blocked

    # External calendar link
    external_event_id = Column(String(255), nullable=True)
    external_updated_at = Column(DateTime, nullable=True)  # event's last-modified at last sync
    last_synced_at = Column(DateTime, nullable=True)

    created_by = Column(String(50), nullable=True)  # generator, calendar_import, or a user id
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    doctor = relationship("Doctor", back_populates="time_slots")

    __table_args__ = (
        UniqueConstraint("doctor_id", "date", "start_time", name="uq_time_slots_doctor_date_start"),
        UniqueConstraint("doctor_id", "external_event_id", name="uq_time_slots_doctor_external_event"),
        Index("ix_time_slots_doctor_date_status", "doctor_id", "date", "status"),
    )


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    time_slot_id = Column(Integer, ForeignKey("time_slots.id"), nullable=False)
    status = Column(String(20), nullable=False, default=APPOINTMENT_SCHEDULED)
    type = Column(String(20), nullable=False, default="initial")  # initial, follow-up, virtual, in-person
    reason_for_visit = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)
    is_virtual = Column(Boolean, default=True)

    # Video visit (written together, never one without the other)
    google_meet_link = Column(String(500), nullable=True)
    google_event_id = Column(String(255), nullable=True)

    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(500), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    doctor = relationship("Doctor")
    patient = relationship("Patient")
    time_slot = relationship("TimeSlot")

    __table_args__ = (
        # One live appointment per slot; cancelled rows keep their history
        Index(
            "uq_appointments_active_slot",
            "time_slot_id",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
        Index("ix_appointments_doctor_status", "doctor_id", "status"),
    )
