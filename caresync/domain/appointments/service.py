"""
Appointment service - the booking engine

Booking claims a slot with a conditional available -> booked update and
inserts the appointment in the same transaction. Losing that race is a
ConflictError; the engine never retries on the caller's behalf.
"""

import logging
from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import ConflictError, NotFoundError, ValidationError
from ...models import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_CHECKED_IN,
    APPOINTMENT_COMPLETED,
    APPOINTMENT_IN_PROGRESS,
    APPOINTMENT_NO_SHOW,
    APPOINTMENT_SCHEDULED,
    APPOINTMENT_STATUSES,
    SLOT_AVAILABLE,
    SLOT_BOOKED,
    Appointment,
    TimeSlot,
)
from ...services.notification_service import APPOINTMENT_BOOKED
from ...services.notification_service import APPOINTMENT_CANCELLED as APPOINTMENT_CANCELLED_NOTICE
from ...services.notification_service import Notifier, notify
from ..availability.repository import TimeSlotRepository
from ..doctors.repository import PatientRepository
from ..doctors.resolver import DoctorIdentifier, require_doctor_id
from .repository import AppointmentRepository
from .schemas import AppointmentDetails, AppointmentUpdate

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    APPOINTMENT_SCHEDULED: {APPOINTMENT_CHECKED_IN, APPOINTMENT_CANCELLED, APPOINTMENT_NO_SHOW},
    APPOINTMENT_CHECKED_IN: {APPOINTMENT_IN_PROGRESS, APPOINTMENT_CANCELLED},
    APPOINTMENT_IN_PROGRESS: {APPOINTMENT_COMPLETED, APPOINTMENT_CANCELLED},
    APPOINTMENT_COMPLETED: set(),
    APPOINTMENT_CANCELLED: set(),
    APPOINTMENT_NO_SHOW: set(),
}


def is_valid_transition(current: str, new: str) -> bool:
    return current == new or new in ALLOWED_TRANSITIONS.get(current, set())


def _coerce(model: type[BaseModel], data: Union[BaseModel, dict]) -> BaseModel:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"{field}: {first.get('msg')}", code="invalid_appointment") from e


class AppointmentService:
    """Service layer for booking, status changes and cancellation"""

    def __init__(self, db: Session, notifier: Optional[Notifier] = None):
        self.db = db
        self.repo = AppointmentRepository()
        self.slots = TimeSlotRepository()
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_appointment(self, appointment_id: int) -> Appointment:
        appointment = self.repo.get_appointment(self.db, appointment_id)
        if not appointment:
            raise NotFoundError(f"Appointment {appointment_id} not found", code="appointment_not_found")
        return appointment

    def find_by_doctor(
        self,
        doctor_identifier: DoctorIdentifier,
        status: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[Appointment]:
        doctor_id = require_doctor_id(self.db, doctor_identifier)
        self._check_status_filter(status)
        return self.repo.find_by_doctor(self.db, doctor_id, status, start_date, end_date)

    def find_by_patient(self, patient_id: int, status: Optional[str] = None) -> list[Appointment]:
        self._check_status_filter(status)
        return self.repo.find_by_patient(self.db, patient_id, status)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    def create_appointment(
        self,
        doctor_identifier: DoctorIdentifier,
        patient_id: int,
        time_slot_id: int,
        details: Union[AppointmentDetails, dict],
    ) -> Appointment:
        doctor_id = require_doctor_id(self.db, doctor_identifier)
        details = _coerce(AppointmentDetails, details)

        patient = PatientRepository.get_by_id(self.db, patient_id)
        if not patient:
            raise NotFoundError(f"Patient {patient_id} not found", code="patient_not_found")

        slot = self.slots.get_slot(self.db, time_slot_id)
        if not slot:
            raise NotFoundError(f"Time slot {time_slot_id} not found", code="slot_not_found")
        if slot.doctor_id != doctor_id:
            raise ValidationError("Time slot belongs to a different doctor", code="slot_doctor_mismatch")

        if not self.slots.compare_and_set_status(self.db, time_slot_id, SLOT_AVAILABLE, SLOT_BOOKED):
            self.db.rollback()
            logger.info(f"⚠️ Slot {time_slot_id} lost booking race for patient {patient_id}")
            raise ConflictError("Time slot is no longer available", code="slot_unavailable")

        is_virtual = details.is_virtual
        if is_virtual is None:
            is_virtual = details.type != "in-person"

        try:
            appointment = self.repo.add_appointment(
                self.db,
                doctor_id=doctor_id,
                patient_id=patient_id,
                time_slot_id=time_slot_id,
                status=APPOINTMENT_SCHEDULED,
                type=details.type,
                reason_for_visit=details.reason_for_visit,
                notes=details.notes,
                is_virtual=is_virtual,
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError("Time slot is no longer available", code="slot_unavailable") from e

        self.db.refresh(appointment)
        logger.info(f"✅ Appointment {appointment.id} booked: patient {patient_id}, slot {time_slot_id}")
        notify(
            APPOINTMENT_BOOKED,
            patient.email,
            {"appointment_id": appointment.id, "date": str(slot.date), "start_time": slot.start_time},
            self.notifier,
        )
        return appointment

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_appointment(self, appointment_id: int, patch: Union[AppointmentUpdate, dict]) -> Appointment:
        patch = _coerce(AppointmentUpdate, patch)
        changes = patch.model_dump(exclude_unset=True)
        appointment = self.get_appointment(appointment_id)
        current_status = appointment.status

        new_status = changes.get("status")
        if new_status is not None:
            if new_status not in APPOINTMENT_STATUSES:
                raise ValidationError(f"Unknown appointment status '{new_status}'", code="invalid_status")
            if not is_valid_transition(current_status, new_status):
                raise ValidationError(
                    f"Cannot change appointment from {current_status} to {new_status}", code="invalid_transition"
                )
        if changes.get("reason_for_visit", "") is None:
            raise ValidationError("reason_for_visit cannot be empty", code="invalid_appointment")

        new_slot_id = changes.get("time_slot_id")
        if new_slot_id is not None and new_slot_id != appointment.time_slot_id:
            if current_status != APPOINTMENT_SCHEDULED or new_status not in (None, APPOINTMENT_SCHEDULED):
                raise ValidationError("Only scheduled appointments can be rescheduled", code="invalid_transition")
            self._move_to_slot(appointment, new_slot_id)

        for field in ("type", "reason_for_visit", "notes"):
            if changes.get(field) is not None:
                setattr(appointment, field, changes[field])
        if changes.get("is_virtual") is not None:
            appointment.is_virtual = changes["is_virtual"]
            if not appointment.is_virtual:
                appointment.google_meet_link = None
                appointment.google_event_id = None

        cancelling = new_status == APPOINTMENT_CANCELLED and current_status != APPOINTMENT_CANCELLED
        if new_status is not None:
            appointment.status = new_status
        if cancelling:
            appointment.cancelled_at = datetime.utcnow()
            appointment.cancel_reason = changes.get("cancel_reason")

        try:
            self.db.flush()
            if cancelling:
                released = self.slots.release_if_unreferenced(
                    self.db, appointment.time_slot_id, exclude_appointment_id=appointment.id
                )
                if not released:
                    logger.info(f"ℹ️ Slot {appointment.time_slot_id} kept booked after cancelling {appointment.id}")
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError("Appointment changed concurrently, reload and retry", code="appointment_changed") from e

        self.db.refresh(appointment)
        logger.info(f"✅ Appointment {appointment.id} updated ({current_status} -> {appointment.status})")
        if cancelling:
            patient = PatientRepository.get_by_id(self.db, appointment.patient_id)
            notify(
                APPOINTMENT_CANCELLED_NOTICE,
                patient.email if patient else None,
                {"appointment_id": appointment.id, "reason": appointment.cancel_reason},
                self.notifier,
            )
        return appointment

    def cancel_appointment(self, appointment_id: int, reason: Optional[str] = None) -> Appointment:
        """Cancel and free the slot; cancelling twice is a no-op"""
        appointment = self.get_appointment(appointment_id)
        if appointment.status == APPOINTMENT_CANCELLED:
            return appointment
        return self.update_appointment(appointment_id, {"status": APPOINTMENT_CANCELLED, "cancel_reason": reason})

    def delete_appointment(self, appointment_id: int) -> None:
        """
        Remove the appointment row.

        The slot stays booked; an administrator frees it with release_slot.
        """
        appointment = self.get_appointment(appointment_id)
        slot_id = appointment.time_slot_id
        self.repo.delete_appointment(self.db, appointment)
        logger.info(f"🗑️ Appointment {appointment_id} deleted; slot {slot_id} left as-is")

    def release_slot(self, slot_id: int) -> TimeSlot:
        """Administrative booked -> available, refused while a live appointment holds the slot"""
        slot = self.slots.get_slot(self.db, slot_id)
        if not slot:
            raise NotFoundError(f"Time slot {slot_id} not found", code="slot_not_found")
        if slot.status != SLOT_BOOKED:
            return slot

        if not self.slots.release_if_unreferenced(self.db, slot_id):
            self.db.rollback()
            raise ConflictError("Time slot still has an active appointment", code="slot_in_use")
        self.db.commit()
        logger.info(f"✅ Slot {slot_id} released")
        return self.slots.get_slot(self.db, slot_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _move_to_slot(self, appointment: Appointment, new_slot_id: int) -> None:
        new_slot = self.slots.get_slot(self.db, new_slot_id)
        if not new_slot:
            raise NotFoundError(f"Time slot {new_slot_id} not found", code="slot_not_found")
        if new_slot.doctor_id != appointment.doctor_id:
            raise ValidationError("Time slot belongs to a different doctor", code="slot_doctor_mismatch")

        old_slot_id = appointment.time_slot_id
        if not self.slots.compare_and_set_status(self.db, new_slot_id, SLOT_AVAILABLE, SLOT_BOOKED):
            self.db.rollback()
            raise ConflictError("Time slot is no longer available", code="slot_unavailable")

        appointment.time_slot_id = new_slot_id
        self.db.flush()
        self.slots.release_if_unreferenced(self.db, old_slot_id)
        logger.info(f"🔄 Appointment {appointment.id} moved from slot {old_slot_id} to {new_slot_id}")

    @staticmethod
    def _check_status_filter(status: Optional[str]) -> None:
        if status is not None and status not in APPOINTMENT_STATUSES:
            raise ValidationError(f"Unknown appointment status '{status}'", code="invalid_status")
