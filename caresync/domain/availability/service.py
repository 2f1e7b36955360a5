"""Availability service - Business logic for doctor time slots"""

import logging
from datetime import date, timedelta
from typing import Iterable, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import DEFAULT_SYNC_WINDOW_DAYS
from ...errors import ConflictError, NotFoundError, ValidationError
from ...models import SLOT_AVAILABLE, SLOT_BLOCKED, SLOT_BOOKED, SLOT_STATUSES, TimeSlot
from ...shared.validators import time_to_minutes
from ..doctors.resolver import DoctorIdentifier, require_doctor_id
from .generator import SlotGenerator
from .repository import TimeSlotRepository
from .schemas import TemplateEntry

logger = logging.getLogger(__name__)


def default_range(start_date: Optional[date], end_date: Optional[date], days: int = DEFAULT_SYNC_WINDOW_DAYS):
    """Fill in a missing end (or both ends) of a date range"""
    start = start_date or date.today()
    end = end_date or start + timedelta(days=days)
    if start > end:
        raise ValidationError("start_date must not be after end_date", code="invalid_range")
    return start, end


class AvailabilityService:
    """Service layer for time slot business logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = TimeSlotRepository()

    def generate_slots(
        self,
        doctor_identifier: DoctorIdentifier,
        start_date: date,
        end_date: date,
        template: Iterable[Union[TemplateEntry, dict]],
        excluded_dates: Iterable[date] = (),
    ) -> list[TimeSlot]:
        doctor_id = require_doctor_id(self.db, doctor_identifier)
        return SlotGenerator(self.db).generate(doctor_id, start_date, end_date, template, excluded_dates)

    def list_slots(
        self,
        doctor_identifier: DoctorIdentifier,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        status: Optional[str] = None,
    ) -> list[TimeSlot]:
        doctor_id = require_doctor_id(self.db, doctor_identifier)
        if status is not None and status not in SLOT_STATUSES:
            raise ValidationError(f"Unknown slot status '{status}'", code="invalid_status")
        start, end = default_range(start_date, end_date, days=7)
        return self.repo.list_slots(self.db, doctor_id, start, end, [status] if status else None)

    def list_available_slots(
        self, doctor_identifier: DoctorIdentifier, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> list[TimeSlot]:
        return self.list_slots(doctor_identifier, start_date, end_date, SLOT_AVAILABLE)

    def get_slot(self, slot_id: int) -> TimeSlot:
        slot = self.repo.get_slot(self.db, slot_id)
        if not slot:
            raise NotFoundError(f"Time slot {slot_id} not found", code="slot_not_found")
        return slot

    def create_slot(self, doctor_identifier: DoctorIdentifier, day: date, start_time: str, end_time: str,
                    created_by: Optional[str] = None) -> TimeSlot:
        """Add one available slot by hand; it may not overlap an active slot"""
        doctor_id = require_doctor_id(self.db, doctor_identifier)
        self._validate_bounds(start_time, end_time)

        if self.repo.find_overlapping(self.db, doctor_id, day, start_time, end_time):
            raise ConflictError("Time slot overlaps with an existing slot", code="slot_overlap")

        try:
            slot = self.repo.add_slot(
                self.db,
                doctor_id=doctor_id,
                date=day,
                start_time=start_time,
                end_time=end_time,
                status=SLOT_AVAILABLE,
                created_by=created_by,
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError("A slot already starts at that time", code="slot_overlap") from e

        self.db.refresh(slot)
        logger.info(f"✅ Slot {slot.id} created for doctor {doctor_id} on {day} {start_time}-{end_time}")
        return slot

    def update_slot(
        self, slot_id: int, status: str, start_time: Optional[str] = None, end_time: Optional[str] = None
    ) -> TimeSlot:
        """
        Administrative edit: block or reopen a slot, optionally moving it.

        Booked slots belong to the booking engine and cannot be edited here.
        """
        if status not in (SLOT_AVAILABLE, SLOT_BLOCKED):
            raise ValidationError("Slots can only be set to available or blocked here", code="invalid_status")

        slot = self.get_slot(slot_id)
        current_status = slot.status
        if current_status == SLOT_BOOKED:
            raise ConflictError("Cannot change a booked time slot", code="slot_booked")

        values = {"status": status}
        new_start = start_time or slot.start_time
        new_end = end_time or slot.end_time
        if (new_start, new_end) != (slot.start_time, slot.end_time):
            self._validate_bounds(new_start, new_end)
            if self.repo.find_overlapping(
                self.db, slot.doctor_id, slot.date, new_start, new_end, exclude_slot_id=slot.id
            ):
                raise ConflictError("Time slot overlaps with an existing slot", code="slot_overlap")
            values.update(start_time=new_start, end_time=new_end)

        try:
            updated = self.repo.update_if_status(self.db, slot_id, current_status, **values)
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError("A slot already starts at that time", code="slot_overlap") from e
        if not updated:
            self.db.rollback()
            raise ConflictError("Time slot changed while updating, reload and retry", code="slot_changed")

        self.db.commit()
        logger.info(f"✅ Slot {slot_id} updated: {current_status} -> {status}")
        return self.get_slot(slot_id)

    def delete_slot(self, slot_id: int) -> None:
        slot = self.get_slot(slot_id)
        if slot.status == SLOT_BOOKED:
            raise ConflictError("Cannot delete a booked time slot", code="slot_booked")
        if slot.external_event_id:
            raise ConflictError(
                "Slot is linked to an external calendar event; block it instead", code="slot_linked"
            )
        if self.repo.has_appointment_history(self.db, slot_id):
            raise ConflictError("Slot has appointment history; block it instead", code="slot_has_history")

        if not self.repo.delete_if_unlinked(self.db, slot_id):
            self.db.rollback()
            raise ConflictError("Time slot changed while deleting, reload and retry", code="slot_changed")
        self.db.commit()
        logger.info(f"🗑️ Slot {slot_id} deleted")

    @staticmethod
    def _validate_bounds(start_time: str, end_time: str) -> None:
        try:
            if time_to_minutes(start_time) >= time_to_minutes(end_time):
                raise ValidationError("start_time must be before end_time", code="invalid_time")
        except ValueError as e:
            raise ValidationError(str(e), code="invalid_time") from e
