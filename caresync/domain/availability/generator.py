"""
Slot generator

Expands a weekly template over a date range into bookable time slots.
Generation only ever inserts: existing slots, whatever their status, are
left alone, so running the same generation twice creates nothing new.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Iterator, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import MAX_GENERATION_DAYS
from ...errors import ConflictError, ValidationError
from ...models import SLOT_AVAILABLE, SLOT_STATUSES, TimeSlot
from ...shared.validators import minutes_to_time, time_to_minutes
from .repository import TimeSlotRepository
from .schemas import TemplateEntry

logger = logging.getLogger(__name__)

GENERATED_BY = "generator"


@dataclass(frozen=True)
class PlannedSlot:
    day: date
    start_time: str
    end_time: str


def normalize_template(template: Iterable[Union[TemplateEntry, dict]]) -> list[TemplateEntry]:
    entries = []
    for raw in template:
        if isinstance(raw, TemplateEntry):
            entries.append(raw)
            continue
        try:
            entries.append(TemplateEntry.model_validate(raw))
        except PydanticValidationError as e:
            first = e.errors()[0]
            raise ValidationError(f"Invalid template entry {raw}: {first.get('msg')}", code="invalid_template") from e
    if not entries:
        raise ValidationError("Template must contain at least one entry", code="invalid_template")
    return entries


def plan_slots(
    start_date: date,
    end_date: date,
    template: Iterable[Union[TemplateEntry, dict]],
    excluded_dates: Iterable[date] = (),
) -> Iterator[PlannedSlot]:
    """
    Yield every fixed-duration interval the template describes in the range.

    A trailing remainder shorter than slot_duration is dropped, so a
    09:00-10:45 window with 30 minute slots yields 09:00, 09:30 and 10:00.
    """
    if start_date > end_date:
        raise ValidationError("start_date must not be after end_date", code="invalid_range")
    span = (end_date - start_date).days + 1
    if span > MAX_GENERATION_DAYS:
        raise ValidationError(
            f"Cannot generate more than {MAX_GENERATION_DAYS} days at once (requested {span})",
            code="invalid_range",
        )

    entries = normalize_template(template)
    skipped = set(excluded_dates)

    day = start_date
    while day <= end_date:
        if day not in skipped:
            for entry in entries:
                if entry.weekday != day.weekday():
                    continue
                cursor = time_to_minutes(entry.start_time)
                window_end = time_to_minutes(entry.end_time)
                while cursor + entry.slot_duration <= window_end:
                    yield PlannedSlot(day, minutes_to_time(cursor), minutes_to_time(cursor + entry.slot_duration))
                    cursor += entry.slot_duration
        day += timedelta(days=1)


class SlotGenerator:
    """Writes planned slots to the slot store, skipping anything already covered"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = TimeSlotRepository()

    def generate(
        self,
        doctor_id: int,
        start_date: date,
        end_date: date,
        template: Iterable[Union[TemplateEntry, dict]],
        excluded_dates: Iterable[date] = (),
    ) -> list[TimeSlot]:
        """Insert the new slots and return only those"""
        planned = list(plan_slots(start_date, end_date, template, excluded_dates))

        # A concurrent generation for the same doctor can win the unique
        # (doctor, date, start) race; the second pass then sees its rows and skips them.
        for attempt in (1, 2):
            try:
                created = self._insert_missing(doctor_id, planned)
                self.db.commit()
                break
            except IntegrityError as e:
                self.db.rollback()
                if attempt == 2:
                    raise ConflictError("Slots changed while generating, try again", code="generation_conflict") from e
                logger.info(f"🔄 Slot generation for doctor {doctor_id} raced another writer, retrying")

        for slot in created:
            self.db.refresh(slot)
        logger.info(
            f"✅ Generated {len(created)} slots for doctor {doctor_id} "
            f"({start_date} to {end_date}, {len(planned) - len(created)} already covered)"
        )
        return created

    def _insert_missing(self, doctor_id: int, planned: list[PlannedSlot]) -> list[TimeSlot]:
        created = []
        for item in planned:
            if self.repo.find_by_start(self.db, doctor_id, item.day, item.start_time):
                continue
            if self.repo.find_overlapping(self.db, doctor_id, item.day, item.start_time, item.end_time, SLOT_STATUSES):
                continue
            created.append(
                self.repo.add_slot(
                    self.db,
                    doctor_id=doctor_id,
                    date=item.day,
                    start_time=item.start_time,
                    end_time=item.end_time,
                    status=SLOT_AVAILABLE,
                    created_by=GENERATED_BY,
                )
            )
        return created
