"""
Time slot repository - the slot store

Every status change goes through compare_and_set_status, a single UPDATE
conditioned on the status the caller expects. Nothing here reads a slot,
mutates it in Python and writes it back.
"""

from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from ...models import (
    ACTIVE_SLOT_STATUSES,
    APPOINTMENT_CANCELLED,
    SLOT_AVAILABLE,
    SLOT_BLOCKED,
    SLOT_BOOKED,
    Appointment,
    TimeSlot,
)


class TimeSlotRepository:
    """Repository for time slot database operations"""

    @staticmethod
    def get_slot(db: Session, slot_id: int) -> Optional[TimeSlot]:
        return db.query(TimeSlot).filter(TimeSlot.id == slot_id).first()

    @staticmethod
    def list_slots(
        db: Session,
        doctor_id: int,
        start_date: date,
        end_date: date,
        statuses: Optional[Iterable[str]] = None,
    ) -> list[TimeSlot]:
        """Slots for a doctor in [start_date, end_date], ordered by date and start"""
        query = db.query(TimeSlot).filter(
            TimeSlot.doctor_id == doctor_id,
            TimeSlot.date >= start_date,
            TimeSlot.date <= end_date,
        )
        if statuses:
            query = query.filter(TimeSlot.status.in_(list(statuses)))
        return query.order_by(TimeSlot.date, TimeSlot.start_time).all()

    @staticmethod
    def find_by_start(db: Session, doctor_id: int, day: date, start_time: str) -> Optional[TimeSlot]:
        return (
            db.query(TimeSlot)
            .filter(
                TimeSlot.doctor_id == doctor_id,
                TimeSlot.date == day,
                TimeSlot.start_time == start_time,
            )
            .first()
        )

    @staticmethod
    def find_overlapping(
        db: Session,
        doctor_id: int,
        day: date,
        start_time: str,
        end_time: str,
        statuses: Iterable[str] = ACTIVE_SLOT_STATUSES,
        exclude_slot_id: Optional[int] = None,
    ) -> list[TimeSlot]:
        """
        Slots whose [start, end) intersects the given interval.

        Zero-padded HH:MM strings sort the same way as the times they
        represent, so the comparison runs in SQL.
        """
        query = db.query(TimeSlot).filter(
            TimeSlot.doctor_id == doctor_id,
            TimeSlot.date == day,
            TimeSlot.status.in_(list(statuses)),
            TimeSlot.start_time < end_time,
            TimeSlot.end_time > start_time,
        )
        if exclude_slot_id is not None:
            query = query.filter(TimeSlot.id != exclude_slot_id)
        return query.order_by(TimeSlot.start_time).all()

    @staticmethod
    def find_by_external_id(db: Session, doctor_id: int, external_event_id: str) -> Optional[TimeSlot]:
        return (
            db.query(TimeSlot)
            .filter(TimeSlot.doctor_id == doctor_id, TimeSlot.external_event_id == external_event_id)
            .first()
        )

    @staticmethod
    def list_unlinked(db: Session, doctor_id: int, start_date: date, end_date: date) -> list[TimeSlot]:
        """Available or booked slots that have never been pushed to the external calendar"""
        return (
            db.query(TimeSlot)
            .filter(
                TimeSlot.doctor_id == doctor_id,
                TimeSlot.date >= start_date,
                TimeSlot.date <= end_date,
                TimeSlot.status.in_(list(ACTIVE_SLOT_STATUSES)),
                TimeSlot.external_event_id.is_(None),
            )
            .order_by(TimeSlot.date, TimeSlot.start_time)
            .all()
        )

    @staticmethod
    def add_slot(db: Session, **slot_data) -> TimeSlot:
        """Stage a new slot; the caller owns the commit"""
        slot = TimeSlot(**slot_data)
        db.add(slot)
        db.flush()
        return slot

    @staticmethod
    def delete_if_unlinked(db: Session, slot_id: int) -> bool:
        """Delete an available or blocked slot that has no external link, in one statement"""
        result = db.execute(
            delete(TimeSlot)
            .where(
                TimeSlot.id == slot_id,
                TimeSlot.status.in_([SLOT_AVAILABLE, SLOT_BLOCKED]),
                TimeSlot.external_event_id.is_(None),
            )
            .execution_options(synchronize_session=False)
        )
        cached = db.identity_map.get(db.identity_key(TimeSlot, slot_id))
        if cached is not None:
            db.expunge(cached)
        return result.rowcount == 1

    @staticmethod
    def has_appointment_history(db: Session, slot_id: int) -> bool:
        return db.query(Appointment.id).filter(Appointment.time_slot_id == slot_id).first() is not None

    @staticmethod
    def compare_and_set_status(
        db: Session, slot_id: int, expected_status: str, new_status: str, **values
    ) -> bool:
        """
        Move a slot from expected_status to new_status in one conditional UPDATE.

        Extra keyword values are written in the same statement. Returns False
        when another writer changed the slot first.
        """
        return TimeSlotRepository._conditional_update(
            db,
            slot_id,
            [TimeSlot.status == expected_status],
            {"status": new_status, **values},
        )

    @staticmethod
    def link_external_event(
        db: Session, slot_id: int, external_event_id: str, external_updated_at: Optional[datetime], synced_at: datetime
    ) -> bool:
        """Attach an external event id unless the slot already has one"""
        return TimeSlotRepository._conditional_update(
            db,
            slot_id,
            [TimeSlot.external_event_id.is_(None)],
            {
                "external_event_id": external_event_id,
                "external_updated_at": external_updated_at,
                "last_synced_at": synced_at,
            },
        )

    @staticmethod
    def update_if_status(db: Session, slot_id: int, expected_status: str, **values) -> bool:
        """Write arbitrary columns only while the slot still has expected_status"""
        return TimeSlotRepository._conditional_update(db, slot_id, [TimeSlot.status == expected_status], values)

    @staticmethod
    def release_if_unreferenced(db: Session, slot_id: int, exclude_appointment_id: Optional[int] = None) -> bool:
        """booked -> available, but only while no live appointment points at the slot"""
        active = select(Appointment.id).where(
            Appointment.time_slot_id == slot_id,
            Appointment.status != APPOINTMENT_CANCELLED,
        )
        if exclude_appointment_id is not None:
            active = active.where(Appointment.id != exclude_appointment_id)
        return TimeSlotRepository._conditional_update(
            db,
            slot_id,
            [TimeSlot.status == SLOT_BOOKED, ~active.exists()],
            {"status": SLOT_AVAILABLE},
        )

    @staticmethod
    def has_active_appointment(db: Session, slot_id: int, exclude_appointment_id: Optional[int] = None) -> bool:
        query = db.query(Appointment.id).filter(
            Appointment.time_slot_id == slot_id,
            Appointment.status != APPOINTMENT_CANCELLED,
        )
        if exclude_appointment_id is not None:
            query = query.filter(Appointment.id != exclude_appointment_id)
        return query.first() is not None

    @staticmethod
    def _conditional_update(db: Session, slot_id: int, criteria: list, values: dict) -> bool:
        result = db.execute(
            update(TimeSlot)
            .where(TimeSlot.id == slot_id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        # Drop any cached copy so the next read sees what the database holds
        cached = db.identity_map.get(db.identity_key(TimeSlot, slot_id))
        if cached is not None:
            db.expire(cached)
        return result.rowcount == 1
