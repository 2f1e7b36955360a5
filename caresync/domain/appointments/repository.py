"""Appointment repository - Database operations for appointments"""

from datetime import date
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ...models import Appointment, TimeSlot


class AppointmentRepository:
    """Repository for appointment database operations"""

    @staticmethod
    def get_appointment(db: Session, appointment_id: int) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.id == appointment_id).first()

    @staticmethod
    def add_appointment(db: Session, **appointment_data) -> Appointment:
        """Stage a new appointment; the caller commits together with the slot change"""
        appointment = Appointment(**appointment_data)
        db.add(appointment)
        db.flush()
        return appointment

    @staticmethod
    def find_by_doctor(
        db: Session,
        doctor_id: int,
        status: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[Appointment]:
        query = (
            db.query(Appointment)
            .join(TimeSlot, Appointment.time_slot_id == TimeSlot.id)
            .filter(Appointment.doctor_id == doctor_id)
        )
        if status:
            query = query.filter(Appointment.status == status)
        if start_date:
            query = query.filter(TimeSlot.date >= start_date)
        if end_date:
            query = query.filter(TimeSlot.date <= end_date)
        return query.order_by(TimeSlot.date, TimeSlot.start_time).all()

    @staticmethod
    def find_by_patient(db: Session, patient_id: int, status: Optional[str] = None) -> list[Appointment]:
        query = (
            db.query(Appointment)
            .join(TimeSlot, Appointment.time_slot_id == TimeSlot.id)
            .filter(Appointment.patient_id == patient_id)
        )
        if status:
            query = query.filter(Appointment.status == status)
        return query.order_by(TimeSlot.date.desc(), TimeSlot.start_time.desc()).all()

    @staticmethod
    def list_event_ids(db: Session, doctor_id: int) -> set[str]:
        """External event ids created for this doctor's video visits"""
        rows = (
            db.query(Appointment.google_event_id)
            .filter(Appointment.doctor_id == doctor_id, Appointment.google_event_id.isnot(None))
            .all()
        )
        return {row[0] for row in rows}

    @staticmethod
    def set_meeting_link_if_absent(db: Session, appointment_id: int, meet_link: str, event_id: str) -> bool:
        """Write link and event id in one statement, only if no link is stored yet"""
        result = db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.google_meet_link.is_(None))
            .values(google_meet_link=meet_link, google_event_id=event_id)
            .execution_options(synchronize_session=False)
        )
        cached = db.identity_map.get(db.identity_key(Appointment, appointment_id))
        if cached is not None:
            db.expire(cached)
        return result.rowcount == 1

    @staticmethod
    def clear_meeting_link(db: Session, appointment_id: int, event_id: str) -> bool:
        """Forget the link only while it still belongs to event_id"""
        result = db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.google_event_id == event_id)
            .values(google_meet_link=None, google_event_id=None)
            .execution_options(synchronize_session=False)
        )
        cached = db.identity_map.get(db.identity_key(Appointment, appointment_id))
        if cached is not None:
            db.expire(cached)
        return result.rowcount == 1

    @staticmethod
    def delete_appointment(db: Session, appointment: Appointment) -> None:
        db.delete(appointment)
        db.commit()
